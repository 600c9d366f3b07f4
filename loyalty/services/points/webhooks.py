"""Inbound order webhook handling.

Deliveries are at-least-once. Everything up to the ledger append is side-effect
free, so a rejected or timed-out delivery can be resent as-is; everything after
it relies on the idempotency key to turn the resend into a no-op.
"""

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal, InvalidOperation

from pydantic import ValidationError

from loyalty.common.config import LoyaltyConfig
from loyalty.common.errors import BadRequest, LoyaltyError, StorageError, Unauthorized
from loyalty.common.logging import logger
from loyalty.common.metrics import retries_total, webhook_deliveries_total, webhook_processing_seconds
from loyalty.common.state_machine import (
    DURABLE_STAGES,
    RESPONDED,
    UNAUTHENTICATED,
    VALIDATED,
    validate_transition,
)
from loyalty.common.tracing import tracer
from loyalty.services.points.models import WebhookLog
from loyalty.services.points.schemas import AccountRef, AwardRequest, Channel, IdempotencyKey, OrderEvent
from loyalty.services.points.service import AwardResult, LoyaltyService


SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"
TOPIC_HEADER = "X-Shopify-Topic"
WEBHOOK_ID_HEADER = "X-Shopify-Webhook-Id"

AWARDING_TOPICS = {"orders/paid", "orders/create"}
ACKNOWLEDGED_TOPICS = {"orders/fulfilled", "orders/cancelled"}
DEFAULT_TOPIC = "orders/paid"
OTHER_TOPIC_LABEL = "other"

# Upper bound of the Numeric(12, 2) amount column.
MAX_AMOUNT = Decimal("9999999999.99")
CENT = Decimal("0.01")


def topic_label(topic: str) -> str:
    """Metric label for a topic header; unknown values share one series."""

    if topic in AWARDING_TOPICS or topic in ACKNOWLEDGED_TOPICS:
        return topic
    return OTHER_TOPIC_LABEL


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body, as sent in the signature header."""

    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    if not signature or not secret:
        return False
    try:
        given = base64.b64decode(signature.strip(), validate=True)
    except (binascii.Error, ValueError):
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return hmac.compare_digest(expected, given)


def _qr_code(event: OrderEvent) -> str | None:
    if event.qr_code:
        return event.qr_code
    for attribute in event.note_attributes:
        if attribute.name.lower() == "qr_code" and attribute.value:
            return str(attribute.value)
    return None


def _order_id(event: OrderEvent) -> str:
    raw = event.order_id if event.order_id is not None else event.id
    return str(raw).strip() if raw is not None else ""


def normalize_order(event: OrderEvent, supported_currency: str) -> AwardRequest:
    """Translate a parsed order body into a ledger append request."""

    order_id = _order_id(event)
    if not order_id:
        raise BadRequest("missing order_id", code="missing_order_id")

    account_id = event.account_id or event.user_id
    email = event.email or (event.customer.email if event.customer else None)
    if not account_id and not email:
        raise BadRequest("missing user identifier (account_id or email)", code="missing_account")

    amount = event.amount if event.amount is not None else event.total_price
    if amount is None:
        raise BadRequest("missing amount", code="missing_amount")
    if not amount.is_finite() or amount < 0 or amount > MAX_AMOUNT:
        raise BadRequest("invalid amount", code="invalid_amount")
    try:
        # Sub-cent fractions never earn points, so they are dropped, not rounded.
        amount = amount.quantize(CENT, rounding=ROUND_FLOOR)
    except InvalidOperation as exc:
        raise BadRequest("invalid amount", code="invalid_amount") from exc

    currency = (event.currency or supported_currency).upper()
    if currency != supported_currency:
        raise BadRequest(f"unsupported currency {currency}", code="unsupported_currency")

    qr_code = _qr_code(event)
    channel = Channel.QR_SCAN if qr_code else Channel.PLATFORM_ORDER
    metadata = {}
    items = event.items if event.items is not None else event.line_items
    if items is not None:
        metadata["items"] = items
    if event.note:
        metadata["note"] = event.note

    return AwardRequest(
        account_ref=AccountRef(account_id=account_id, email=email),
        key=IdempotencyKey(external_order_id=order_id, channel=channel),
        amount=amount,
        currency=currency,
        qr_code=qr_code,
        metadata=metadata,
    )


@dataclass
class IngressResult:
    """Outcome of one delivery, ready to serialize as the HTTP response."""

    topic: str
    award: AwardResult | None = None
    order_id: str | None = None
    stages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        if self.award is not None:
            return self.award.to_dict()
        return {"success": True, "topic": self.topic, "order_id": self.order_id, "points_awarded": 0}


class _StageTracker:
    def __init__(self) -> None:
        self.current = UNAUTHENTICATED
        self.history = [UNAUTHENTICATED]

    def advance(self, new: str) -> None:
        validate_transition(self.current, new)
        self.current = new
        self.history.append(new)


class WebhookIngress:
    """Validates, normalizes and applies inbound order webhooks."""

    def __init__(self, service: LoyaltyService, config: LoyaltyConfig, log_session_factory=None) -> None:
        self.service = service
        self.config = config
        self.log_session_factory = log_session_factory or service.session_factory

    def parse(self, raw_body: bytes) -> OrderEvent:
        try:
            payload = json.loads(raw_body or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise BadRequest(f"malformed JSON body: {exc}", code="malformed_body") from exc
        if not isinstance(payload, dict):
            raise BadRequest("body must be a JSON object", code="malformed_body")
        try:
            return OrderEvent.model_validate(payload)
        except ValidationError as exc:
            raise BadRequest(f"invalid order payload: {exc.errors()[0]['msg']}", code="invalid_payload") from exc

    def _award_with_retry(self, request: AwardRequest, tracker: _StageTracker) -> AwardResult:
        attempts = self.config.storage_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self.service.award(request, on_stage=tracker.advance)
            except StorageError as exc:
                logger.warning("award_storage_retry attempt=%s/%s key=%s error=%s", attempt, attempts, request.key, exc)
                if attempt == attempts:
                    raise
                retries_total.labels(service=self.service.service_name, dependency="database").inc()
                # A retry starts again from the resolve step.
                tracker.current = VALIDATED
                time.sleep(self.config.storage_retry_backoff_seconds * attempt)
        raise StorageError("award retries exhausted")

    def handle(
        self,
        raw_body: bytes,
        signature: str | None,
        topic: str | None = None,
        webhook_id: str | None = None,
    ) -> IngressResult:
        topic = topic or DEFAULT_TOPIC
        started = time.perf_counter()
        tracker = _StageTracker()
        order_id = None
        try:
            if not verify_signature(raw_body, signature, self.config.webhook_secret):
                raise Unauthorized("invalid webhook signature", code="invalid_signature")
            event = self.parse(raw_body)
            order_id = _order_id(event) or None

            if topic not in AWARDING_TOPICS:
                tracker.advance(VALIDATED)
                outcome = "acknowledged" if topic in ACKNOWLEDGED_TOPICS else "ignored"
                logger.info("webhook_%s topic=%s order_id=%s", outcome, topic, order_id)
                tracker.advance(RESPONDED)
                self._record(topic, webhook_id, order_id, True, 0, outcome=outcome)
                return IngressResult(topic=topic, order_id=order_id, stages=tracker.history)

            request = normalize_order(event, self.config.supported_currency)
            order_id = request.key.external_order_id
            tracker.advance(VALIDATED)
            with tracer.start_as_current_span("loyalty.award") as span:
                span.set_attribute("loyalty.idempotency_key", str(request.key))
                award = self._award_with_retry(request, tracker)
                span.set_attribute("loyalty.was_new", award.was_new)
            tracker.advance(RESPONDED)
        except LoyaltyError as exc:
            durable = tracker.current in DURABLE_STAGES
            logger.warning(
                "webhook_rejected topic=%s order_id=%s stage=%s durable=%s code=%s error=%s",
                topic,
                order_id,
                tracker.current,
                durable,
                exc.code,
                exc.message,
            )
            self._record(topic, webhook_id, order_id, False, 0, error=exc)
            raise
        finally:
            webhook_processing_seconds.labels(service=self.service.service_name, topic=topic_label(topic)).observe(
                max(0.0, time.perf_counter() - started)
            )

        outcome = "awarded" if award.was_new else "duplicate"
        self._record(topic, webhook_id, order_id, True, award.entry.points_awarded, outcome=outcome)
        return IngressResult(topic=topic, award=award, order_id=order_id, stages=tracker.history)

    def _record(
        self,
        topic: str,
        webhook_id: str | None,
        order_id: str | None,
        success: bool,
        points: int,
        outcome: str | None = None,
        error: LoyaltyError | None = None,
    ) -> None:
        """Best-effort delivery log; never raises.

        Unauthenticated deliveries are counted but never stored.
        """

        outcome = outcome or (error.code if error else "ok")
        webhook_deliveries_total.labels(
            service=self.service.service_name, topic=topic_label(topic), outcome=outcome
        ).inc()
        if isinstance(error, Unauthorized):
            return
        try:
            with self.log_session_factory() as db:
                db.add(
                    WebhookLog(
                        topic=topic,
                        webhook_id=webhook_id,
                        external_order_id=order_id,
                        success=success,
                        points_awarded=points,
                        error_code=error.code if error else None,
                        error_message=error.message[:500] if error else None,
                    )
                )
                db.commit()
        except Exception as exc:
            logger.warning("webhook_log_write_failed topic=%s order_id=%s error=%s", topic, order_id, exc)
