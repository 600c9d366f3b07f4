"""Loyalty points service API.

Receives signed order webhooks, credits points through the idempotent ledger,
and exposes account summaries plus ops endpoints for adjustments and
reconciliation.
"""

from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from loyalty.common.config import LoyaltyConfig, settings
from loyalty.common.db import SessionLocal
from loyalty.common.errors import LoyaltyError, Unauthorized
from loyalty.common.logging import bind_delivery_context, configure_logging, logger
from loyalty.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from loyalty.common.startup import log_startup_config
from loyalty.common.tracing import instrument_app, setup_tracing
from loyalty.services.points.schemas import AdjustmentRequest, SummaryResponse, TransactionView
from loyalty.services.points.service import LoyaltyService
from loyalty.services.points.webhooks import WebhookIngress

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_URL",
        "WEBHOOK_SECRET",
        "POINTS_PER_UNIT",
        "BONUS_MULTIPLIER",
        "MIN_QUALIFYING_AMOUNT",
        "SUPPORTED_CURRENCY",
        "SUMMARY_STRATEGY",
    ],
    required=("WEBHOOK_SECRET", "API_KEY"),
)
config = LoyaltyConfig.from_settings(settings)
service = LoyaltyService(SessionLocal, config, service_name=settings.service_name)
ingress = WebhookIngress(service, config)

app = FastAPI(title="Loyalty Points Service")
instrument_app(app)


def get_service() -> LoyaltyService:
    return service


def get_ingress() -> WebhookIngress:
    return ingress


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(LoyaltyError)
async def loyalty_error_handler(_: Request, exc: LoyaltyError):
    """Map domain errors to the JSON error envelope."""

    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(Exception)
async def unexpected_error_handler(_: Request, exc: Exception):
    logger.exception("unhandled_error error=%s", exc)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {"code": "internal_error", "message": "internal error", "retriable": True},
        },
    )


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject ops requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise Unauthorized("invalid API key", code="invalid_api_key")


@app.post("/webhooks/orders")
async def order_webhook(
    request: Request,
    x_shopify_hmac_sha256: str | None = Header(default=None),
    x_shopify_topic: str | None = Header(default=None),
    x_shopify_webhook_id: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
    webhook_ingress: WebhookIngress = Depends(get_ingress),
):
    """Credit points for a signed order event; replays return the first result."""

    bind_delivery_context(x_correlation_id or str(uuid4()), x_shopify_webhook_id)
    raw_body = await request.body()
    result = await run_in_threadpool(
        webhook_ingress.handle,
        raw_body,
        x_shopify_hmac_sha256,
        x_shopify_topic,
        x_shopify_webhook_id,
    )
    return result.to_dict()


@app.get("/accounts/{account_id}/summary", response_model=SummaryResponse)
def account_summary(account_id: str, points_service: LoyaltyService = Depends(get_service)):
    """Current total, tier and distance to the next tier."""

    snapshot, to_next = points_service.summary(account_id)
    upcoming = points_service.tier_policy.next_tier(snapshot.total_points)
    return SummaryResponse(
        account_id=snapshot.account_id,
        total_points=snapshot.total_points,
        tier=snapshot.tier,
        order_count=snapshot.order_count,
        total_spent=snapshot.total_spent,
        last_activity_at=snapshot.last_activity_at,
        points_to_next_tier=to_next,
        next_tier=upcoming.name if upcoming else None,
    )


@app.get("/accounts/{account_id}/transactions", response_model=list[TransactionView])
def account_transactions(account_id: str, limit: int = 50, points_service: LoyaltyService = Depends(get_service)):
    """Ledger entries for display, newest first."""

    entries = points_service.transactions(account_id, limit=max(1, min(limit, 500)))
    return [
        TransactionView(
            entry_id=e.entry_id,
            order_id=e.external_order_id,
            channel=e.channel,
            points_awarded=e.points_awarded,
            monetary_amount=e.monetary_amount,
            currency=e.currency,
            occurred_at=e.occurred_at,
        )
        for e in entries
    ]


@app.post("/accounts/{account_id}/adjustments")
def adjust_points(
    account_id: str,
    req: AdjustmentRequest,
    x_api_key: str | None = Header(default=None),
    points_service: LoyaltyService = Depends(get_service),
):
    """Apply a manual adjustment or bonus grant once per adjustment id."""

    enforce_api_key(x_api_key)
    result = points_service.adjust(account_id, req.adjustment_id, req.points, req.channel, reason=req.reason)
    return result.to_dict()


@app.post("/accounts/{account_id}/rebuild")
def rebuild_summary(
    account_id: str,
    x_api_key: str | None = Header(default=None),
    points_service: LoyaltyService = Depends(get_service),
):
    """Recompute the stored summary from the ledger."""

    enforce_api_key(x_api_key)
    return points_service.rebuild(account_id).to_dict()


@app.get("/reconciliation/{account_id}")
def reconciliation(account_id: str, points_service: LoyaltyService = Depends(get_service)):
    """Compare the stored summary with a replay of the account's ledger."""

    return points_service.reconcile(account_id)


@app.get("/tiers")
def tiers(points_service: LoyaltyService = Depends(get_service)):
    """Configured tier table, lowest first."""

    return [tier.to_dict() for tier in points_service.tier_policy.tiers]


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
