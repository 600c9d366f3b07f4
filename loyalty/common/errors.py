"""Error taxonomy surfaced to webhook senders and API callers.

Each error carries a stable machine-readable `code`, the HTTP status it maps
to, and whether the caller may safely retry the same request.
"""


class LoyaltyError(Exception):
    """Base class for errors that are reported to the caller verbatim."""

    code = "error"
    status_code = 500
    retriable = False

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retriable": self.retriable}


class Unauthorized(LoyaltyError):
    code = "unauthorized"
    status_code = 401


class BadRequest(LoyaltyError):
    code = "bad_request"
    status_code = 400


class NotFound(LoyaltyError):
    code = "not_found"
    status_code = 404


class StorageError(LoyaltyError):
    """Transient ledger/summary failure; the idempotency key makes retry safe."""

    code = "storage_error"
    status_code = 503
    retriable = True
