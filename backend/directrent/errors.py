from __future__ import annotations

from typing import Any


class ApiError(Exception):
    """
    Error surfaced to API callers as `{success: false, error, code, details?}`.

    Expected business outcomes (quota exhausted, already unlocked) are NOT errors;
    they are returned as normal results.
    """

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        if self.details is not None:
            out["details"] = self.details
        return out


class BadRequest(ApiError):
    status_code = 400
    code = "BAD_REQUEST"


class Unauthorized(ApiError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized", **kw: Any) -> None:
        super().__init__(message, **kw)


class Forbidden(ApiError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Forbidden", **kw: Any) -> None:
        super().__init__(message, **kw)


class NotFound(ApiError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", **kw: Any) -> None:
        super().__init__(f"{resource} not found", **kw)
        self.resource = resource


class Conflict(ApiError):
    status_code = 409
    code = "CONFLICT"


class TooManyRequests(ApiError):
    status_code = 429
    code = "TOO_MANY_REQUESTS"

    def __init__(self, message: str = "Too many requests", **kw: Any) -> None:
        super().__init__(message, **kw)


class StoreUnavailable(ApiError):
    status_code = 503
    code = "STORE_UNAVAILABLE"

    def __init__(self, message: str = "Storage temporarily unavailable", **kw: Any) -> None:
        super().__init__(message, **kw)


class PaymentError(ApiError):
    status_code = 502
    code = "PAYMENT_GATEWAY_ERROR"
