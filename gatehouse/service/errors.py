from __future__ import annotations

from typing import Dict, Optional, Union

Detail = Optional[Union[dict, str]]


class ServiceError(Exception):
    """Failure raised by a service and rendered as ``{error, code, details?}``.

    ``status_code`` picks the HTTP status and ``error_code`` the machine-readable
    ``code`` field. ``detail`` is echoed as ``details`` for 4xx responses only;
    5xx bodies keep the message and log the rest.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Detail = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationError(ServiceError):
    """Missing or malformed input."""


class BadRequestError(ValidationError):
    """Input was well formed but refers to unusable state (stale OAuth state, unsigned webhook)."""


class InsufficientBalanceError(ValidationError):
    error_code = "insufficient_balance"


class AuthenticationError(ServiceError):
    """No session, or credentials that did not verify."""

    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Username or email already taken."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, detail: Detail = None) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = retry_after

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class ServerError(ServiceError):
    """An upstream call (OAuth provider, Stripe) or internal step failed."""

    status_code = 500
    error_code = "server_error"


class BillingUnavailableError(ServerError):
    error_code = "billing_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InsufficientBalanceError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "BillingUnavailableError",
]
