"""
============================================================================
ChangeWLD Exchange - Error Taxonomy
============================================================================

Reliability Level: L5 High
Input Constraints: None
Side Effects: None

Every fault raised by the exchange services is one of the classes below.
Each carries a stable error code, an HTTP status and an optional detail
payload so the API layer can render a uniform JSON body:

    {"ok": false, "error": "<name>", "error_code": "<code>", "detail": ...}

ERROR CODES:
    - EXC-400: Generic validation failure
    - EXC-401: Bank destination not in the permitted set
    - EXC-402: Amount below minimum or not finite
    - EXC-403: Identity not verified
    - EXC-404: Unknown status value
    - EXC-405: Paid transition without on-chain reference
    - EXC-406: Malformed request body
    - EXC-407: Amount outside the representable range
    - AUTH-401: Invalid admin PIN
    - AUTH-403: Missing or invalid admin session
    - ORD-404: Order not found
    - ORD-409: Illegal status transition
    - ORD-410: Duplicate order id
    - QTA-429: Daily order quota exceeded
    - UPS-500: Upstream dependency unavailable
    - UPS-501: Upstream verifier misconfigured
    - SYS-500: Unexpected internal error

============================================================================
"""

from typing import Any, Optional


# =============================================================================
# Error Codes
# =============================================================================

class ExchangeErrorCode:
    """Stable error codes used in responses and log lines."""
    VALIDATION = "EXC-400"
    INVALID_BANK = "EXC-401"
    BELOW_MINIMUM = "EXC-402"
    UNVERIFIED_IDENTITY = "EXC-403"
    INVALID_STATUS = "EXC-404"
    MISSING_ONCHAIN_REFERENCE = "EXC-405"
    MALFORMED_REQUEST = "EXC-406"
    INVALID_AMOUNT = "EXC-407"
    INVALID_PIN = "AUTH-401"
    UNAUTHORIZED = "AUTH-403"
    NOT_FOUND = "ORD-404"
    INVALID_TRANSITION = "ORD-409"
    DUPLICATE_ID = "ORD-410"
    QUOTA_EXCEEDED = "QTA-429"
    UPSTREAM_UNAVAILABLE = "UPS-500"
    VERIFIER_MISCONFIGURED = "UPS-501"
    INTERNAL = "SYS-500"


# =============================================================================
# Base Exception
# =============================================================================

class ExchangeError(Exception):
    """
    Base class for all exchange faults.

    Attributes:
        error: Short machine-readable name (e.g. "InvalidBank")
        error_code: Code from ExchangeErrorCode
        message: Human-readable message
        http_status: Status the API layer responds with
        detail: Optional structured payload
    """

    http_status = 500
    default_error = "InternalError"
    default_code = ExchangeErrorCode.INTERNAL

    def __init__(
        self,
        message: str,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        detail: Any = None,
    ) -> None:
        self.error = error or self.default_error
        self.error_code = error_code or self.default_code
        self.message = message
        self.detail = detail
        super().__init__(f"[{self.error_code}] {message}")

    def to_dict(self) -> dict:
        body = {
            "ok": False,
            "error": self.error,
            "error_code": self.error_code,
            "message": self.message,
        }
        if self.detail is not None:
            body["detail"] = self.detail
        return body


# =============================================================================
# Taxonomy
# =============================================================================

class ValidationError(ExchangeError):
    """Bad or missing input. User-correctable."""
    http_status = 400
    default_error = "ValidationError"
    default_code = ExchangeErrorCode.VALIDATION


class NotFoundError(ExchangeError):
    http_status = 404
    default_error = "NotFound"
    default_code = ExchangeErrorCode.NOT_FOUND


class DuplicateIdError(ExchangeError):
    """Raised by a store when an insert collides with an existing id."""
    http_status = 500
    default_error = "DuplicateId"
    default_code = ExchangeErrorCode.DUPLICATE_ID


class UnauthorizedError(ExchangeError):
    http_status = 403
    default_error = "Unauthorized"
    default_code = ExchangeErrorCode.UNAUTHORIZED


class InvalidPinError(UnauthorizedError):
    http_status = 401
    default_error = "InvalidPin"
    default_code = ExchangeErrorCode.INVALID_PIN


class QuotaExceededError(ExchangeError):
    http_status = 429
    default_error = "QuotaExceeded"
    default_code = ExchangeErrorCode.QUOTA_EXCEEDED


class InvalidTransitionError(ExchangeError):
    http_status = 409
    default_error = "InvalidTransition"
    default_code = ExchangeErrorCode.INVALID_TRANSITION


class UpstreamUnavailableError(ExchangeError):
    """An external dependency failed and no fallback could absorb it."""
    http_status = 500
    default_error = "UpstreamUnavailable"
    default_code = ExchangeErrorCode.UPSTREAM_UNAVAILABLE


class InternalError(ExchangeError):
    http_status = 500
    default_error = "InternalError"
    default_code = ExchangeErrorCode.INTERNAL


__all__ = [
    "ExchangeErrorCode",
    "ExchangeError",
    "ValidationError",
    "NotFoundError",
    "DuplicateIdError",
    "UnauthorizedError",
    "InvalidPinError",
    "QuotaExceededError",
    "InvalidTransitionError",
    "UpstreamUnavailableError",
    "InternalError",
]
