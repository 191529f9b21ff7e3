from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidInputError(ServiceError):
    """Caller misuse such as an empty password or out-of-range TTL (400)."""
    status_code = 400
    error_code = "validation_error"


class VerificationError(ServiceError):
    """A credential, token or CSRF check failed (401).

    Subclasses identify the failing check for server-side logging; clients
    only ever see the shared ``unauthorized`` code.
    """
    status_code = 401
    error_code = "unauthorized"


class MalformedHashError(VerificationError):
    """Stored password hash could not be parsed."""


class MalformedTokenError(VerificationError):
    """Presented token does not have the expected shape or field types."""


class SignatureMismatchError(VerificationError):
    """Token signature does not match its payload."""


class ExpiredError(VerificationError):
    """Token is past its expiry plus the clock-skew tolerance."""


class RevokedError(VerificationError):
    """Token id is present in the revocation set."""


class CsrfValidationError(VerificationError):
    """Double-submit CSRF check failed on a state-changing request."""


class AuthenticationFailedError(VerificationError):
    """Login failed; never says whether the user or the password was wrong."""


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServiceError):
    """A backing store timed out or failed (503); safe to retry."""
    status_code = 503
    error_code = "service_unavailable"
    retryable = True


__all__ = [
    "ServiceError",
    "InvalidInputError",
    "VerificationError",
    "MalformedHashError",
    "MalformedTokenError",
    "SignatureMismatchError",
    "ExpiredError",
    "RevokedError",
    "CsrfValidationError",
    "AuthenticationFailedError",
    "ServerError",
    "StoreUnavailableError",
]
