from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - service_unavailable (503)
    - server_error (500)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Subclasses carry a ``reason`` that is echoed in ``detail`` so clients can
    tell a locked account from an expired session without parsing messages.
    """
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthorized"
    default_message = "authentication required"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict] = None) -> None:
        merged = {"reason": self.reason, **(detail or {})}
        super().__init__(message or self.default_message, detail=merged)


class InvalidCredentialsError(AuthenticationError):
    # Same message for unknown email and wrong password
    reason = "invalid_credentials"
    default_message = "invalid credentials"


class AccountLockedError(AuthenticationError):
    reason = "account_locked"
    default_message = "account temporarily locked after repeated failed logins"

    def __init__(self, locked_until: Optional[datetime] = None) -> None:
        detail = {"locked_until": locked_until.isoformat()} if locked_until else None
        super().__init__(detail=detail)
        self.locked_until = locked_until


class SessionInvalidError(AuthenticationError):
    reason = "session_invalid"
    default_message = "session is no longer valid"


class UserInactiveError(AuthenticationError):
    reason = "user_inactive"
    default_message = "account is not active"


class TokenError(AuthenticationError):
    reason = "token_invalid"
    default_message = "invalid token"


class TokenInvalidError(TokenError):
    """Signature, algorithm, issuer, audience or token type mismatch."""


class TokenMalformedError(TokenInvalidError):
    reason = "token_malformed"
    default_message = "malformed token"


class TokenExpiredError(TokenError):
    reason = "token_expired"
    default_message = "token expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class StoreUnavailableError(ServiceError):
    """Backing store unreachable or too slow (503); safe to retry."""
    status_code = 503
    error_code = "service_unavailable"
    retryable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "SessionInvalidError",
    "UserInactiveError",
    "TokenError",
    "TokenInvalidError",
    "TokenMalformedError",
    "TokenExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "StoreUnavailableError",
]
