from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthenticatedError(AuthenticationError):
    """No verified principal could be attached to the request."""


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are deliberately indistinguishable."""


class TokenError(AuthenticationError):
    """A presented token could not be accepted."""


class TokenExpiredError(TokenError):
    pass


class TokenInvalidSignatureError(TokenError):
    pass


class TokenMalformedError(TokenError):
    pass


class RefreshTokenRevokedError(AuthenticationError):
    """Refresh token is not (or no longer) the live one for its session."""


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountNotVerifiedError(ForbiddenError):
    """Account exists but its email address has not been confirmed yet."""


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailAlreadyExistsError(ConflictError):
    pass


class InvalidOrExpiredOtpError(ValidationError):
    pass


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class HashingError(ServerError):
    """The password hashing primitive failed; safe to retry."""


class InvalidCredentialFormatError(ServerError):
    """A stored password hash could not be parsed."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "UnauthenticatedError",
    "InvalidCredentialsError",
    "TokenError",
    "TokenExpiredError",
    "TokenInvalidSignatureError",
    "TokenMalformedError",
    "RefreshTokenRevokedError",
    "ForbiddenError",
    "AccountNotVerifiedError",
    "NotFoundError",
    "ConflictError",
    "EmailAlreadyExistsError",
    "InvalidOrExpiredOtpError",
    "ServerError",
    "HashingError",
    "InvalidCredentialFormatError",
]
