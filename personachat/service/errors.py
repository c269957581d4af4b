from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Failure raised by the session core.

    Subclasses pin an HTTP ``status_code`` and the ``error_code`` clients
    switch on. Rendering into the JSON envelope happens in
    ``personachat.api.error_handling``; nothing here knows about FastAPI.
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
    """Malformed or rejected input."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing or unusable credentials."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Unknown user or record."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Uniqueness clash."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts; ``detail["retry_after"]`` holds seconds to wait."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


# Session and account-security outcomes


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two cases are not distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ForbiddenError):
    """Too many failed logins; the account is barred until ``locked_until``."""
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "Account is temporarily locked due to too many failed login attempts",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class UserAlreadyExistsError(ConflictError):
    error_code = "user_already_exists"

    def __init__(self, message: str = "User with this email already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token is forged, already rotated, revoked or never issued."""
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "Invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenExpiredError(AuthenticationError):
    """Refresh token was genuine but its lifetime has passed; log in again."""
    error_code = "refresh_token_expired"

    def __init__(self, message: str = "Refresh token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(ValidationError):
    """Reset or verification token is unknown, expired, or already consumed."""
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailAlreadyVerifiedError(ValidationError):
    error_code = "email_already_verified"

    def __init__(self, message: str = "Email is already verified", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "UserAlreadyExistsError",
    "InvalidRefreshTokenError",
    "RefreshTokenExpiredError",
    "InvalidOrExpiredTokenError",
    "EmailAlreadyVerifiedError",
]
