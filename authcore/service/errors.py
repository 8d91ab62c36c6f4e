from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients may branch on. ``clear_credentials`` marks
    failures after which the auth cookies are dead and must be dropped by the
    client so it does not keep retrying with them.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    clear_credentials: bool = False

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


class ConflictError(ServiceError):
    """Duplicate email or account (400)."""
    status_code = 400
    error_code = "conflict"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NoCredentialsError(AuthenticationError):
    """Neither an access nor a refresh token was presented."""
    error_code = "no_credentials"

    def __init__(self, message: str = "Authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Bad email/password pair or a tampered token."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Refresh token or session row is past its expiry."""
    error_code = "session_expired"

    def __init__(self, message: str = "Session expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionRevokedError(AuthenticationError):
    """No session row matches the presented refresh token."""
    error_code = "session_revoked"
    clear_credentials = True

    def __init__(self, message: str = "Session revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionInvalidatedError(AuthenticationError):
    """The user's token version moved on (logout-all or password reset)."""
    error_code = "session_invalidated"
    clear_credentials = True

    def __init__(self, message: str = "Session invalidated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserNotFoundError(AuthenticationError):
    """Token subject no longer exists."""
    error_code = "user_not_found"
    clear_credentials = True

    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidAssertionError(AuthenticationError):
    """Identity provider rejected the presented assertion."""
    error_code = "invalid_assertion"

    def __init__(self, message: str = "Invalid identity token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotRequestedError(ServiceError):
    """No pending verification code for this email (400)."""
    status_code = 400
    error_code = "not_requested"

    def __init__(
        self, message: str = "Verification code not requested", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ChallengeExpiredError(ServiceError):
    """Verification code is past its deadline (400)."""
    status_code = 400
    error_code = "expired"

    def __init__(self, message: str = "Verification code expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCodeError(ServiceError):
    """Verification code does not match (400)."""
    status_code = 400
    error_code = "invalid_code"

    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class CooldownActiveError(ServiceError):
    """A code was sent too recently (429)."""
    status_code = 429
    error_code = "cooldown_active"

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            message
            or f"Please wait {self.retry_after} seconds before requesting another code",
            detail={"retry_after": self.retry_after},
        )


class UpstreamUnavailableError(ServiceError):
    """Store, email or identity provider failed or timed out (503, retryable)."""
    status_code = 503
    error_code = "upstream_unavailable"

    def __init__(
        self, message: str = "Service temporarily unavailable", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "internal"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "NoCredentialsError",
    "InvalidCredentialsError",
    "SessionExpiredError",
    "SessionRevokedError",
    "SessionInvalidatedError",
    "UserNotFoundError",
    "InvalidAssertionError",
    "NotRequestedError",
    "ChallengeExpiredError",
    "InvalidCodeError",
    "CooldownActiveError",
    "UpstreamUnavailableError",
    "ServerError",
]
