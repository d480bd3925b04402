from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """A failure the API reports to the caller.

    ``status_code`` picks the HTTP status and ``error_code`` the stable
    envelope code (validation_error, duplicate_key, unauthorized, forbidden,
    not_found, rate_limited or server_error). ``message`` is shown verbatim.
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
    pass


class DuplicateKeyError(ServiceError):
    """The email is already registered."""

    error_code = "duplicate_key"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """The caller's role lacks the capability."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class TokenError(AuthenticationError):
    """Access or refresh token rejected by the token ledger."""


class TokenExpiredError(TokenError):
    pass


class TokenInvalidError(TokenError):
    pass


class TokenRevokedError(TokenError):
    pass


class TokenNotFoundError(TokenError):
    pass


class UserMissingError(TokenError):
    pass


class UserDeactivatedError(TokenError):
    pass


class OtpError(AuthenticationError):
    """One-time code rejected by the OTP ledger."""


class OtpNotFoundError(OtpError):
    pass


class OtpUsedError(OtpError):
    pass


class OtpExpiredError(OtpError):
    pass


class OtpAttemptsExceededError(RateLimitedError):
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateKeyError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "TokenError",
    "TokenExpiredError",
    "TokenInvalidError",
    "TokenRevokedError",
    "TokenNotFoundError",
    "UserMissingError",
    "UserDeactivatedError",
    "OtpError",
    "OtpNotFoundError",
    "OtpUsedError",
    "OtpExpiredError",
    "OtpAttemptsExceededError",
]
