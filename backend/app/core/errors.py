# app/core/errors.py
"""
Outcomes of the auth core.

Every failure the auth service reports is an AuthError subclass. The HTTP layer maps
them onto the standard error payload ({"error": ..., "message": ...}) using the
status_code / error_code attributes, so nothing here imports FastAPI.

Messages for credential and code failures are deliberately coarse.
"""
from __future__ import annotations


class AuthError(Exception):
    status_code: int = 400
    error_code: str = "AUTH_ERROR"
    message: str = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message


class EmailTakenError(AuthError):
    status_code = 409
    error_code = "EMAIL_TAKEN"
    message = "Email already registered"


class InvalidCredentialsError(AuthError):
    status_code = 401
    error_code = "INVALID_CREDENTIALS"
    message = "Invalid email or password"


class EmailNotVerifiedError(AuthError):
    status_code = 403
    error_code = "EMAIL_NOT_VERIFIED"
    message = "Email not verified"


class InvalidCodeError(AuthError):
    status_code = 400
    error_code = "INVALID_CODE"
    message = "Invalid code"


class ExpiredError(AuthError):
    status_code = 400
    error_code = "EXPIRED"
    message = "Expired"


class CodeExpiredError(ExpiredError):
    message = "Code has expired"


class TokenExpiredError(ExpiredError):
    status_code = 401
    message = "Token has expired"


class InvalidTokenError(AuthError):
    status_code = 401
    error_code = "INVALID_TOKEN"
    message = "Invalid or expired token"


class TokenReuseDetectedError(InvalidTokenError):
    """Refresh value presented after it was rotated away. Reported to clients as InvalidTokenError."""

    def __init__(self, session_id: int, message: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class NotFoundError(AuthError):
    status_code = 404
    error_code = "NOT_FOUND"
    message = "Not found"


class UnavailableError(AuthError):
    status_code = 503
    error_code = "UNAVAILABLE"
    message = "Service temporarily unavailable"
