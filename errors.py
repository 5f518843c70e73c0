"""
API error types.

Each error is an HTTPException so route code can simply raise it; the
handlers registered in main.py render them as {"error": ..., "code": ...}.
"""
from typing import Dict, Optional

from fastapi import HTTPException


class ApiError(HTTPException):
    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=type(self).status_code, detail=message or self.message, headers=headers)


# 400
class ValidationError(ApiError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Validation failed"


class InvalidIdFormat(ApiError):
    status_code = 400
    code = "INVALID_ID"
    message = "Invalid ID format"


class SamePassword(ApiError):
    status_code = 400
    code = "SAME_PASSWORD"
    message = "New password must be different from current password"


# 401
class Unauthorized(ApiError):
    status_code = 401
    code = "UNAUTHORIZED"
    message = "Access token required"


class TokenExpired(Unauthorized):
    code = "TOKEN_EXPIRED"
    message = "Token expired"


class InvalidToken(Unauthorized):
    code = "INVALID_TOKEN"
    message = "Invalid token"


class UserNotFound(Unauthorized):
    code = "USER_NOT_FOUND"
    message = "Invalid token - user not found"


class AccountDeactivated(Unauthorized):
    code = "ACCOUNT_DEACTIVATED"
    message = "Account is deactivated"


class InvalidCredentials(Unauthorized):
    code = "INVALID_CREDENTIALS"
    message = "Invalid email or password"


class IncorrectPassword(Unauthorized):
    code = "INCORRECT_PASSWORD"
    message = "Password is incorrect"


# 403
class Forbidden(ApiError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Admin access required"


# 404
class NotFound(ApiError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Not found"


# 409
class DuplicateEntry(ApiError):
    status_code = 409
    code = "DUPLICATE_ENTRY"
    message = "A cafe with this name and address already exists!"


class AlreadyExists(ApiError):
    status_code = 409
    code = "ALREADY_EXISTS"
    message = "User already exists"


class EmailTaken(ApiError):
    status_code = 409
    code = "EMAIL_TAKEN"
    message = "Email already taken by another user"


# 429
class RateLimited(ApiError):
    status_code = 429
    code = "RATE_LIMITED"
    message = "Too many requests"

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        self.retry_after = max(0, int(retry_after))
        super().__init__(message, headers={"Retry-After": str(self.retry_after)})
