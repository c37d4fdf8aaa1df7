"""
Application errors and the JSON envelopes returned to clients.

Every failure a handler wants to report is raised as an `AppError`. The error middleware turns it into an
`ApiError` envelope with the matching HTTP status:

    {"success": false, "error": {"code": "...", "message": "...", "details": ...}, "timestamp": "..."}

Successful responses that carry a payload use `ApiResponse`:

    {"success": true, "data": ..., "message": "...", "timestamp": "..."}
"""

from datetime import datetime, timezone
from typing import Any, Optional

from aiohttp import web
from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ErrorDetails(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class ApiError(BaseModel):
    success: bool = False
    error: ErrorDetails
    timestamp: datetime = Field(default_factory=utc_now)


class ApiResponse(BaseModel):
    success: bool = True
    data: Optional[Any] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class AppError(Exception):
    """
    Error with a stable machine-readable code and an HTTP status.

    Use the static factories rather than the constructor so codes and statuses stay consistent across
    handlers.
    """

    def __init__(
        self, code: str, status: int, message: str, details: Optional[Any] = None
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"AppError({self.code!r}, {self.status}, {self.message!r})"

    def to_envelope(self) -> ApiError:
        return ApiError(
            error=ErrorDetails(code=self.code, message=self.message, details=self.details)
        )

    def to_response(self) -> web.Response:
        return web.json_response(
            self.to_envelope().model_dump(mode="json"), status=self.status
        )

    @staticmethod
    def invalid_credentials(message: str = "Invalid credentials") -> "AppError":
        return AppError("AUTH_INVALID_CREDENTIALS", 401, message)

    @staticmethod
    def missing_token() -> "AppError":
        return AppError("AUTH_MISSING_TOKEN", 401, "Authorization token is required")

    @staticmethod
    def invalid_token(message: str = "Invalid token") -> "AppError":
        return AppError("AUTH_INVALID_TOKEN", 401, message)

    @staticmethod
    def user_not_found() -> "AppError":
        return AppError("AUTH_USER_NOT_FOUND", 404, "User not found")

    @staticmethod
    def forbidden(message: str = "Access denied") -> "AppError":
        return AppError("AUTH_FORBIDDEN", 403, message)

    @staticmethod
    def oauth(message: str, details: Optional[Any] = None) -> "AppError":
        return AppError("AUTH_OAUTH_ERROR", 400, message, details)

    @staticmethod
    def session(message: str = "Invalid or expired session") -> "AppError":
        return AppError("AUTH_SESSION_ERROR", 401, message)

    @staticmethod
    def validation(message: str, details: Optional[Any] = None) -> "AppError":
        return AppError("VALIDATION_ERROR", 400, message, details)

    @staticmethod
    def database(message: str = "Database error") -> "AppError":
        return AppError("DATABASE_ERROR", 500, message)

    @staticmethod
    def external_service(message: str, details: Optional[Any] = None) -> "AppError":
        return AppError("EXTERNAL_SERVICE_ERROR", 502, message, details)

    @staticmethod
    def config(message: str) -> "AppError":
        return AppError("CONFIG_ERROR", 500, message)

    @staticmethod
    def internal(
        message: str = "Internal Server Error", details: Optional[Any] = None
    ) -> "AppError":
        return AppError("INTERNAL_SERVER_ERROR", 500, message, details)

    @staticmethod
    def serialization(message: str = "Serialization error") -> "AppError":
        return AppError("SERIALIZATION_ERROR", 500, message)

    @staticmethod
    def auth(message: str = "Authentication failed") -> "AppError":
        return AppError("AUTH_ERROR", 401, message)

    @staticmethod
    def not_found(message: str = "Resource not found") -> "AppError":
        return AppError("RESOURCE_NOT_FOUND", 404, message)

    @staticmethod
    def bad_request(message: str, details: Optional[Any] = None) -> "AppError":
        return AppError("BAD_REQUEST", 400, message, details)

    @staticmethod
    def method_not_allowed(method: str) -> "AppError":
        return AppError("METHOD_NOT_ALLOWED", 405, f"Method {method} not allowed")

    @staticmethod
    def rate_limited() -> "AppError":
        return AppError("RATE_LIMITED", 429, "Too many requests, slow down")


def api_response(
    data: Optional[Any] = None, message: Optional[str] = None, status: int = 200
) -> web.Response:
    return web.json_response(
        ApiResponse(data=data, message=message).model_dump(mode="json"),
        status=status,
    )
