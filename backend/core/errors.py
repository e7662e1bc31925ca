"""Error taxonomy shared by routers, services and the scheduler.

Every error is an ``HTTPException`` so it can be raised from any layer and is
rendered by FastAPI (see ``main.api_error_handler``) with its ``code``.
"""
from typing import Dict, Optional

from fastapi import HTTPException, status


class ApiError(HTTPException):
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"
    default_detail: str = "Internal server error"

    def __init__(self, detail: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=self.http_status, detail=detail or self.default_detail, headers=headers)


class ValidationError(ApiError):
    http_status = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_detail = "Invalid request"


class InvalidToken(ApiError):
    """Any refresh/access token failure.

    The caller always sees the same message; ``reason`` is for logs only.
    """

    http_status = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_TOKEN"
    default_detail = "Invalid or expired token"

    def __init__(self, reason: str = "invalid"):
        super().__init__(headers={"WWW-Authenticate": "Bearer"})
        self.reason = reason


class Forbidden(ApiError):
    http_status = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    default_detail = "Access denied"


class NotFound(ApiError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_detail = "Not found"

    def __init__(self, resource: Optional[str] = None):
        super().__init__(f"{resource} not found" if resource else None)


class Conflict(ApiError):
    http_status = status.HTTP_409_CONFLICT
    code = "CONFLICT"
    default_detail = "Conflict"


class ServiceUnavailable(ApiError):
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "SERVICE_UNAVAILABLE"
    default_detail = "Service temporarily unavailable"
