from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND"):
        super().__init__(status_code=404, code=code, message=message)


class ConflictError(ApiError):
    def __init__(self, message: str, *, code: str = "CONFLICT"):
        super().__init__(status_code=409, code=code, message=message)


class ValidationFailed(ApiError):
    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR"):
        super().__init__(status_code=400, code=code, message=message)


class ForbiddenError(ApiError):
    def __init__(self, message: str = "Insufficient permissions.", *, code: str = "FORBIDDEN"):
        super().__init__(status_code=403, code=code, message=message)


class ConnectivityError(ApiError):
    """A master or tenant database could not be reached. Never retried here."""

    def __init__(self, message: str, *, code: str = "DATABASE_UNAVAILABLE"):
        super().__init__(status_code=503, code=code, message=message)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)


def webhook_error_response(*, status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})
