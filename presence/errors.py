from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.retryable = retryable


class ValidationError(ApiError):
    """Malformed input, rejected before any state change."""

    def __init__(self, code: str, message: str):
        super().__init__(422, code, message)


class ConflictError(ApiError):
    """The requested transition is not allowed in the employee's current state."""

    def __init__(self, code: str, message: str):
        super().__init__(409, code, message)


class DependencyError(ApiError):
    """Storage or another collaborator failed; the caller may retry."""

    def __init__(self, code: str, message: str):
        super().__init__(503, code, message, retryable=True)


class PolicyViolation(Exception):
    """A record the sweeper cannot judge safely (e.g. inconsistent shift data)."""

    def __init__(self, reason: str, *, record_id: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.record_id = record_id


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    retryable: bool = False,
) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
            "retryable": retryable,
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
