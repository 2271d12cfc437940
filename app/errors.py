"""Structured error helpers for API responses."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


def build_error_payload(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload = {"error": {"code": code, "message": message}}
    if details is not None:
        payload["error"]["details"] = details
    return payload


class AppError(Exception):
    """Application-scoped error for standardized API responses."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.message = message
        self.details = details
        self.payload = build_error_payload(self.code, message, details)


class JobValidationError(AppError):
    """Bad input shape or an unusable run time. Raised before the store is touched."""

    status_code = 400
    code = "VALIDATION_ERROR"


class ScheduleWindowError(AppError):
    """Run time outside the lead-time / plan horizon window."""

    status_code = 403
    code = "SCHEDULE_WINDOW_VIOLATION"


class JobConflictError(AppError):
    """Action not legal from the job's current status."""

    status_code = 409
    code = "JOB_CONFLICT"


class JobNotFoundError(AppError):
    """Unknown job id, or a job owned by someone else."""

    status_code = 404
    code = "JOB_NOT_FOUND"


class AuthenticationError(AppError):
    """No resolved user identity on the request."""

    status_code = 401
    code = "UNAUTHORIZED"


async def app_error_handler(_: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.payload)


async def request_validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {key: value for key, value in error.items() if key in {"type", "loc", "msg"}}
        for error in exc.errors()
    ]
    payload = build_error_payload(JobValidationError.code, "Invalid request payload", {"errors": errors})
    return JSONResponse(status_code=JobValidationError.status_code, content=payload)
