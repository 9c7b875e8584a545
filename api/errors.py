from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from autopilot.core.exceptions import (
    AutopilotError,
    DataQualityError,
    ExecutionError,
    InvariantViolation,
    PositionClosed,
    PositionNotFound,
    ValidationError,
)


class ApiError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        status: int = 400,
        *,
        headers: dict[str, str] | None = None,
        **extra: object,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.headers = headers
        self.extra = extra


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    body = {"error": {"code": exc.code, "message": exc.message, **exc.extra}}
    return JSONResponse(status_code=exc.status, content=body, headers=exc.headers)


def status_for(exc: AutopilotError) -> int:
    # Order matters: specific subclasses before their families.
    if isinstance(exc, PositionNotFound):
        return 404
    if isinstance(exc, (PositionClosed, ExecutionError)):
        return 409
    if isinstance(exc, (ValidationError, DataQualityError)):
        return 422
    if isinstance(exc, InvariantViolation):
        return 500
    return 500


async def autopilot_error_handler(request: Request, exc: AutopilotError) -> JSONResponse:
    return JSONResponse(status_code=status_for(exc), content={"error": exc.to_dict()})
