"""
ProTV — Domain exceptions and their HTTP rendering.

Services raise these; ``install_exception_handlers`` turns them into the
``{"success": false, "data": null, "error": {...}}`` envelope.
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = structlog.get_logger("protv.errors")


class ProTVError(Exception):
    """Base class for every error surfaced to clients."""

    code: str = "PROTV_ERROR"
    http_status: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class NotFoundError(ProTVError):
    code = "NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class ForbiddenError(ProTVError):
    code = "FORBIDDEN"
    http_status = status.HTTP_403_FORBIDDEN


class ValidationError(ProTVError):
    """Input rejected before any store round trip."""

    code = "VALIDATION_ERROR"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class ConflictError(ProTVError):
    """A conditional write lost a race (e.g. a pairing claim)."""

    code = "CONFLICT"
    http_status = status.HTTP_409_CONFLICT


class TransportProvisioningError(ProTVError):
    code = "TRANSPORT_UNAVAILABLE"
    http_status = status.HTTP_502_BAD_GATEWAY


def error_body(code: str, message: str) -> dict:
    return {
        "success": False,
        "data": None,
        "error": {"code": code, "message": message},
    }


async def _protv_error_handler(request: Request, exc: ProTVError) -> JSONResponse:
    logger.warning(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        message=exc.message,
    )
    return JSONResponse(
        status_code=exc.http_status,
        content=error_body(exc.code, exc.message),
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ProTVError, _protv_error_handler)
