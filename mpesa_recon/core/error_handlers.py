"""Exception handlers that render service errors as structured JSON."""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from mpesa_recon.core.exceptions import MpesaReconError, ValidationError

logger = logging.getLogger(__name__)


def error_body(exc: MpesaReconError) -> dict:
    """Build the error envelope shared by every API route."""
    return {
        "success": False,
        "error_code": exc.error_code,
        "error_message": exc.message,
        "details": jsonable_encoder(exc.details),
    }


async def service_error_handler(request: Request, exc: MpesaReconError) -> JSONResponse:
    """Render a service error with its mapped HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request body/query validation failures as VALIDATION_ERROR (400)."""
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    error = ValidationError("Invalid request", {"errors": errors})
    return await service_error_handler(request, error)


def register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the application."""
    app.add_exception_handler(MpesaReconError, service_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
