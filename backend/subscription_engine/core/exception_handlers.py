"""
FastAPI exception handlers.

WHY: Every failure leaves the API in one JSON envelope
({error, message, status_code, details}) whether it came from the
subscription services, request validation or routing.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from subscription_engine.core.exceptions import AppException, ProviderError

logger = logging.getLogger(__name__)


def error_response(
    status_code: int,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "status_code": status_code,
            "details": details,
        },
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle AppException and its subclasses.

    NOTE: Billing provider failures are logged at warning level with the
    provider operation, other 5xx at error level. 4xx are not logged here,
    the raising service already did.
    """
    route = f"{request.method} {request.url.path}"
    if isinstance(exc, ProviderError):
        logger.warning(
            f"Billing provider failure on {route}: {exc.message}",
            extra={"operation": exc.context.get("operation"), "status_code": exc.status_code},
        )
    elif exc.status_code >= 500:
        logger.error(
            f"{exc.__class__.__name__} on {route}: {exc.message}",
            extra={"status_code": exc.status_code},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report request validation failures as a ValidationError with per-field errors."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return error_response(400, "ValidationError", "Request validation failed", {"errors": errors})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Unknown routes and methods never reach a service
    return error_response(exc.status_code, "HTTPException", str(exc.detail))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected exceptions.

    WHY: The traceback goes to the log, the client gets a generic message
    so no implementation details leak (OWASP A04).
    """
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return error_response(500, "InternalServerError", "An unexpected error occurred")


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers above, most specific first."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
