"""
FastAPI exception handlers for custom exceptions.

WHY: Exception handlers convert our custom exceptions into properly
formatted JSON responses with correct HTTP status codes, ensuring
consistent error handling across the entire API.

Every error response uses the same envelope:
    {"success": false, "message": "...", "code": "...", "details": {...}}
"""

import logging
import traceback

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing.core.config import settings
from billing.core.exceptions import AppException
from billing.middleware.request_context import get_request_context


logger = logging.getLogger(__name__)


def _request_extra(request: Request) -> dict:
    """Fields attached to every error log line."""
    context = get_request_context()
    return {
        "request_id": context.request_id if context else None,
        "method": request.method,
        "path": request.url.path,
    }


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle custom AppException and its subclasses.

    Args:
        request: The FastAPI request object
        exc: The custom exception instance

    Returns:
        JSONResponse with error details
    """
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}", extra=_request_extra(request))
    else:
        logger.warning(f"{exc.code}: {exc.message}", extra=_request_extra(request))

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors.

    WHY: Malformed or missing input is caught before reaching business
    logic and reported with field-level messages.

    Args:
        request: The FastAPI request object
        exc: The Pydantic validation error

    Returns:
        JSONResponse with validation error details
    """
    errors = []
    for error in exc.errors():
        errors.append(
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
        )

    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": "Request validation failed",
            "code": "ValidationError",
            "details": {"errors": errors},
        },
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """
    Handle Starlette HTTP exceptions.

    WHY: Some HTTP exceptions (404 for unmatched routes, 405) are raised by
    Starlette before reaching our routes. This handler ensures they match
    our error format.

    Args:
        request: The FastAPI request object
        exc: The HTTP exception

    Returns:
        JSONResponse with error details
    """
    message = exc.detail
    if exc.status_code == 404 and message == "Not Found":
        message = f"Route {request.method} {request.url.path} not found"

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": message,
            "code": "HTTPException",
            "details": None,
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected exceptions.

    WHY: Log the full traceback but return a generic error so
    implementation details only leak when DEBUG is on (OWASP A04).

    Args:
        request: The FastAPI request object
        exc: The unexpected exception

    Returns:
        JSONResponse with generic error message
    """
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=exc,
        extra=_request_extra(request),
    )

    details = None
    if settings.DEBUG:
        details = {
            "stack": "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            )
        }

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "An unexpected error occurred",
            "code": "InternalServerError",
            "details": details,
        },
    )
