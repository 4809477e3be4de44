"""
Main FastAPI application.

WHY: This is the entry point for the billing service. It configures
middleware, routes, exception handlers and the background scheduler.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing.core.config import settings
from billing.core.exceptions import AppException
from billing.db.session import dispose_engine
from billing.core.exception_handlers import (
    app_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    generic_exception_handler,
)
from billing.middleware import SecurityHeadersMiddleware, RequestContextMiddleware
from billing.api import invoices, payments
from billing.services.scheduler import start_scheduler, shutdown_scheduler, get_scheduler_status
from billing.services.stripe_service import configure_stripe


logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start the background scheduler with the app and stop it on shutdown.

    WHY: Overdue detection and recurring generation run in-process; the
    jobs must stop before the event loop does.
    """
    configure_stripe()
    start_scheduler()
    try:
        yield
    finally:
        shutdown_scheduler()
        await dispose_engine()


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern allows easier testing with different configurations
    and makes it possible to create multiple app instances if needed.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Consulting marketplace billing API",
        version=VERSION,
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
    )

    # Register exception handlers
    # WHY: Exception handlers ensure consistent error responses across the API
    # and prevent sensitive data leaks in error messages (OWASP A04)
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Request context must wrap the handlers so audit entries see the client IP
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """
        Health check endpoint.

        WHY: Allows load balancers and monitoring to verify service health
        without checking authentication or database connectivity.
        """
        return {
            "status": "healthy",
            "version": VERSION,
            "scheduler": get_scheduler_status(),
        }

    app.include_router(invoices.router, prefix=settings.API_V1_PREFIX)
    app.include_router(payments.router, prefix=settings.API_V1_PREFIX)
    app.include_router(payments.webhooks_router, prefix=settings.API_V1_PREFIX)

    return app


# Create app instance
# WHY: Creating the app instance here allows it to be imported by uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "billing.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info" if settings.DEBUG else "warning",
    )
