"""
Security headers middleware.

WHY: Billing responses carry invoice totals, party details and gateway
references. They must never be cached by browsers or proxies, framed,
or MIME-sniffed.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from typing import Callable

from billing.core.config import settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds security headers to all responses.

    - Strict-Transport-Security: Forces HTTPS connections
    - X-Content-Type-Options: Prevents MIME-sniffing attacks
    - X-Frame-Options / frame-ancestors: Prevents clickjacking
    - Referrer-Policy: Keeps invoice URLs out of third-party referrers
    - Cache-Control on API paths: No caching of financial data
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if request.url.path.startswith(settings.API_V1_PREFIX):
            # JSON only: nothing should ever be executed or embedded
            response.headers["Content-Security-Policy"] = (
                "default-src 'none'; frame-ancestors 'none'"
            )
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
            response.headers["Pragma"] = "no-cache"

        return response
