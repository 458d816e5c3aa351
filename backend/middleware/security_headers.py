"""
Security Headers Middleware

Adds response headers that keep personal data out of shared caches and
frames.
"""

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Receive, Scope, Send

from config.settings import settings


class SecurityHeadersMiddleware:
    """
    Pure ASGI middleware adding security headers to every response.

    API responses carry consent flags, request history and audit data, so
    they are always marked uncacheable.
    """

    def __init__(self, app: ASGIApp, hsts_max_age: int = 31536000):
        self.app = app
        self.hsts_max_age = hsts_max_age

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        is_api_path = scope.get("path", "").startswith("/api/")

        async def send_wrapper(message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers["X-Frame-Options"] = "DENY"
                headers["X-Content-Type-Options"] = "nosniff"
                headers["Referrer-Policy"] = "no-referrer"
                headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

                # HTTPS only in production
                if settings.is_production:
                    headers["Strict-Transport-Security"] = (
                        f"max-age={self.hsts_max_age}; includeSubDomains"
                    )

                if is_api_path:
                    headers["Cache-Control"] = "no-store, private"
                    headers["Pragma"] = "no-cache"

            await send(message)

        await self.app(scope, receive, send_wrapper)
