from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Headers applied to every response
_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}

_HSTS_VALUE = "max-age=31536000; includeSubDomains"

# Responses carry per-user entitlements and presigned URLs.
_API_CACHE_CONTROL = "no-store"


def _apply_security_headers(response: Response, is_https: bool, is_api: bool) -> None:
    """Set standard security headers on a response."""
    for name, value in _SECURITY_HEADERS.items():
        response.headers[name] = value
    if is_https:
        response.headers["Strict-Transport-Security"] = _HSTS_VALUE
    if is_api:
        response.headers["Cache-Control"] = _API_CACHE_CONTROL


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security headers to every response and disables caching of API routes."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        _apply_security_headers(
            response,
            is_https=request.url.scheme == "https",
            is_api=request.url.path.startswith("/api/"),
        )
        return response
