"""
NIMEX Marketplace — Security Headers Middleware
"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_BASE_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
}

# JSON only; nothing on these responses may load or frame anything
_API_CSP = "default-src 'none'; frame-ancestors 'none';"

# Wallet balances and escrow state must never sit in a shared cache
_NO_STORE = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
}

_DOCS_PATHS = ("/docs", "/redoc", "/openapi.json")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds HSTS, anti-framing and no-store headers to every response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        path = request.url.path

        response.headers.update(_BASE_HEADERS)
        # Swagger UI pulls its assets from a CDN
        if not path.startswith(_DOCS_PATHS):
            response.headers["Content-Security-Policy"] = _API_CSP
        if path.startswith("/api/"):
            response.headers.update(_NO_STORE)

        return response
