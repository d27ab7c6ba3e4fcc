from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from ..core.cache import cache_client
from ..core.config import (
    CORS_ORIGINS,
    RATE_LIMIT_CHAT_PER_MINUTE,
    RATE_LIMIT_DEFAULT_PER_MINUTE,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_LOGIN_PER_MINUTE,
)

_WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
_LOGIN_PATHS = ("/auth/login", "/auth/password/reset")


def _resolve_limit(method: str, path: str) -> int:
    if method == "POST" and path.startswith(_LOGIN_PATHS):
        return RATE_LIMIT_LOGIN_PER_MINUTE
    if method in _WRITE_METHODS and path.startswith("/chat/messages"):
        return RATE_LIMIT_CHAT_PER_MINUTE
    return RATE_LIMIT_DEFAULT_PER_MINUTE


def add_cors_headers(response: JSONResponse, request: Request) -> JSONResponse:
    """Add CORS headers to error responses."""
    origin = request.headers.get("origin", "")
    if origin and (origin in CORS_ORIGINS or "*" in CORS_ORIGINS):
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "*"
    return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, enabled: bool = RATE_LIMIT_ENABLED):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next):
        # Skip rate limiting for preflight OPTIONS requests
        if not self.enabled or request.method == "OPTIONS":
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        method = request.method
        path = request.url.path
        limit = _resolve_limit(method, path)

        allowed = cache_client.check_rate_limit(
            f"{client_ip}:{method}:{path}",
            limit,
            window_seconds=60,
        )
        if not allowed:
            response = JSONResponse(
                status_code=429,
                content={"detail": "Too many requests"},
            )
            response.headers["Retry-After"] = "60"
            return add_cors_headers(response, request)

        return await call_next(request)
