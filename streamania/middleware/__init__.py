from .rate_limit import RateLimitMiddleware, add_cors_headers

__all__ = ["RateLimitMiddleware", "add_cors_headers"]
