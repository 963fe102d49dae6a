import time
from dataclasses import dataclass

import structlog
from fastapi import Request
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

log = structlog.get_logger()


# Rules are matched top-to-bottom; the first matching rule wins. Every rule
# keys on client IP: the caller uid is only known once route dependencies run.
RATE_LIMIT_RULES = [
    {
        "path": "/api/v1/purchases/checkout",
        "limit": 10,
        "window": 3600,
        "method": "POST",
    },
    {
        "path": "/api/v1/membership/checkout",
        "limit": 5,
        "window": 3600,
        "method": "POST",
    },
    {
        "path": "/api/v1/product-boxes",
        "suffix": "/download",
        "limit": 60,
        "window": 60,
        "method": "POST",
    },
    {
        "path": "/api/v1/product-boxes",
        "limit": 30,
        "window": 3600,
        "method": "POST",
    },
    {
        "path": "/api/v1/diagnostics",
        "limit": 30,
        "window": 60,
    },
]

# Stripe retries on 429 too, so webhook deliveries are never throttled.
SKIP_PATHS = {"/health", "/docs", "/openapi.json", "/redoc", "/webhook", "/api/v1/webhooks/stripe"}


@dataclass
class RateLimitResult:
    """Holds the outcome of a sliding-window rate limit check."""

    current_count: int
    limit: int
    window: int
    reset_at: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_count)

    @property
    def exceeded(self) -> bool:
        return self.current_count > self.limit


def _find_matching_rule(path: str, method: str) -> dict | None:
    """Return the first rate limit rule that matches the request path and method."""
    for rule in RATE_LIMIT_RULES:
        if not path.startswith(rule["path"]):
            continue
        suffix = rule.get("suffix")
        if suffix and not path.rstrip("/").endswith(suffix):
            continue
        required_method = rule.get("method")
        if required_method and required_method.upper() != method.upper():
            continue
        return rule
    return None


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For when present."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _rule_name(rule: dict) -> str:
    return rule["path"] + rule.get("suffix", "")


async def _check_rate_limit(redis, redis_key: str, rule: dict, request: Request) -> RateLimitResult:
    """Execute the sliding window check against Redis and return the result."""
    now = int(time.time())
    window = rule["window"]

    pipe = redis.pipeline()
    pipe.zremrangebyscore(redis_key, 0, now - window)
    pipe.zadd(redis_key, {f"{now}:{id(request)}": now})
    pipe.zcard(redis_key)
    pipe.expire(redis_key, window)
    results = await pipe.execute()

    return RateLimitResult(
        current_count=results[2],
        limit=rule["limit"],
        window=window,
        reset_at=now + window,
    )


def _add_rate_limit_headers(response: Response, result: RateLimitResult) -> None:
    """Attach X-RateLimit-* headers to a response."""
    response.headers["X-RateLimit-Limit"] = str(result.limit)
    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    response.headers["X-RateLimit-Reset"] = str(result.reset_at)


def _build_429_response(result: RateLimitResult) -> JSONResponse:
    """Create a 429 Too Many Requests response with rate limit headers."""
    response = JSONResponse(
        status_code=429,
        content={"detail": "Too many requests. Please try again later."},
    )
    _add_rate_limit_headers(response, result)
    response.headers["Retry-After"] = str(result.window)
    return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-backed sliding window limiter for checkout, bundle and download routes.

    Redis being unavailable lets the request through.
    """

    async def dispatch(self, request: Request, call_next):
        if request.url.path in SKIP_PATHS:
            return await call_next(request)

        rule = _find_matching_rule(request.url.path, request.method)
        if rule is None:
            return await call_next(request)

        identifier = _get_client_ip(request)
        redis_key = f"ratelimit:{_rule_name(rule)}:{identifier}"

        redis = getattr(request.app.state, "redis", None)
        if redis is None:
            return await call_next(request)

        try:
            result = await _check_rate_limit(redis, redis_key, rule, request)
        except (RedisError, OSError) as exc:
            log.warning("rate_limit_redis_error", error=str(exc), path=request.url.path)
            return await call_next(request)

        if result.exceeded:
            log.warning(
                "rate_limit_exceeded",
                path=request.url.path,
                identifier=identifier,
                limit=result.limit,
                count=result.current_count,
            )
            return _build_429_response(result)

        response = await call_next(request)
        _add_rate_limit_headers(response, result)
        return response
