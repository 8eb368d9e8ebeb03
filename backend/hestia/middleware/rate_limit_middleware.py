"""
Redis sliding-window rate limiting middleware
=============================================
- per-client default limit (RATE_LIMIT_PER_MINUTE, default 60)
- actor portal paths get a stricter limit (token guessing)
- payment webhooks are exempt (gateway retries must not be dropped)
- HTTP 429 with Retry-After when exceeded
- Redis unreachable: requests pass (fail-open)
"""
import logging
import time

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from hestia.config import settings

logger = logging.getLogger("hestia.ratelimit")

_DEFAULT_LIMIT = settings.RATE_LIMIT_PER_MINUTE
_ACTOR_PORTAL_LIMIT = settings.RATE_LIMIT_ACTOR_PORTAL_PER_MINUTE
_WINDOW_SECONDS = 60

_redis: aioredis.Redis | None = aioredis.from_url(settings.REDIS_URL, decode_responses=True)


def _get_client_key(request: Request) -> str:
    """Client key: bearer token when present, otherwise IP."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        # last 16 chars only, never the full token
        return f"rl:token:{auth[-16:]}"
    client_ip = request.client.host if request.client else "unknown"
    return f"rl:ip:{client_ip}"


async def _check_rate_limit(key: str, limit: int) -> tuple[bool, int, int]:
    """
    Sliding-window check.

    Returns:
        (allowed, remaining, retry_after_seconds)
    """
    if _redis is None:
        return True, limit, 0

    try:
        now = time.time()
        window_start = now - _WINDOW_SECONDS

        pipe = _redis.pipeline()
        # drop expired -> add current -> count
        pipe.zremrangebyscore(key, "-inf", window_start)
        pipe.zadd(key, {str(now): now})
        pipe.zcard(key)
        pipe.expire(key, _WINDOW_SECONDS + 1)
        results = await pipe.execute()

        count: int = results[2]
        remaining = max(0, limit - count)
        allowed = count <= limit

        retry_after = 0
        if not allowed:
            oldest = await _redis.zrange(key, 0, 0, withscores=True)
            if oldest:
                retry_after = max(1, int(_WINDOW_SECONDS - (now - oldest[0][1])))

        return allowed, remaining, retry_after

    except (RedisError, OSError) as exc:
        logger.warning("rate_limit_redis_error: %s (fail-open)", exc)
        return True, limit, 0


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis sliding-window rate limiter."""

    _EXEMPT = frozenset(["/health", "/metrics", "/docs", "/redoc", "/openapi.json"])
    _EXEMPT_PREFIXES = ("/api/v1/webhooks",)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if path in self._EXEMPT or path.startswith(self._EXEMPT_PREFIXES):
            return await call_next(request)

        limit = _ACTOR_PORTAL_LIMIT if path.startswith("/api/v1/actor/") else _DEFAULT_LIMIT
        key = _get_client_key(request)

        allowed, remaining, retry_after = await _check_rate_limit(key, limit)

        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                extra={
                    "key": key,
                    "limit": limit,
                    "retry_after": retry_after,
                },
            )
            return JSONResponse(
                status_code=429,
                content={
                    "detail": f"Rate limit exceeded ({limit}/min). Retry in {retry_after}s.",
                    "limit": limit,
                    "retry_after": retry_after,
                },
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(int(time.time()) + retry_after),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response
