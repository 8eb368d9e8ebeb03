"""
Request/response logging middleware
===================================
- X-Request-ID header propagates the correlation id
- structured method / path / status / duration access log
- health and metrics endpoints are not logged
"""
import time
import uuid
import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("hestia.access")

_SKIP_PATHS = frozenset(["/health", "/metrics", "/favicon.ico"])

# Actor portal tokens travel in the path; never write them to the log.
_TOKEN_PREFIX = "/api/v1/actor/"

SLOW_REQUEST_MS = 500


def _loggable_path(path: str) -> str:
    if path.startswith(_TOKEN_PREFIX):
        rest = path[len(_TOKEN_PREFIX):]
        _, sep, tail = rest.partition("/")
        return f"{_TOKEN_PREFIX}***{sep}{tail}"
    return path


class LoggingMiddleware(BaseHTTPMiddleware):
    """Structured access log with correlation id injection."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        path = request.url.path
        skip = path in _SKIP_PATHS

        start = time.perf_counter()
        response: Response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000

        response.headers["X-Request-ID"] = request_id

        if not skip:
            logged_path = _loggable_path(path)
            logger.info(
                "request",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": logged_path,
                    "status": response.status_code,
                    "duration_ms": round(elapsed_ms, 2),
                    "client": request.client.host if request.client else "-",
                },
            )

            if elapsed_ms > SLOW_REQUEST_MS:
                logger.warning(
                    "slow_request",
                    extra={
                        "request_id": request_id,
                        "path": logged_path,
                        "duration_ms": round(elapsed_ms, 2),
                    },
                )

        return response
