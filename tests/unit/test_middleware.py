"""
Middleware unit tests
=====================
LoggingMiddleware and RateLimitMiddleware checked at the ASGI level.

Runs without external services (Redis mock, FastAPI TestClient).
"""
import time
import uuid
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError


# ──────────────────────────────────────────────────────────────────────────────
# Minimal app factories
# ──────────────────────────────────────────────────────────────────────────────

def _make_app_with_logging() -> FastAPI:
    from hestia.middleware.logging_middleware import LoggingMiddleware

    app = FastAPI()
    app.add_middleware(LoggingMiddleware)

    @app.get("/ping")
    async def ping():
        return {"pong": True}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/v1/actor/{token}")
    async def portal(token: str):
        return {"ok": True}

    return app


def _make_app_with_ratelimit(redis_mock=None) -> FastAPI:
    import hestia.middleware.rate_limit_middleware as rl_mod

    rl_mod._redis = redis_mock

    from hestia.middleware.rate_limit_middleware import RateLimitMiddleware

    app = FastAPI()
    app.add_middleware(RateLimitMiddleware)

    @app.get("/api/v1/actor/{token}")
    async def portal(token: str):
        return {"actor": True}

    @app.get("/api/v1/policies")
    async def policies():
        return {"items": []}

    @app.post("/api/v1/webhooks/payments")
    async def webhook():
        return {"applied": True}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def _pipeline_mock(count: int) -> MagicMock:
    pipeline = MagicMock()
    pipeline.execute = AsyncMock(return_value=[None, None, count, None])
    pipeline.zremrangebyscore = MagicMock()
    pipeline.zadd = MagicMock()
    pipeline.zcard = MagicMock()
    pipeline.expire = MagicMock()
    return pipeline


# ══════════════════════════════════════════════════════════════════════════════
# 1. LoggingMiddleware
# ══════════════════════════════════════════════════════════════════════════════
class TestLoggingMiddleware:
    """Access log and correlation id."""

    def test_response_contains_x_request_id(self):
        client = TestClient(_make_app_with_logging())
        resp = client.get("/ping")
        assert resp.status_code == 200
        assert "x-request-id" in resp.headers

    def test_client_request_id_is_preserved(self):
        custom_id = "my-correlation-id-12345"
        client = TestClient(_make_app_with_logging())
        resp = client.get("/ping", headers={"X-Request-ID": custom_id})
        assert resp.headers["x-request-id"] == custom_id

    def test_auto_generated_request_id_is_uuid(self):
        client = TestClient(_make_app_with_logging())
        generated_id = client.get("/ping").headers["x-request-id"]
        assert str(uuid.UUID(generated_id)) == generated_id

    def test_health_path_still_returns_x_request_id(self):
        """/health skips the access log, not the header."""
        client = TestClient(_make_app_with_logging())
        resp = client.get("/health")
        assert resp.status_code == 200
        assert "x-request-id" in resp.headers

    def test_slow_request_warning_is_logged(self):
        """Responses slower than 500ms log slow_request."""
        from hestia.middleware.logging_middleware import LoggingMiddleware

        app = FastAPI()
        app.add_middleware(LoggingMiddleware)

        @app.get("/slow")
        async def slow():
            return {"ok": True}

        with patch("hestia.middleware.logging_middleware.time") as mock_time:
            # perf_counter: 0 -> 1.0 (1000ms elapsed)
            mock_time.perf_counter.side_effect = [0.0, 1.0]

            with patch("hestia.middleware.logging_middleware.logger") as mock_logger:
                TestClient(app).get("/slow")

                mock_logger.warning.assert_called_once()
                assert "slow_request" in mock_logger.warning.call_args[0][0]

    def test_normal_request_no_slow_warning(self):
        with patch("hestia.middleware.logging_middleware.logger") as mock_logger:
            TestClient(_make_app_with_logging()).get("/ping")
            mock_logger.warning.assert_not_called()

    def test_actor_token_masked_in_log(self):
        with patch("hestia.middleware.logging_middleware.logger") as mock_logger:
            TestClient(_make_app_with_logging()).get("/api/v1/actor/secret-token-value")
            logged = mock_logger.info.call_args.kwargs["extra"]["path"]
        assert "secret-token-value" not in logged
        assert logged == "/api/v1/actor/***"


class TestLoggablePath:
    def test_plain_path_unchanged(self):
        from hestia.middleware.logging_middleware import _loggable_path
        assert _loggable_path("/api/v1/policies/abc") == "/api/v1/policies/abc"

    def test_token_with_subpath(self):
        from hestia.middleware.logging_middleware import _loggable_path
        assert _loggable_path("/api/v1/actor/tok123/documents") == "/api/v1/actor/***/documents"


# ══════════════════════════════════════════════════════════════════════════════
# 2. _get_client_key
# ══════════════════════════════════════════════════════════════════════════════
class TestGetClientKey:
    """Client key derivation for rate limiting."""

    def _make_request(self, auth_header: str | None = None) -> str:
        from starlette.applications import Starlette
        from starlette.requests import Request as StarReq
        from starlette.responses import JSONResponse
        from starlette.routing import Route
        from starlette.testclient import TestClient as StarletteTC

        captured = {}

        async def capture_view(request: StarReq):
            from hestia.middleware.rate_limit_middleware import _get_client_key
            captured["key"] = _get_client_key(request)
            return JSONResponse({"key": captured["key"]})

        app = Starlette(routes=[Route("/", capture_view)])
        headers = {"Authorization": auth_header} if auth_header else {}
        StarletteTC(app).get("/", headers=headers)
        return captured.get("key", "")

    def test_ip_key_without_auth(self):
        assert self._make_request().startswith("rl:ip:")

    def test_token_key_with_bearer(self):
        token = "eyJhbGciOiJIUzI1NiJ9.payload.signature_abc"
        key = self._make_request(auth_header=f"Bearer {token}")
        assert key.startswith("rl:token:")
        assert key.endswith(token[-16:])

    def test_non_bearer_auth_uses_ip(self):
        assert self._make_request(auth_header="Basic dXNlcjpwYXNz").startswith("rl:ip:")


# ══════════════════════════════════════════════════════════════════════════════
# 3. _check_rate_limit
# ══════════════════════════════════════════════════════════════════════════════
class TestCheckRateLimit:
    """Sliding-window logic against a mocked Redis."""

    @pytest.mark.asyncio
    async def test_fail_open_when_redis_is_none(self):
        import hestia.middleware.rate_limit_middleware as rl_mod
        original = rl_mod._redis
        try:
            rl_mod._redis = None
            allowed, remaining, retry_after = await rl_mod._check_rate_limit("key", 60)
            assert (allowed, remaining, retry_after) == (True, 60, 0)
        finally:
            rl_mod._redis = original

    @pytest.mark.asyncio
    async def test_allows_request_under_limit(self):
        mock_redis = AsyncMock()
        mock_redis.pipeline = MagicMock(return_value=_pipeline_mock(5))

        import hestia.middleware.rate_limit_middleware as rl_mod
        original = rl_mod._redis
        try:
            rl_mod._redis = mock_redis
            allowed, remaining, retry_after = await rl_mod._check_rate_limit("rl:ip:127.0.0.1", 60)
            assert allowed is True
            assert remaining == 55
            assert retry_after == 0
        finally:
            rl_mod._redis = original

    @pytest.mark.asyncio
    async def test_blocks_request_over_limit(self):
        mock_redis = AsyncMock()
        mock_redis.pipeline = MagicMock(return_value=_pipeline_mock(31))
        mock_redis.zrange = AsyncMock(return_value=[("ts_value", time.time() - 5)])

        import hestia.middleware.rate_limit_middleware as rl_mod
        original = rl_mod._redis
        try:
            rl_mod._redis = mock_redis
            allowed, remaining, retry_after = await rl_mod._check_rate_limit("rl:ip:127.0.0.1", 30)
            assert allowed is False
            assert remaining == 0
            assert retry_after >= 1
        finally:
            rl_mod._redis = original

    @pytest.mark.asyncio
    async def test_fail_open_on_redis_error(self):
        pipeline = _pipeline_mock(0)
        pipeline.execute = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        mock_redis = AsyncMock()
        mock_redis.pipeline = MagicMock(return_value=pipeline)

        import hestia.middleware.rate_limit_middleware as rl_mod
        original = rl_mod._redis
        try:
            rl_mod._redis = mock_redis
            allowed, _, _ = await rl_mod._check_rate_limit("rl:ip:127.0.0.1", 60)
            assert allowed is True
        finally:
            rl_mod._redis = original


# ══════════════════════════════════════════════════════════════════════════════
# 4. RateLimitMiddleware over HTTP
# ══════════════════════════════════════════════════════════════════════════════
class TestRateLimitMiddlewareHttp:
    def test_exempt_paths_pass_without_limit(self):
        resp = TestClient(_make_app_with_ratelimit(redis_mock=None)).get("/health")
        assert resp.status_code == 200
        assert "x-ratelimit-limit" not in resp.headers

    def test_webhooks_exempt(self):
        """Gateway retries must never be throttled."""
        with patch(
            "hestia.middleware.rate_limit_middleware._check_rate_limit",
            new_callable=AsyncMock,
            return_value=(False, 0, 30),
        ):
            resp = TestClient(_make_app_with_ratelimit(redis_mock=MagicMock())).post("/api/v1/webhooks/payments")
        assert resp.status_code == 200
        assert "x-ratelimit-limit" not in resp.headers

    def test_actor_portal_uses_lower_limit(self):
        import hestia.middleware.rate_limit_middleware as rl_mod
        rl_mod._ACTOR_PORTAL_LIMIT = 30
        rl_mod._DEFAULT_LIMIT = 60

        resp = TestClient(_make_app_with_ratelimit(redis_mock=None)).get("/api/v1/actor/some-token")
        assert resp.status_code == 200
        assert resp.headers["x-ratelimit-limit"] == "30"

    def test_staff_api_uses_default_limit(self):
        import hestia.middleware.rate_limit_middleware as rl_mod
        rl_mod._DEFAULT_LIMIT = 60

        resp = TestClient(_make_app_with_ratelimit(redis_mock=None)).get("/api/v1/policies")
        assert resp.status_code == 200
        assert resp.headers["x-ratelimit-limit"] == "60"
        assert "x-ratelimit-remaining" in resp.headers

    def test_rate_limit_exceeded_returns_429(self):
        with patch(
            "hestia.middleware.rate_limit_middleware._check_rate_limit",
            new_callable=AsyncMock,
            return_value=(False, 0, 30),
        ):
            resp = TestClient(_make_app_with_ratelimit(redis_mock=MagicMock())).get("/api/v1/policies")

        assert resp.status_code == 429
        body = resp.json()
        assert "detail" in body
        assert body["retry_after"] == 30
        assert resp.headers["retry-after"] == "30"
        assert resp.headers["x-ratelimit-remaining"] == "0"
        assert "x-ratelimit-reset" in resp.headers


# ══════════════════════════════════════════════════════════════════════════════
# 5. Stack order
# ══════════════════════════════════════════════════════════════════════════════
class TestMiddlewareStack:
    def _make_stacked_app(self) -> FastAPI:
        import hestia.middleware.rate_limit_middleware as rl_mod
        rl_mod._redis = None

        from fastapi.middleware.gzip import GZipMiddleware
        from hestia.middleware import LoggingMiddleware, RateLimitMiddleware

        app = FastAPI()
        app.add_middleware(GZipMiddleware, minimum_size=1024)
        app.add_middleware(RateLimitMiddleware)
        app.add_middleware(LoggingMiddleware)

        @app.get("/api/v1/test")
        async def test_ep():
            return {"result": "ok"}

        return app

    def test_stacked_response_has_both_headers(self):
        resp = TestClient(self._make_stacked_app()).get("/api/v1/test")
        assert resp.status_code == 200
        assert "x-request-id" in resp.headers
        assert "x-ratelimit-limit" in resp.headers

    def test_custom_request_id_preserved_through_stack(self):
        resp = TestClient(self._make_stacked_app()).get("/api/v1/test", headers={"X-Request-ID": "stack-9999"})
        assert resp.headers["x-request-id"] == "stack-9999"
