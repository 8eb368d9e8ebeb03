"""
Hestia Rental Guarantee Service: FastAPI application
====================================================
Policy lifecycle for rental guarantees: actor information collection,
investigation, contract versioning and payment reconciliation.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from hestia import __version__
from hestia.api.v1 import actors, auth, contracts, investigation, payments, policies
from hestia.config import settings
from hestia.container import ServiceContainer, build_container
from hestia.core.errors import HestiaError
from hestia.middleware import LoggingMiddleware, RateLimitMiddleware

logger = logging.getLogger(__name__)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Build the application. Tests pass a pre-wired container."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ── startup ──────────────────────────────────────────────────
        logger.info(f"Hestia API starting (environment: {settings.ENVIRONMENT})")
        app.state.container = container or build_container(settings)

        wired = app.state.container.settings
        if wired.AUTO_CREATE_SCHEMA or wired.ENVIRONMENT == "development":
            await app.state.container.create_schema()
            logger.info("Database schema ready")

        yield

        # ── shutdown ─────────────────────────────────────────────────
        await app.state.container.dispose()
        logger.info("Hestia API stopped")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description=(
            "Rental guarantee policy API\n\n"
            "## Actors\n"
            "- Landlord (one or more, exactly one primary)\n"
            "- Tenant\n"
            "- Joint obligor / aval, depending on the guarantor type\n\n"
            "## Lifecycle\n"
            "DRAFT -> COLLECTING_INFO -> UNDER_INVESTIGATION -> PENDING_APPROVAL -> "
            "CONTRACT_PENDING -> CONTRACT_UPLOADED -> CONTRACT_SIGNED -> ACTIVE -> EXPIRED\n"
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
        redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
    )

    # ── middleware, outermost first ──────────────────────────────────

    # 1. gzip (responses over 1kb)
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    # 2. rate limiting (Redis sliding window)
    app.add_middleware(RateLimitMiddleware)

    # 3. structured access log + correlation id
    app.add_middleware(LoggingMiddleware)

    # 4. CORS (development: any origin, otherwise CORS_ORIGINS)
    if settings.ENVIRONMENT == "development":
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )
    elif settings.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS,
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        )

    @app.exception_handler(HestiaError)
    async def hestia_error_handler(request: Request, exc: HestiaError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    # API routers
    prefix = settings.API_V1_PREFIX
    app.include_router(auth.router, prefix=f"{prefix}/auth", tags=["Auth (JWT)"])
    app.include_router(policies.router, prefix=f"{prefix}/policies", tags=["Policies"])
    app.include_router(
        investigation.router,
        prefix=f"{prefix}/policies/{{policy_id}}/investigation",
        tags=["Investigation"],
    )
    app.include_router(
        contracts.router,
        prefix=f"{prefix}/policies/{{policy_id}}/contracts",
        tags=["Contracts"],
    )
    app.include_router(
        payments.router,
        prefix=f"{prefix}/policies/{{policy_id}}/payments",
        tags=["Payments"],
    )
    app.include_router(actors.router, prefix=f"{prefix}/actors", tags=["Actors"])
    app.include_router(actors.portal_router, prefix=f"{prefix}/actor/{{token}}", tags=["Actor portal"])
    app.include_router(payments.webhook_router, prefix=f"{prefix}/webhooks", tags=["Webhooks"])

    @app.get("/health", tags=["System"])
    async def health():
        return {"status": "ok", "service": "hestia-api", "version": __version__}

    # ── Prometheus metrics (/metrics) ────────────────────────────────
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=True,          # enabled with ENABLE_METRICS=true
        env_var_name="ENABLE_METRICS",
        excluded_handlers=["/health", "/metrics"],
    ).instrument(app).expose(app, include_in_schema=False, tags=["System"])

    return app


app = create_app()
