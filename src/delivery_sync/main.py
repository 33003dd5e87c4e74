"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database and Redis initialization and the Notion sync engine, and
the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.delivery_sync.config import get_settings
from src.delivery_sync.core.database import close_db, get_session, init_db
from src.delivery_sync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.delivery_sync.core.redis import close_redis, get_redis_pool
from src.delivery_sync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.delivery_sync.api.v1.router import router as v1_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Redis, Sentry and the sync engine on startup, stop them on shutdown."""
    import structlog

    from src.delivery_sync.projects.repository import ProjectRepository
    from src.delivery_sync.sync.field_mapping import verify_property_map
    from src.delivery_sync.sync.hooks import ProjectService

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    # A property map that drops a field would silently stop syncing it
    verify_property_map()

    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    project_repository = ProjectRepository(session_factory=get_session)
    app.state.project_repository = project_repository

    # ── Notion Sync Engine ───────────────────────────────────────────────
    # Missing Notion credentials leave sync disabled (routes return 503).
    # With credentials but no webhook secret, startup fails: accepting
    # unauthenticated webhooks is not an option.

    sync_service = None
    if settings.sync_enabled:
        from src.delivery_sync.sync.notion import NotionDocumentClient
        from src.delivery_sync.sync.rate_limit import TokenBucket
        from src.delivery_sync.sync.service import SyncService

        notion_client = NotionDocumentClient(
            token=settings.NOTION_TOKEN,
            database_id=settings.NOTION_DATABASE_ID,
            timeout=settings.NOTION_TIMEOUT_SECONDS,
            rate_limiter=TokenBucket(rate=settings.NOTION_REQUESTS_PER_SECOND),
        )
        sync_service = SyncService.from_settings(
            settings, project_repository, notion_client, get_redis_pool()
        )
        await sync_service.start()
        log.info(
            "sync.initialized",
            database_id=settings.NOTION_DATABASE_ID,
            workers=settings.SYNC_WORKER_COUNT,
        )
    else:
        log.warning("sync.disabled", reason="NOTION_TOKEN or NOTION_DATABASE_ID not configured")

    app.state.sync_service = sync_service
    app.state.project_service = ProjectService(
        project_repository,
        hook=sync_service.hook if sync_service is not None else None,
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    if sync_service is not None:
        try:
            await sync_service.stop()
        except Exception:
            log.warning("sync.shutdown_failed", exc_info=True)

    await close_redis()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Delivery Sync API",
        version="0.1.0",
        description="Notion and Postgres synchronization for delivery projects",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, webhooks, sync)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
