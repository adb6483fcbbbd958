"""
FastAPI Application Entry Point

Main application module that configures the request pipeline. Middleware
order, outermost first: CORS, idempotency guard, request logging, router.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from app.config import settings
from app.api.routes import health
from app.core.idempotency.guard import IdempotencyMiddleware
from app.core.idempotency.keys import REPLAY_HEADER, REQUEST_ID_HEADER
from app.core.idempotency.store import IdempotencyStore, build_idempotency_store
from app.core.scheduler.distributed_lock import DistributedLockManager
from app.core.scheduler.service import MaintenanceScheduler
from app.db.session import init_db, close_db
from app.monitoring.logging import RequestLoggingMiddleware, setup_logging
from app.monitoring.metrics import initialize_metrics


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    setup_logging()
    initialize_metrics(settings.app_name, settings.app_version)
    if settings.idempotency_backend == "database":
        await init_db()

    maintenance: Optional[MaintenanceScheduler] = app.state.maintenance_scheduler
    if maintenance is not None:
        await maintenance.start()

    yield

    # Shutdown
    if maintenance is not None:
        await maintenance.shutdown()
    await app.state.idempotency_store.close()
    await close_db()


def _build_maintenance_scheduler(store: IdempotencyStore) -> MaintenanceScheduler:
    lock_manager = None
    if settings.idempotency_backend != "memory":
        lock_manager = DistributedLockManager.from_url(
            str(settings.redis_url),
            lock_ttl=settings.idempotency_reaper_lock_ttl,
        )

    return MaintenanceScheduler(
        store,
        retention=timedelta(days=settings.idempotency_retention_days),
        interval_minutes=settings.idempotency_reaper_interval_minutes,
        lock_manager=lock_manager,
        lock_ttl=settings.idempotency_reaper_lock_ttl,
    )


def create_app(
    idempotency_store: Optional[IdempotencyStore] = None,
    maintenance_scheduler: Optional[MaintenanceScheduler] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        idempotency_store: Store override; built from settings when omitted
        maintenance_scheduler: Scheduler override; built from settings when
            omitted and the reaper is enabled
    """
    store = idempotency_store
    if store is None:
        store = build_idempotency_store(settings)
    if maintenance_scheduler is None and settings.idempotency_reaper_enabled:
        maintenance_scheduler = _build_maintenance_scheduler(store)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="CarbonTrack API with request-level idempotency protection",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.idempotency_store = store
    app.state.maintenance_scheduler = maintenance_scheduler

    # Added innermost first; the last middleware added runs first
    app.add_middleware(RequestLoggingMiddleware)

    if settings.idempotency_enabled:
        app.add_middleware(IdempotencyMiddleware, store=store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER, REPLAY_HEADER],
    )

    # Mount Prometheus metrics
    if settings.prometheus_enabled:
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    # Include routers
    app.include_router(health.router, tags=["Health"])

    return app


# Application instance
app = create_app()
