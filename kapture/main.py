"""FastAPI application entry point.

Assembles the clients, engines and routers, and runs the background sweeps
for the lifetime of the process.
"""

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncGenerator, List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from kapture import __version__
from kapture.api import downloads, health, maintenance, metrics
from kapture.clients.base import JobWorkerClient
from kapture.clients.storage import DEPENDENCY as STORAGE_DEPENDENCY
from kapture.clients.storage import LocalObjectStorage
from kapture.clients.worker import DEPENDENCY as WORKER_DEPENDENCY
from kapture.clients.worker import HTTPJobWorkerClient
from kapture.core.circuit_breaker import CircuitBreakerRegistry
from kapture.core.config import Config, ConfigService, SecurityConfig
from kapture.core.errors import EXCEPTION_TO_ERROR_CODE, APIError, global_exception_handler
from kapture.core.logging import clear_request_id, configure_logging, set_request_id
from kapture.core.metrics import MetricsCollector, initialize_metrics
from kapture.middleware.auth import configure_auth
from kapture.models.job import Job
from kapture.services.downloads import DownloadService
from kapture.services.job_locks import JobLockTable
from kapture.services.job_store import InMemoryJobStore, JobStore
from kapture.services.progress_cache import ProgressCache
from kapture.services.reconciler import JobReconciler
from kapture.services.retention import RetentionService
from kapture.services.scheduler import cleanup_scheduler, quota_scheduler, reconcile_scheduler

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP request metrics.

    Records request count and duration for all endpoints,
    using FastAPI route templates to normalize paths.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        # Fixed label for unmatched routes to prevent unbounded cardinality
        route = request.scope.get("route")
        endpoint = route.path if route else "/unmatched"

        MetricsCollector.record_request(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
            duration=duration,
        )

        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Binds a request id to the logging context and echoes it back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = set_request_id(request.headers.get(REQUEST_ID_HEADER))
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


@dataclass
class Services:
    """Everything the routers and background sweeps depend on."""

    store: JobStore
    worker: JobWorkerClient
    storage: LocalObjectStorage
    breakers: CircuitBreakerRegistry
    locks: JobLockTable
    progress_cache: ProgressCache
    reconciler: JobReconciler
    retention: RetentionService
    downloads: DownloadService
    background_tasks: List["asyncio.Task[object]"] = field(default_factory=list)


def build_services(config: Config) -> Services:
    """Wire clients and engines from configuration."""
    breakers = CircuitBreakerRegistry(
        failure_threshold=config.circuit_breaker.failure_threshold,
        cooldown=config.circuit_breaker.cooldown,
    )

    worker = HTTPJobWorkerClient(
        base_url=config.worker.base_url,
        breaker=breakers.get(WORKER_DEPENDENCY, HTTPJobWorkerClient.BREAKER_EXCLUDED),
        request_timeout=config.worker.request_timeout,
        connect_timeout=config.worker.connect_timeout,
    )
    storage = LocalObjectStorage(
        root_dir=config.storage.root_dir,
        breaker=breakers.get(STORAGE_DEPENDENCY),
        request_timeout=config.storage.request_timeout,
        public_base_url=config.storage.public_base_url,
    )

    store = InMemoryJobStore()
    locks = JobLockTable()
    progress_cache = ProgressCache(
        ttl=config.progress.ttl,
        max_entries=config.progress.max_entries,
    )

    retention = RetentionService(
        store,
        storage,
        locks,
        keep_count=config.retention.keep_count,
        cleanup_delay=config.retention.cleanup_delay,
        batch_size=config.retention.batch_size,
        max_iterations=config.retention.max_iterations,
        iteration_pause=config.retention.iteration_pause,
        quota_concurrency=config.retention.quota_concurrency,
        emergency_older_than_days=config.retention.emergency_older_than_days,
    )

    async def on_completed(job: Job) -> None:
        await retention.recompute_retention(job.user_id)

    reconciler = JobReconciler(
        store,
        worker,
        locks,
        progress_cache,
        on_completed=on_completed,
        not_found_grace=config.reconciliation.not_found_grace,
        pending_timeout=config.reconciliation.pending_timeout,
        stuck_job_policy=config.reconciliation.stuck_job_policy,
        not_found_policy=config.reconciliation.not_found_policy,
        batch_limit=config.reconciliation.batch_limit,
        max_concurrency=config.reconciliation.max_concurrency,
        recovery_successes=config.reconciliation.recovery_successes,
    )

    download_service = DownloadService(
        store, worker, storage, locks, progress_cache, reconciler
    )

    return Services(
        store=store,
        worker=worker,
        storage=storage,
        breakers=breakers,
        locks=locks,
        progress_cache=progress_cache,
        reconciler=reconciler,
        retention=retention,
        downloads=download_service,
    )


def start_background_sweeps(services: Services, config: Config) -> None:
    services.background_tasks = [
        asyncio.create_task(
            reconcile_scheduler(services.reconciler, interval=config.reconciliation.interval)
        ),
        asyncio.create_task(
            cleanup_scheduler(services.retention, interval=config.retention.sweep_interval)
        ),
        asyncio.create_task(
            quota_scheduler(services.retention, interval=config.retention.sweep_interval)
        ),
    ]
    logger.info(
        "background_sweeps_started",
        reconcile_interval=config.reconciliation.interval,
        retention_interval=config.retention.sweep_interval,
    )


async def stop_background_sweeps(services: Services) -> None:
    for task in services.background_tasks:
        task.cancel()
    for task in services.background_tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    services.background_tasks = []


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown.

    When services were injected through ``create_app`` (tests), nothing is
    built and no background sweep is started.
    """
    if app.state.services is not None:
        yield
        return

    logger.info("application_starting", version=__version__)

    initialize_metrics(__version__)

    config_service = ConfigService()
    config = config_service.load()
    config_service.validate()

    configure_logging(config.logging.level, config.logging.format)
    configure_auth(api_keys=config.security.api_keys)

    services = build_services(config)
    services.storage.initialize()
    app.state.services = services

    logger.info(
        "configuration_loaded",
        worker_base_url=config.worker.base_url,
        storage_root=config.storage.root_dir,
        keep_count=config.retention.keep_count,
    )

    start_background_sweeps(services, config)

    logger.info("application_startup_complete", version=__version__)

    try:
        yield
    finally:
        logger.info("application_shutting_down")

        await stop_background_sweeps(services)
        if isinstance(services.worker, HTTPJobWorkerClient):
            await services.worker.aclose()
        app.state.services = None

        logger.info("application_shutdown_complete")


def _services(request: Request) -> Services:
    services: Optional[Services] = request.app.state.services
    if services is None:
        raise RuntimeError("Application services not configured")
    return services


def get_download_service(request: Request) -> DownloadService:
    return _services(request).downloads


def get_retention_service(request: Request) -> RetentionService:
    return _services(request).retention


def get_reconciler(request: Request) -> JobReconciler:
    return _services(request).reconciler


def get_breaker_registry(request: Request) -> CircuitBreakerRegistry:
    return _services(request).breakers


def get_storage(request: Request) -> LocalObjectStorage:
    return _services(request).storage


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Pre-built services. When given, the lifespan neither loads
            configuration nor starts background sweeps.
    """
    app = FastAPI(
        title="Kapture",
        description="Media download job tracking with keep-N retention",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.services = services

    # Default ["*"] for development; override via KAPTURE_SECURITY_CORS_ORIGINS
    security_config = SecurityConfig()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=security_config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Specific handlers so domain errors are answered by ExceptionMiddleware
    for exc_type in EXCEPTION_TO_ERROR_CODE:
        app.add_exception_handler(exc_type, global_exception_handler)
    app.add_exception_handler(APIError, global_exception_handler)
    app.add_exception_handler(HTTPException, global_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.dependency_overrides[downloads.get_download_service] = get_download_service
    app.dependency_overrides[downloads.get_retention_service] = get_retention_service
    app.dependency_overrides[maintenance.get_reconciler] = get_reconciler
    app.dependency_overrides[maintenance.get_retention_service] = get_retention_service
    app.dependency_overrides[health.get_breaker_registry] = get_breaker_registry
    app.dependency_overrides[health.get_storage] = get_storage

    app.include_router(health.router)
    app.include_router(downloads.router)
    app.include_router(maintenance.router)
    app.include_router(metrics.router)

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)  # nosec B104
