from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from jobrelay.config.logging import get_logger, setup_logging
from jobrelay.config.settings import Settings, get_settings
from jobrelay.config.settings import settings as default_settings
from jobrelay.infra.database import Database
from jobrelay.v1.core.exceptions import (
    JobRelayException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    job_relay_exception_handler,
)
from jobrelay.v1.core.registries import (
    ExecutorRegistry,
    executor_registry,
    subject_registry,
)
from jobrelay.v1.healthz import router as health_router
from jobrelay.v1.jobs.dispatcher import Dispatcher
from jobrelay.v1.jobs.executor import register_executors
from jobrelay.v1.jobs.routes import router as jobs_router
from jobrelay.v1.jobs.service import JobService
from jobrelay.v1.jobs.store import JobStore
from jobrelay.v1.metrics.routes import router as metrics_router
from jobrelay.v1.metrics.service import HealthAggregator
from jobrelay.v1.realtime.notifier import ChangeNotifier
from jobrelay.v1.realtime.routes import router as realtime_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the dispatcher alongside the API and release resources on shutdown."""
    settings: Settings = app.state.settings
    database: Database = app.state.database
    dispatcher: Dispatcher = app.state.dispatcher

    if settings.is_sqlite:
        await database.create_all()

    if settings.dispatcher_enabled:
        await dispatcher.start()

    try:
        yield
    finally:
        if dispatcher.running:
            await dispatcher.stop()
        await database.close()
        logger.info("Application shutdown complete")


def create_app(
    settings: Settings | None = None,
    executors: ExecutorRegistry | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or default_settings

    # Initialize structured logging
    setup_logging(settings)

    # Create FastAPI app with API versioning from day 1
    app = FastAPI(
        title=settings.app_name,
        description="Retryable extraction jobs and webhook deliveries",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    if executors is None:
        executors = executor_registry
        if not executors.is_frozen():
            register_executors(settings, executors)

    # Wire application components
    database = Database(settings)
    notifier = ChangeNotifier()
    store = JobStore(notifier)
    aggregator = HealthAggregator()
    app.state.settings = settings
    app.dependency_overrides[get_settings] = lambda: settings
    app.state.database = database
    app.state.notifier = notifier
    app.state.store = store
    app.state.aggregator = aggregator
    app.state.job_service = JobService(settings, store)
    app.state.dispatcher = Dispatcher(
        settings,
        database.SessionLocal,
        store,
        executors,
        aggregator,
        notifier,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(JobRelayException, job_relay_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(realtime_router, prefix="/v1")
    app.include_router(metrics_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        subject_registry.freeze()
        executors.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jobrelay.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        workers=1 if default_settings.debug else default_settings.workers,
    )
