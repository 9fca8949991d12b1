from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.config.settings import Settings
from jobrelay.infra.database import Database
from jobrelay.main import create_app
from jobrelay.v1.core.registries import ExecutorRegistry
from jobrelay.v1.jobs.dispatcher import Dispatcher
from jobrelay.v1.jobs.executor import ExecutionResult
from jobrelay.v1.jobs.models import SubjectKind
from jobrelay.v1.jobs.schemas import EnqueueRequest
from jobrelay.v1.jobs.service import JobService
from jobrelay.v1.jobs.store import JobStore
from jobrelay.v1.metrics.service import HealthAggregator
from jobrelay.v1.realtime.notifier import ChangeNotifier

# Import models to ensure they're registered
from jobrelay.v1.jobs import subjects  # noqa: F401
from jobrelay.v1.metrics import models as metrics_models  # noqa: F401


class ScriptedExecutor:
    """
    Executor that plays back queued outcomes, then succeeds.

    An outcome is a result dict, an exception instance to raise, or an async
    callable taking the job and returning either.
    """

    def __init__(self, response_time_ms: int = 120):
        self.response_time_ms = response_time_ms
        self.outcomes: list[Any] = []
        self.calls: list[tuple[str, int]] = []

    def script(self, *outcomes: Any) -> None:
        self.outcomes.extend(outcomes)

    async def execute(self, job) -> ExecutionResult:
        self.calls.append((str(job.id), job.attempts))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if callable(outcome):
            outcome = await outcome(job)
        if isinstance(outcome, Exception):
            raise outcome
        return ExecutionResult(
            data=outcome or {"extracted": True},
            status_code=200,
            response_time_ms=self.response_time_ms,
        )


def extraction_request(
    subject_id: str = "ct-1",
    organization_id: str = "org-1",
    kind: SubjectKind = SubjectKind.CONTENT_TYPE,
    value: str = "https://example.com/sample.pdf",
) -> EnqueueRequest:
    return EnqueueRequest(
        subject_kind=kind,
        subject_id=subject_id,
        organization_id=organization_id,
        payload={"examples": [{"type": "url", "value": value}]},
    )


def webhook_request(
    webhook_id: str = "wh-1",
    organization_id: str = "org-1",
    retry_config: dict[str, Any] | None = None,
) -> EnqueueRequest:
    payload: dict[str, Any] = {
        "event_type": "content.published",
        "data": {"content_id": "c-42"},
    }
    if retry_config is not None:
        payload["retry_config"] = retry_config
    return EnqueueRequest(
        webhook_id=webhook_id, organization_id=organization_id, payload=payload
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite database."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobrelay.db'}",
        environment="development",
        debug=False,
        log_level="WARNING",
        dispatcher_enabled=False,
        dispatch_batch_size=5,
        dispatch_wake_debounce_ms=0,
        executor_timeout_s=5.0,
        job_max_attempts=3,
        webhook_retry_delay_ms=1000,
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    """Create a database with all tables."""
    database = Database(settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
async def session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with database.SessionLocal() as session:
        yield session


@pytest.fixture
def notifier() -> ChangeNotifier:
    return ChangeNotifier()


@pytest.fixture
def store(notifier: ChangeNotifier) -> JobStore:
    return JobStore(notifier)


@pytest.fixture
def service(settings: Settings, store: JobStore) -> JobService:
    return JobService(settings, store)


@pytest.fixture
def aggregator() -> HealthAggregator:
    return HealthAggregator()


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def executors(executor: ScriptedExecutor) -> ExecutorRegistry:
    """A private executor registry routing every subject kind to the script."""
    registry = ExecutorRegistry()
    for kind in SubjectKind:
        registry.register(kind.value, executor)
    return registry


@pytest.fixture
def dispatcher(
    settings: Settings,
    database: Database,
    store: JobStore,
    executors: ExecutorRegistry,
    aggregator: HealthAggregator,
    notifier: ChangeNotifier,
) -> Dispatcher:
    return Dispatcher(
        settings, database.SessionLocal, store, executors, aggregator, notifier
    )


@pytest.fixture
def make_extraction() -> Callable[..., EnqueueRequest]:
    return extraction_request


@pytest.fixture
def make_webhook() -> Callable[..., EnqueueRequest]:
    return webhook_request


@pytest.fixture
async def app(settings: Settings, database: Database, executors: ExecutorRegistry):
    """Create a test FastAPI application on the test database."""
    app = create_app(settings, executors)
    yield app
    await app.state.database.close()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
