from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.config.settings import Settings, SettingsDep
from jobrelay.infra.database import get_session
from jobrelay.v1.core.exceptions import create_success_response
from jobrelay.v1.jobs.models import ACTIVE_STATUSES, JobRecord, JobStatus

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class DispatcherHealth(BaseModel):
    """Dispatcher health status."""

    state: str
    running: bool
    last_cycle_at: str | None = None
    stale_jobs_count: int = 0
    queue_depth: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    request: Request,
    settings: Settings = SettingsDep,
    session: AsyncSession = Depends(get_session),
):
    """Health check endpoint with database and dispatcher status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    overall_ok = db_health.connected

    dispatcher_health = None
    if db_health.connected:
        dispatcher_health = await _check_dispatcher_health(request, session, settings)

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "dispatcher": dispatcher_health.model_dump() if dispatcher_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        # Simple query to test database connectivity
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except SQLAlchemyError as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_dispatcher_health(
    request: Request, session: AsyncSession, settings: Settings
) -> DispatcherHealth:
    """Check dispatcher state and queue status."""
    dispatcher = request.app.state.dispatcher

    stale_threshold = datetime.now(UTC).timestamp() - settings.job_visibility_timeout_s
    stale_cutoff = datetime.fromtimestamp(stale_threshold, UTC)

    stale_jobs_result = await session.execute(
        select(func.count(JobRecord.id)).where(
            JobRecord.status == JobStatus.PROCESSING.value,
            JobRecord.last_attempt_at < stale_cutoff,
        )
    )
    stale_jobs_count = stale_jobs_result.scalar() or 0

    queue_depth_result = await session.execute(
        select(func.count(JobRecord.id)).where(JobRecord.status.in_(ACTIVE_STATUSES))
    )
    queue_depth = queue_depth_result.scalar() or 0

    last_cycle_at = dispatcher.last_cycle_at
    return DispatcherHealth(
        state=dispatcher.state.value,
        running=dispatcher.running,
        last_cycle_at=last_cycle_at.isoformat() if last_cycle_at else None,
        stale_jobs_count=stale_jobs_count,
        queue_depth=queue_depth,
    )
