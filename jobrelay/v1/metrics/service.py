"""
Health aggregator: folds executor call outcomes into per-endpoint statistics.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.config.logging import get_logger
from jobrelay.v1.core.exceptions import NotFoundError, PersistenceError
from jobrelay.v1.metrics.health import (
    classify_health,
    performance_score,
    response_time_distribution,
    success_rate,
)
from jobrelay.v1.metrics.models import EndpointHealth, ExecutionLog
from jobrelay.v1.metrics.schemas import (
    DistributionEntry,
    EndpointHealthResponse,
    EndpointMetricsResponse,
)

logger = get_logger(__name__)


def to_health_response(health: EndpointHealth) -> EndpointHealthResponse:
    rate = success_rate(health.successful_executions, health.total_executions)
    return EndpointHealthResponse(
        endpoint_id=health.endpoint_id,
        total_executions=health.total_executions,
        successful_executions=health.successful_executions,
        failed_executions=health.failed_executions,
        average_response_time_ms=round(health.average_response_time_ms, 2),
        consecutive_failures=health.consecutive_failures,
        success_rate=rate,
        health_status=classify_health(
            health.successful_executions, health.total_executions
        ),
        performance_score=performance_score(
            rate, health.average_response_time_ms, health.total_executions
        ),
        last_execution_at=health.last_execution_at,
        last_success_at=health.last_success_at,
        last_failure_at=health.last_failure_at,
    )


class HealthAggregator:
    """Service for recording executions and querying endpoint health."""

    async def record(
        self,
        session: AsyncSession,
        endpoint_id: str,
        success: bool,
        response_time_ms: int,
        job_id: UUID | None = None,
        organization_id: str | None = None,
        status_code: int | None = None,
        error_message: str | None = None,
    ) -> None:
        """
        Record one executor call.

        Counters and the running average are folded in by a single UPDATE of
        the endpoint row, so concurrent recorders never lose an increment. The
        row is created on the endpoint's first execution.
        """
        now = datetime.now(UTC)
        try:
            outcome = (endpoint_id, success, response_time_ms, now)
            if not await self._apply(session, *outcome):
                session.add(self._first_row(*outcome))
                try:
                    await session.flush()
                except IntegrityError:
                    # Another recorder created the row first
                    await session.rollback()
                    await self._apply(session, *outcome)

            session.add(
                ExecutionLog(
                    endpoint_id=endpoint_id,
                    job_id=job_id,
                    organization_id=organization_id,
                    success=success,
                    response_time_ms=response_time_ms,
                    status_code=status_code,
                    error_message=error_message,
                    created_at=now,
                )
            )
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise PersistenceError(
                "Failed to record execution metrics",
                details={"endpoint_id": endpoint_id, "error": str(e)},
            ) from e

        logger.debug(
            "Execution recorded",
            endpoint_id=endpoint_id,
            success=success,
            response_time_ms=response_time_ms,
        )

    async def _apply(
        self,
        session: AsyncSession,
        endpoint_id: str,
        success: bool,
        response_time_ms: int,
        now: datetime,
    ) -> bool:
        values = {
            "total_executions": EndpointHealth.total_executions + 1,
            "average_response_time_ms": (
                EndpointHealth.average_response_time_ms
                * EndpointHealth.total_executions
                + response_time_ms
            )
            / (EndpointHealth.total_executions + 1),
            "last_execution_at": now,
            "updated_at": now,
        }
        if success:
            values["successful_executions"] = EndpointHealth.successful_executions + 1
            values["consecutive_failures"] = 0
            values["last_success_at"] = now
        else:
            values["failed_executions"] = EndpointHealth.failed_executions + 1
            values["consecutive_failures"] = EndpointHealth.consecutive_failures + 1
            values["last_failure_at"] = now

        result = await session.execute(
            update(EndpointHealth)
            .where(EndpointHealth.endpoint_id == endpoint_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _first_row(
        self, endpoint_id: str, success: bool, response_time_ms: int, now: datetime
    ) -> EndpointHealth:
        return EndpointHealth(
            endpoint_id=endpoint_id,
            total_executions=1,
            successful_executions=1 if success else 0,
            failed_executions=0 if success else 1,
            average_response_time_ms=float(response_time_ms),
            consecutive_failures=0 if success else 1,
            last_execution_at=now,
            last_success_at=now if success else None,
            last_failure_at=None if success else now,
            created_at=now,
            updated_at=now,
        )

    async def get_health(
        self, session: AsyncSession, endpoint_id: str
    ) -> EndpointHealthResponse:
        health = await self._get_row(session, endpoint_id)
        if health is None:
            raise NotFoundError(
                "No executions recorded for endpoint",
                details={"endpoint_id": endpoint_id},
            )
        return to_health_response(health)

    async def list_health(self, session: AsyncSession) -> list[EndpointHealthResponse]:
        try:
            result = await session.execute(
                select(EndpointHealth)
                .order_by(EndpointHealth.endpoint_id)
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as e:
            raise PersistenceError(
                "Failed to load endpoint health", details={"error": str(e)}
            ) from e
        return [to_health_response(health) for health in result.scalars().all()]

    async def get_metrics(
        self,
        session: AsyncSession,
        endpoint_id: str,
        window_minutes: int | None = None,
    ) -> EndpointMetricsResponse:
        """
        Compute metrics for an endpoint from its execution logs.

        Args:
            session: Database session
            endpoint_id: Execution target
            window_minutes: Only consider logs this recent; all logs when None

        Returns:
            Success rate, average latency, health and latency distribution
        """
        query = select(ExecutionLog.success, ExecutionLog.response_time_ms).where(
            ExecutionLog.endpoint_id == endpoint_id
        )
        if window_minutes:
            cutoff = datetime.now(UTC) - timedelta(minutes=window_minutes)
            query = query.where(ExecutionLog.created_at >= cutoff)

        try:
            result = await session.execute(query)
        except SQLAlchemyError as e:
            raise PersistenceError(
                "Failed to load execution logs",
                details={"endpoint_id": endpoint_id, "error": str(e)},
            ) from e
        rows = result.all()

        total = len(rows)
        successful = sum(1 for row in rows if row.success)
        response_times = [row.response_time_ms for row in rows]
        avg_response_time = sum(response_times) / total if total else 0.0
        rate = success_rate(successful, total)

        return EndpointMetricsResponse(
            endpoint_id=endpoint_id,
            window_minutes=window_minutes,
            total_executions=total,
            successful_executions=successful,
            failed_executions=total - successful,
            success_rate=rate,
            avg_response_time_ms=round(avg_response_time, 2),
            health_status=classify_health(successful, total),
            performance_score=performance_score(rate, avg_response_time, total),
            distribution=[
                DistributionEntry(**entry)
                for entry in response_time_distribution(response_times)
            ],
        )

    async def _get_row(
        self, session: AsyncSession, endpoint_id: str
    ) -> EndpointHealth | None:
        try:
            result = await session.execute(
                select(EndpointHealth)
                .where(EndpointHealth.endpoint_id == endpoint_id)
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as e:
            raise PersistenceError(
                "Failed to load endpoint health",
                details={"endpoint_id": endpoint_id, "error": str(e)},
            ) from e
        return result.scalar_one_or_none()
