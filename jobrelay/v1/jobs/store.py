"""
Job record store: single-row conditional reads and writes on job_records.

Every mutation is one UPDATE keyed on the row's current status, so concurrent
dispatchers never need a lock: a lost race simply updates zero rows. Each
committed change is published to the change notifier.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.config.logging import get_logger
from jobrelay.v1.core.exceptions import PersistenceError
from jobrelay.v1.jobs.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobRecord,
    JobStatus,
)
from jobrelay.v1.jobs.schemas import JobSnapshot
from jobrelay.v1.jobs.subjects import SubjectRef
from jobrelay.v1.realtime.notifier import ChangeEventType, ChangeNotifier

logger = get_logger(__name__)


class JobStore:
    """Persistence operations for job records."""

    def __init__(self, notifier: ChangeNotifier | None = None):
        self.notifier = notifier

    @asynccontextmanager
    async def _guard(
        self, session: AsyncSession, operation: str
    ) -> AsyncIterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(
                "Job store operation failed", operation=operation, error=str(e)
            )
            raise PersistenceError(
                f"Job store {operation} failed", details={"error": str(e)}
            ) from e

    def _publish(self, event_type: ChangeEventType, job: JobRecord) -> None:
        if self.notifier is not None:
            self.notifier.publish_row(event_type, JobSnapshot.from_record(job))

    # Reads

    async def get(self, session: AsyncSession, job_id: UUID) -> JobRecord | None:
        async with self._guard(session, "get"):
            result = await session.execute(
                select(JobRecord)
                .where(JobRecord.id == job_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def find_active(
        self, session: AsyncSession, subject: SubjectRef
    ) -> JobRecord | None:
        """Find the pending or processing job for a subject."""
        async with self._guard(session, "find_active"):
            result = await session.execute(
                select(JobRecord)
                .where(JobRecord.active_key == subject.active_key)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def latest_for_subject(
        self,
        session: AsyncSession,
        subject_id: str,
        organization_id: str | None = None,
    ) -> JobRecord | None:
        """Most recent job of any kind referencing the subject id."""
        query = select(JobRecord).where(
            (JobRecord.content_type_id == subject_id)
            | (JobRecord.content_idea_id == subject_id)
            | (JobRecord.webhook_id == subject_id)
        )
        if organization_id:
            query = query.where(JobRecord.organization_id == organization_id)

        async with self._guard(session, "latest_for_subject"):
            result = await session.execute(
                query.order_by(JobRecord.created_at.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def has_claimable(
        self,
        session: AsyncSession,
        now: datetime,
        subject: SubjectRef | None = None,
    ) -> bool:
        """Cheap existence check for at least one claimable pending row."""
        query = select(JobRecord.id).where(self._claimable(now, subject)).limit(1)
        async with self._guard(session, "has_claimable"):
            result = await session.execute(query)
            return result.first() is not None

    async def list_claimable(
        self,
        session: AsyncSession,
        now: datetime,
        limit: int,
        subject: SubjectRef | None = None,
    ) -> list[UUID]:
        """Ids of claimable pending jobs, oldest first."""
        query = (
            select(JobRecord.id)
            .where(self._claimable(now, subject))
            .order_by(JobRecord.created_at, JobRecord.id)
            .limit(limit)
        )
        async with self._guard(session, "list_claimable"):
            result = await session.execute(query)
            return list(result.scalars().all())

    def _claimable(self, now: datetime, subject: SubjectRef | None):
        condition = and_(
            JobRecord.status == JobStatus.PENDING.value,
            JobRecord.next_attempt_at <= now,
        )
        if subject is not None:
            condition = and_(condition, JobRecord.active_key == subject.active_key)
        return condition

    async def list_jobs(
        self,
        session: AsyncSession,
        organization_id: str | None = None,
        statuses: list[str] | None = None,
        subject_kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]:
        query = select(JobRecord)
        if organization_id:
            query = query.where(JobRecord.organization_id == organization_id)
        if statuses:
            query = query.where(JobRecord.status.in_(statuses))
        if subject_kind:
            column = getattr(JobRecord, f"{subject_kind}_id")
            query = query.where(column.is_not(None))

        async with self._guard(session, "list_jobs"):
            total_result = await session.execute(
                select(func.count()).select_from(query.subquery())
            )
            total = total_result.scalar() or 0

            result = await session.execute(
                query.order_by(JobRecord.created_at.desc()).offset(offset).limit(limit)
            )
            return list(result.scalars().all()), total

    async def count_by(
        self, session: AsyncSession, organization_id: str | None = None
    ) -> dict[str, Any]:
        base_filter = (
            JobRecord.organization_id == organization_id if organization_id else True
        )
        kind_expr = case(
            (JobRecord.content_type_id.is_not(None), "content_type"),
            (JobRecord.content_idea_id.is_not(None), "content_idea"),
            else_="webhook",
        )
        one_hour_ago = datetime.now(UTC) - timedelta(hours=1)

        async with self._guard(session, "count_by"):
            status_result = await session.execute(
                select(JobRecord.status, func.count(JobRecord.id))
                .where(base_filter)
                .group_by(JobRecord.status)
            )
            kind_result = await session.execute(
                select(kind_expr, func.count(JobRecord.id))
                .where(base_filter)
                .group_by(kind_expr)
            )
            failed_result = await session.execute(
                select(func.count(JobRecord.id)).where(
                    base_filter,
                    JobRecord.status == JobStatus.FAILED.value,
                    JobRecord.updated_at >= one_hour_ago,
                )
            )

        return {
            "by_status": {status: count for status, count in status_result.all()},
            "by_subject_kind": {kind: count for kind, count in kind_result.all()},
            "failed_last_hour": failed_result.scalar() or 0,
        }

    # Writes

    async def insert(self, session: AsyncSession, job: JobRecord) -> JobRecord | None:
        """
        Insert a new pending job.

        Returns None when another active job for the same subject won the race
        for the unique active_key.
        """
        async with self._guard(session, "insert"):
            try:
                session.add(job)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "Active job already exists for subject",
                    active_key=job.active_key,
                )
                return None
            await session.refresh(job)

        self._publish(ChangeEventType.INSERT, job)
        return job

    async def refresh_payload(
        self, session: AsyncSession, job_id: UUID, payload: dict[str, Any]
    ) -> JobRecord | None:
        """Replace the payload snapshot of a job that has not been claimed yet."""
        now = datetime.now(UTC)
        return await self._transition(
            session,
            "refresh_payload",
            job_id,
            JobRecord.status == JobStatus.PENDING.value,
            payload=payload,
            updated_at=now,
        )

    async def claim(
        self, session: AsyncSession, job_id: UUID, now: datetime
    ) -> JobRecord | None:
        """Atomically move a pending job to processing; None if the race was lost."""
        return await self._transition(
            session,
            "claim",
            job_id,
            and_(
                JobRecord.status == JobStatus.PENDING.value,
                JobRecord.attempts < JobRecord.max_attempts,
            ),
            status=JobStatus.PROCESSING.value,
            attempts=JobRecord.attempts + 1,
            last_attempt_at=now,
            updated_at=now,
        )

    async def complete(
        self,
        session: AsyncSession,
        job_id: UUID,
        result: dict[str, Any] | None = None,
    ) -> JobRecord | None:
        now = datetime.now(UTC)
        return await self._transition(
            session,
            "complete",
            job_id,
            JobRecord.status == JobStatus.PROCESSING.value,
            status=JobStatus.COMPLETED.value,
            active_key=None,
            result=result,
            error_message=None,
            processed_at=now,
            updated_at=now,
        )

    async def release_for_retry(
        self,
        session: AsyncSession,
        job_id: UUID,
        next_attempt_at: datetime,
        error: str,
    ) -> JobRecord | None:
        """Return a processing job to pending unless a cancel was requested."""
        return await self._transition(
            session,
            "release_for_retry",
            job_id,
            and_(
                JobRecord.status == JobStatus.PROCESSING.value,
                JobRecord.cancel_requested.is_(False),
            ),
            status=JobStatus.PENDING.value,
            next_attempt_at=next_attempt_at,
            error_message=error,
            updated_at=datetime.now(UTC),
        )

    async def fail(
        self, session: AsyncSession, job_id: UUID, error: str
    ) -> JobRecord | None:
        now = datetime.now(UTC)
        return await self._transition(
            session,
            "fail",
            job_id,
            JobRecord.status == JobStatus.PROCESSING.value,
            status=JobStatus.FAILED.value,
            active_key=None,
            error_message=error,
            processed_at=now,
            updated_at=now,
        )

    async def request_cancel(
        self, session: AsyncSession, job_id: UUID, organization_id: str | None = None
    ) -> JobRecord | None:
        condition = JobRecord.status.in_(ACTIVE_STATUSES)
        if organization_id:
            condition = and_(condition, JobRecord.organization_id == organization_id)
        now = datetime.now(UTC)
        # A pending job waiting out its backoff becomes claimable so it fails now
        return await self._transition(
            session,
            "request_cancel",
            job_id,
            condition,
            cancel_requested=True,
            next_attempt_at=case(
                (JobRecord.status == JobStatus.PENDING.value, now),
                else_=JobRecord.next_attempt_at,
            ),
            updated_at=now,
        )

    async def expedite(
        self, session: AsyncSession, subject: SubjectRef, now: datetime
    ) -> JobRecord | None:
        """Make the subject's pending job claimable immediately."""
        job = await self.find_active(session, subject)
        if job is None:
            return None
        return await self._transition(
            session,
            "expedite",
            job.id,
            JobRecord.status == JobStatus.PENDING.value,
            next_attempt_at=now,
            updated_at=now,
        )

    async def _transition(
        self,
        session: AsyncSession,
        operation: str,
        job_id: UUID,
        condition,
        **values: Any,
    ) -> JobRecord | None:
        async with self._guard(session, operation):
            result = await session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, condition)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            # A lost race still commits; a rollback would expire the caller's rows
            await session.commit()
            if result.rowcount != 1:
                return None

        job = await self.get(session, job_id)
        if job is not None:
            self._publish(ChangeEventType.UPDATE, job)
        return job

    # Maintenance

    async def list_stale_processing(
        self, session: AsyncSession, cutoff: datetime
    ) -> list[JobRecord]:
        async with self._guard(session, "list_stale_processing"):
            result = await session.execute(
                select(JobRecord).where(
                    JobRecord.status == JobStatus.PROCESSING.value,
                    JobRecord.last_attempt_at < cutoff,
                )
            )
            return list(result.scalars().all())

    async def recover_stale(
        self,
        session: AsyncSession,
        job_id: UUID,
        cutoff: datetime,
        error: str,
        terminal: bool = False,
    ) -> JobRecord | None:
        """
        Release a processing job abandoned by a crashed dispatcher.

        The job returns to pending, or fails when terminal is set (attempts
        exhausted or cancel requested).
        """
        now = datetime.now(UTC)
        condition = and_(
            JobRecord.status == JobStatus.PROCESSING.value,
            JobRecord.last_attempt_at < cutoff,
        )
        if terminal:
            return await self._transition(
                session,
                "recover_stale",
                job_id,
                condition,
                status=JobStatus.FAILED.value,
                active_key=None,
                error_message=error,
                processed_at=now,
                updated_at=now,
            )
        return await self._transition(
            session,
            "recover_stale",
            job_id,
            condition,
            status=JobStatus.PENDING.value,
            next_attempt_at=now,
            error_message=error,
            updated_at=now,
        )

    async def purge_terminal(self, session: AsyncSession, cutoff: datetime) -> int:
        async with self._guard(session, "purge_terminal"):
            result = await session.execute(
                delete(JobRecord)
                .where(
                    JobRecord.status.in_(TERMINAL_STATUSES),
                    JobRecord.updated_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount
