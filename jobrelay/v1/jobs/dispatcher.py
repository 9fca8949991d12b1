"""
Dispatcher: claims pending jobs, runs them on their executor and records outcomes.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.config.logging import get_logger, job_context
from jobrelay.config.settings import Settings
from jobrelay.v1.core.exceptions import (
    ConflictError,
    ExecutorError,
    ExecutorTimeoutError,
    NotFoundError,
    PersistenceError,
)
from jobrelay.v1.core.registries import ExecutorRegistry
from jobrelay.v1.jobs.models import JobRecord, JobStatus
from jobrelay.v1.jobs.retry import RetryDecision, RetryPolicy, decide
from jobrelay.v1.jobs.schemas import CycleReport
from jobrelay.v1.jobs.service import JobService
from jobrelay.v1.jobs.store import JobStore
from jobrelay.v1.jobs.subjects import SubjectRef, get_variant
from jobrelay.v1.metrics.service import HealthAggregator
from jobrelay.v1.realtime.debounce import Debouncer
from jobrelay.v1.realtime.notifier import (
    ChangeEvent,
    ChangeEventType,
    ChangeNotifier,
    Subscription,
)

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Job cancelled before execution"


class DispatcherState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    STOPPED = "stopped"


@dataclass(frozen=True)
class _ClaimedJob:
    """Fields of a claimed job captured before any rollback can expire the row."""

    id: UUID
    organization_id: str
    subject: SubjectRef
    attempts: int
    max_attempts: int
    retry_delay_ms: int
    exponential_backoff: bool
    cancel_requested: bool

    @classmethod
    def from_record(cls, job: JobRecord) -> "_ClaimedJob":
        return cls(
            id=job.id,
            organization_id=job.organization_id,
            subject=SubjectRef(job.subject_kind, job.subject_id),
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            retry_delay_ms=job.retry_delay_ms,
            exponential_backoff=job.exponential_backoff,
            cancel_requested=job.cancel_requested,
        )


class Dispatcher:
    """
    Single-cycle-at-a-time job dispatcher.

    Cycles are triggered by a poll tick, by debounced insert events from the
    change notifier, or manually for one subject. A cycle requested while
    another is running is dropped; the next tick picks up whatever it missed.
    Claims are conditional updates, so several dispatchers may share a store.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[[], AsyncSession],
        store: JobStore,
        executors: ExecutorRegistry,
        aggregator: HealthAggregator,
        notifier: ChangeNotifier | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.store = store
        self.executors = executors
        self.aggregator = aggregator
        self.notifier = notifier
        self.jobs = JobService(settings, store)
        self.state = DispatcherState.IDLE
        self.running = False
        self.last_cycle_at: datetime | None = None
        self._tasks: list[asyncio.Task] = []
        self._subscription: Subscription | None = None
        self._debouncer: Debouncer | None = None

    async def start(self) -> None:
        """Start the poll, wake and stale recovery loops in the background."""
        if self.running:
            raise RuntimeError("Dispatcher is already running")

        self.running = True
        self.state = DispatcherState.IDLE
        logger.info(
            "Starting dispatcher",
            poll_interval_s=self.settings.dispatch_poll_interval_s,
            batch_size=self.settings.dispatch_batch_size,
            wake_debounce_ms=self.settings.dispatch_wake_debounce_ms,
        )

        self._tasks = [
            asyncio.create_task(self._poll_loop()),
            asyncio.create_task(self._stale_recovery_loop()),
        ]
        if self.notifier is not None:
            self._subscription = self.notifier.subscribe(
                event_types=[ChangeEventType.INSERT]
            )
            self._debouncer = Debouncer(
                self.settings.dispatch_wake_debounce_ms / 1000, self._on_wake
            )
            self._tasks.append(asyncio.create_task(self._wake_loop()))

    async def serve(self) -> None:
        """Start the dispatcher and block until it is stopped."""
        await self.start()
        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            pass
        finally:
            if self.running:
                await self.stop()

    async def stop(self, timeout_s: float = 30.0) -> None:
        """Stop gracefully, letting an in-flight cycle finish first."""
        logger.info("Stopping dispatcher", state=self.state.value)
        self.running = False

        # Wait for the active cycle to complete (with timeout)
        waited = 0.0
        while self.state == DispatcherState.BUSY and waited < timeout_s:
            await asyncio.sleep(0.1)
            waited += 0.1

        if self.state == DispatcherState.BUSY:
            logger.warning(
                "Dispatcher stopped during an active cycle", timeout_s=timeout_s
            )

        self.state = DispatcherState.STOPPED
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []

        if self._debouncer is not None:
            await self._debouncer.close()
            self._debouncer = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    async def run_cycle(self, subject: SubjectRef | None = None) -> CycleReport:
        """
        Claim and process up to dispatch_batch_size claimable jobs, oldest first.

        Args:
            subject: Restrict the cycle to this subject's job

        Returns:
            Counts of claimed jobs and their outcomes; skipped when another
            cycle was running, aborted when the store failed
        """
        if self.state != DispatcherState.IDLE:
            logger.debug("Dispatch cycle dropped", state=self.state.value)
            return CycleReport(skipped=True)

        self.state = DispatcherState.BUSY
        report = CycleReport()
        try:
            async with self.session_factory() as session:
                await self._run_cycle(session, subject, report)
        except PersistenceError as e:
            report.aborted = True
            logger.error("Dispatch cycle aborted", error=e.message, details=e.details)
        finally:
            self.last_cycle_at = datetime.now(UTC)
            if self.state == DispatcherState.BUSY:
                self.state = DispatcherState.IDLE

        if report.claimed:
            logger.info(
                "Dispatch cycle finished",
                claimed=report.claimed,
                completed=report.completed,
                retried=report.retried,
                failed=report.failed,
                aborted=report.aborted,
            )
        return report

    async def _run_cycle(
        self, session: AsyncSession, subject: SubjectRef | None, report: CycleReport
    ) -> None:
        now = datetime.now(UTC)
        job_ids = await self.store.list_claimable(
            session, now, self.settings.dispatch_batch_size, subject
        )

        for job_id in job_ids:
            record = await self.store.claim(session, job_id, datetime.now(UTC))
            if record is None:
                # Lost race - another dispatcher claimed it
                logger.debug("Claim lost", job_id=str(job_id))
                continue

            report.claimed += 1
            report.job_ids.append(job_id)
            outcome = await self._process(session, record)
            if outcome == JobStatus.COMPLETED:
                report.completed += 1
            elif outcome == JobStatus.PENDING:
                report.retried += 1
            elif outcome == JobStatus.FAILED:
                report.failed += 1

    async def dispatch_subject(self, subject: SubjectRef) -> CycleReport:
        """
        Retry now: make the subject's pending job claimable and run a cycle for it.
        """
        async with self.session_factory() as session:
            job = await self.store.find_active(session, subject)
            if job is None:
                raise NotFoundError(
                    "No active job for subject",
                    details={"subject": subject.active_key},
                )
            if job.status != JobStatus.PENDING.value:
                raise ConflictError(
                    "Job is already being processed",
                    details={"job_id": str(job.id), "status": job.status},
                )
            await self.store.expedite(session, subject, datetime.now(UTC))

        logger.info("Manual dispatch requested", subject=subject.active_key)
        return await self.run_cycle(subject)

    async def _process(
        self, session: AsyncSession, record: JobRecord
    ) -> JobStatus | None:
        """Run one claimed job and write its outcome; None if the row moved on."""
        job = _ClaimedJob.from_record(record)
        with job_context(job.id, job.subject.active_key, attempt=job.attempts):
            return await self._execute(session, record, job)

    async def _execute(
        self, session: AsyncSession, record: JobRecord, job: _ClaimedJob
    ) -> JobStatus | None:
        job_logger = logger.bind(max_attempts=job.max_attempts)

        if job.cancel_requested:
            job_logger.info("Cancelled job failed without execution")
            return await self._fail(session, job, CANCELLED_MESSAGE)

        variant = get_variant(job.subject.kind)
        endpoint_id = variant.endpoint_id(job.subject.id)
        executor = self.executors.get(job.subject.kind.value)

        job_logger.info("Executing job", endpoint_id=endpoint_id)
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                executor.execute(record), timeout=self.settings.executor_timeout_s
            )
        except TimeoutError:
            error = ExecutorTimeoutError(
                f"Executor timed out after {self.settings.executor_timeout_s}s"
            )
            return await self._on_failure(session, job, endpoint_id, started, error)
        except ExecutorError as e:
            return await self._on_failure(session, job, endpoint_id, started, e)
        except Exception as e:
            job_logger.exception("Executor raised unexpectedly")
            error = ExecutorError(f"Executor raised {type(e).__name__}: {e}")
            return await self._on_failure(session, job, endpoint_id, started, error)

        response_time_ms = getattr(result, "response_time_ms", None)
        if response_time_ms is None:
            response_time_ms = _elapsed_ms(started)
        await self._record(
            session,
            endpoint_id,
            job,
            success=True,
            response_time_ms=response_time_ms,
            status_code=getattr(result, "status_code", None),
        )

        completed = await self.store.complete(
            session, job.id, getattr(result, "data", None)
        )
        if completed is None:
            job_logger.warning("Job left processing before completion was written")
            return None

        await self._annotate(session, job.subject, JobStatus.COMPLETED, None)
        job_logger.info("Job completed", response_time_ms=response_time_ms)
        return JobStatus.COMPLETED

    async def _on_failure(
        self,
        session: AsyncSession,
        job: _ClaimedJob,
        endpoint_id: str,
        started: float,
        error: ExecutorError,
    ) -> JobStatus | None:
        await self._record(
            session,
            endpoint_id,
            job,
            success=False,
            response_time_ms=_elapsed_ms(started),
            status_code=getattr(error, "response_status", None),
            error_message=error.message,
        )
        return await self._handle_failure(session, job, error.message)

    async def _handle_failure(
        self, session: AsyncSession, job: _ClaimedJob, error: str
    ) -> JobStatus | None:
        decision = decide(job.attempts, job.max_attempts)
        job_logger = logger.bind(job_id=str(job.id), attempt=job.attempts)

        if decision == RetryDecision.RETRY and not job.cancel_requested:
            policy = RetryPolicy(
                base_delay_ms=job.retry_delay_ms,
                exponential_backoff=job.exponential_backoff,
                max_delay_ms=self.settings.webhook_max_backoff_ms,
            )
            next_attempt_at = policy.next_attempt_at(job.attempts, datetime.now(UTC))
            released = await self.store.release_for_retry(
                session, job.id, next_attempt_at, error
            )
            if released is not None:
                job_logger.warning(
                    "Job attempt failed, retry scheduled",
                    error=error,
                    next_attempt_at=next_attempt_at.isoformat(),
                )
                return JobStatus.PENDING
            # A cancel arrived while the attempt was in flight

        return await self._fail(session, job, error)

    async def _fail(
        self, session: AsyncSession, job: _ClaimedJob, error: str
    ) -> JobStatus | None:
        failed = await self.store.fail(session, job.id, error)
        if failed is None:
            logger.warning(
                "Job left processing before failure was written", job_id=str(job.id)
            )
            return None

        await self._annotate(session, job.subject, JobStatus.FAILED, error)
        logger.error(
            "Job failed",
            job_id=str(job.id),
            subject=job.subject.active_key,
            attempts=failed.attempts,
            error=error,
        )
        return JobStatus.FAILED

    async def _annotate(
        self,
        session: AsyncSession,
        subject: SubjectRef,
        status: JobStatus,
        error: str | None,
    ) -> None:
        """Stamp the terminal status onto the subject's own record."""
        variant = get_variant(subject.kind)
        try:
            await variant.mark_terminal(session, subject.id, status.value, error)
        except SQLAlchemyError as e:
            await session.rollback()
            raise PersistenceError(
                "Failed to annotate subject",
                details={"subject": subject.active_key, "error": str(e)},
            ) from e

    async def _record(
        self,
        session: AsyncSession,
        endpoint_id: str,
        job: _ClaimedJob,
        success: bool,
        response_time_ms: int,
        status_code: int | None = None,
        error_message: str | None = None,
    ) -> None:
        try:
            await self.aggregator.record(
                session,
                endpoint_id,
                success=success,
                response_time_ms=response_time_ms,
                job_id=job.id,
                organization_id=job.organization_id,
                status_code=status_code,
                error_message=error_message,
            )
        except PersistenceError:
            # Metrics never decide a job's outcome
            logger.exception(
                "Failed to record execution",
                endpoint_id=endpoint_id,
                job_id=str(job.id),
            )

    async def recover_stale_claims(self) -> int:
        """
        Release jobs stuck in processing past the visibility timeout.

        A dispatcher that crashed between claim and result write leaves its job
        in processing; it goes back to pending, or to failed when no attempts
        remain.
        """
        timeout_s = self.settings.job_visibility_timeout_s
        cutoff = datetime.now(UTC) - timedelta(seconds=timeout_s)
        error = f"Job timeout after {timeout_s}s in processing"

        async with self.session_factory() as session:
            stale = [
                _ClaimedJob.from_record(job)
                for job in await self.store.list_stale_processing(session, cutoff)
            ]
            recovered = 0
            for job in stale:
                terminal = job.attempts >= job.max_attempts or job.cancel_requested
                record = await self.store.recover_stale(
                    session, job.id, cutoff, error, terminal=terminal
                )
                if record is None:
                    continue
                recovered += 1
                if terminal:
                    await self._annotate(session, job.subject, JobStatus.FAILED, error)

        if recovered:
            logger.warning(
                "Recovered stale jobs",
                stale_job_count=recovered,
                timeout_seconds=timeout_s,
            )
        return recovered

    async def _poll_loop(self) -> None:
        """Tick loop: cheap existence check, then a cycle when work is waiting."""
        while self.running:
            try:
                async with self.session_factory() as session:
                    now = datetime.now(UTC)
                    has_work = await self.store.has_claimable(session, now)
                if has_work:
                    await self.run_cycle()
            except Exception:
                logger.exception("Error in dispatcher poll loop")

            await asyncio.sleep(self.settings.dispatch_poll_interval_s)

    async def _wake_loop(self) -> None:
        """Feed insert events into the per-organization debouncer."""
        async for event in self._subscription:
            if not self.running:
                break
            self._debouncer.push(event.row.organization_id, event)

    async def _on_wake(self, organization_id: str, event: ChangeEvent) -> None:
        logger.debug(
            "Dispatch woken by insert",
            organization_id=organization_id,
            job_id=str(event.row.id),
        )
        await self.run_cycle()

    async def _stale_recovery_loop(self) -> None:
        while self.running:
            try:
                await self.recover_stale_claims()
            except Exception:
                logger.exception("Error in stale job recovery")

            if self.settings.job_retention_days:
                try:
                    async with self.session_factory() as session:
                        await self.jobs.purge_terminal_jobs(session)
                except Exception:
                    logger.exception("Error purging terminal jobs")

            await asyncio.sleep(self.settings.stale_recovery_interval_s)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
