"""
Job service: idempotent enqueue and the job-facing queries and actions.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.config.logging import get_logger
from jobrelay.config.settings import ConflictPolicy, Settings
from jobrelay.v1.core.exceptions import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from jobrelay.v1.jobs.models import ACTIVE_STATUSES, JobRecord, JobStatus, SubjectKind
from jobrelay.v1.jobs.schemas import (
    EnqueueRequest,
    EnqueueResponse,
    JobListResponse,
    JobSnapshot,
    JobStatsResponse,
)
from jobrelay.v1.jobs.store import JobStore
from jobrelay.v1.jobs.subjects import SubjectRef, get_variant

logger = get_logger(__name__)


def resolve_subject(request: EnqueueRequest) -> SubjectRef:
    """Resolve the single subject an enqueue request refers to."""
    candidates: list[SubjectRef] = []
    if request.subject_kind is not None or request.subject_id is not None:
        if request.subject_kind is None or not request.subject_id:
            raise ValidationError("subject_kind and subject_id must be given together")
        candidates.append(SubjectRef(request.subject_kind, request.subject_id))

    for kind in SubjectKind:
        value = getattr(request, f"{kind.value}_id")
        if value:
            ref = SubjectRef(kind, value)
            if ref not in candidates:
                candidates.append(ref)

    if not candidates:
        raise ValidationError("A subject reference is required")
    if len(candidates) > 1:
        raise ValidationError(
            "Exactly one subject kind may be supplied",
            details={"subjects": [ref.active_key for ref in candidates]},
        )
    return candidates[0]


class JobService:
    """Service for enqueueing and managing jobs."""

    def __init__(self, settings: Settings, store: JobStore):
        self.settings = settings
        self.store = store

    async def enqueue(
        self,
        session: AsyncSession,
        request: EnqueueRequest,
        on_conflict: ConflictPolicy | None = None,
    ) -> EnqueueResponse:
        """
        Enqueue a job for a subject, at most one active job per subject.

        Args:
            session: Database session
            request: Subject, organization and payload snapshot
            on_conflict: upsert refreshes the active job's payload, reject
                raises ConflictError; defaults to the configured policy

        Returns:
            Enqueue response with job_id and deduplication info
        """
        subject = resolve_subject(request)
        variant = get_variant(subject.kind)
        payload = variant.validate_payload(request.payload)
        policy = on_conflict or self.settings.enqueue_conflict_policy

        existing = await self.store.find_active(session, subject)
        if existing is not None:
            return await self._resolve_conflict(session, existing, payload, policy)

        retry = variant.retry_settings(payload, self.settings)
        job = JobRecord(
            organization_id=request.organization_id,
            active_key=subject.active_key,
            payload=payload,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=retry.max_attempts,
            retry_delay_ms=retry.retry_delay_ms,
            exponential_backoff=retry.exponential_backoff,
            next_attempt_at=datetime.now(UTC),
        )
        setattr(job, subject.job_column, subject.id)

        created = await self.store.insert(session, job)
        if created is None:
            # Race condition - another request enqueued the same subject
            existing = await self.store.find_active(session, subject)
            if existing is None:
                raise PersistenceError(
                    "Job insert rejected without an active job for the subject",
                    details={"subject": subject.active_key},
                )
            return await self._resolve_conflict(session, existing, payload, policy)

        logger.info(
            "Job enqueued",
            job_id=str(created.id),
            subject=subject.active_key,
            organization_id=created.organization_id,
            max_attempts=created.max_attempts,
        )
        return EnqueueResponse(job_id=created.id, status=created.status)

    async def _resolve_conflict(
        self,
        session: AsyncSession,
        existing: JobRecord,
        payload: dict,
        policy: ConflictPolicy,
    ) -> EnqueueResponse:
        if policy == ConflictPolicy.REJECT:
            raise ConflictError(
                "Subject already has an active job",
                details={"job_id": str(existing.id), "status": existing.status},
            )

        job = existing
        if existing.status == JobStatus.PENDING.value:
            # A lost refresh means the row moved on; reload it by id
            job_id = existing.id
            job = await self.store.refresh_payload(session, job_id, payload)
            if job is None:
                job = await self.store.get(session, job_id)
            if job is None:
                raise NotFoundError("Job not found", details={"job_id": str(job_id)})

        logger.info(
            "Job deduplicated",
            job_id=str(job.id),
            status=job.status,
            payload_refreshed=job.payload == payload,
        )
        return EnqueueResponse(job_id=job.id, status=job.status, deduplicated=True)

    async def get_job(
        self, session: AsyncSession, job_id: UUID, organization_id: str | None = None
    ) -> JobRecord:
        job = await self.store.get(session, job_id)
        if job is None or (organization_id and job.organization_id != organization_id):
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})
        return job

    async def get_subject_status(
        self,
        session: AsyncSession,
        subject_id: str,
        organization_id: str | None = None,
    ) -> JobSnapshot | None:
        """Status query: the most recent job for a subject, or None."""
        job = await self.store.latest_for_subject(session, subject_id, organization_id)
        return JobSnapshot.from_record(job) if job else None

    async def list_jobs(
        self,
        session: AsyncSession,
        organization_id: str | None = None,
        statuses: list[JobStatus] | None = None,
        subject_kind: SubjectKind | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> JobListResponse:
        jobs, total = await self.store.list_jobs(
            session,
            organization_id=organization_id,
            statuses=[s.value for s in statuses] if statuses else None,
            subject_kind=subject_kind.value if subject_kind else None,
            limit=limit,
            offset=offset,
        )
        return JobListResponse(
            jobs=[JobSnapshot.from_record(job) for job in jobs],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def get_stats(
        self, session: AsyncSession, organization_id: str | None = None
    ) -> JobStatsResponse:
        counts = await self.store.count_by(session, organization_id)
        by_status = counts["by_status"]
        return JobStatsResponse(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_subject_kind=counts["by_subject_kind"],
            queue_depth=sum(by_status.get(status, 0) for status in ACTIVE_STATUSES),
            failed_last_hour=counts["failed_last_hour"],
        )

    async def retry_job(
        self, session: AsyncSession, job_id: UUID, organization_id: str | None = None
    ) -> EnqueueResponse:
        """
        Manual retry of a failed job.

        Terminal records never re-enter pending; a fresh job is enqueued for
        the same subject with the failed job's payload snapshot.
        """
        job = await self.get_job(session, job_id, organization_id)
        if job.status != JobStatus.FAILED.value:
            raise ConflictError(
                "Only failed jobs can be retried",
                details={"job_id": str(job_id), "status": job.status},
            )

        request = EnqueueRequest(
            subject_kind=job.subject_kind,
            subject_id=job.subject_id,
            organization_id=job.organization_id,
            payload=job.payload,
        )
        response = await self.enqueue(session, request, ConflictPolicy.UPSERT)

        logger.info(
            "Failed job retried",
            failed_job_id=str(job_id),
            job_id=str(response.job_id),
            deduplicated=response.deduplicated,
        )
        return response

    async def cancel_job(
        self, session: AsyncSession, job_id: UUID, organization_id: str | None = None
    ) -> JobSnapshot:
        """
        Request cancellation of an active job.

        An in-flight attempt is never interrupted; once it resolves, a failure
        becomes terminal instead of being retried.
        """
        job = await self.store.request_cancel(session, job_id, organization_id)
        if job is None:
            current = await self.get_job(session, job_id, organization_id)
            raise ConflictError(
                "Only pending or processing jobs can be cancelled",
                details={"job_id": str(job_id), "status": current.status},
            )

        logger.info("Job cancel requested", job_id=str(job_id), status=job.status)
        return JobSnapshot.from_record(job)

    async def purge_terminal_jobs(
        self, session: AsyncSession, retention_days: int | None = None
    ) -> int:
        """Delete terminal jobs older than the retention period."""
        retention_days = retention_days or self.settings.job_retention_days
        if not retention_days:
            return 0

        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        deleted_count = await self.store.purge_terminal(session, cutoff)

        if deleted_count > 0:
            logger.info(
                "Purged terminal jobs",
                deleted_count=deleted_count,
                retention_days=retention_days,
            )
        return deleted_count
