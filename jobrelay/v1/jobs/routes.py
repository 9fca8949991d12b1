"""
Job API endpoints.

Enqueueing, status queries, manual dispatch and job actions.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.config.settings import ConflictPolicy
from jobrelay.infra.database import get_session
from jobrelay.v1.core.exceptions import NotFoundError, create_success_response
from jobrelay.v1.jobs.dispatcher import Dispatcher
from jobrelay.v1.jobs.models import JobStatus, SubjectKind
from jobrelay.v1.jobs.schemas import EnqueueRequest, JobSnapshot
from jobrelay.v1.jobs.service import JobService
from jobrelay.v1.jobs.subjects import SubjectRef

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_service(request: Request) -> JobService:
    return request.app.state.job_service


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


@router.post("", response_model=dict)
async def enqueue_job(
    job_request: EnqueueRequest,
    on_conflict: ConflictPolicy | None = Query(
        default=None, description="Override the configured conflict policy"
    ),
    session: AsyncSession = Depends(get_session),
    service: JobService = Depends(get_job_service),
) -> dict[str, Any]:
    """Enqueue a job for a subject; reuses the subject's active job."""
    result = await service.enqueue(session, job_request, on_conflict)
    return create_success_response(data=result.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    organization_id: str | None = Query(default=None, description="Organization"),
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    subject_kind: SubjectKind | None = Query(
        default=None, description="Filter by subject kind"
    ),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    service: JobService = Depends(get_job_service),
) -> dict[str, Any]:
    """List jobs with filtering and pagination, newest first."""
    result = await service.list_jobs(
        session,
        organization_id=organization_id,
        statuses=status,
        subject_kind=subject_kind,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=result.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    organization_id: str | None = Query(default=None, description="Organization"),
    session: AsyncSession = Depends(get_session),
    service: JobService = Depends(get_job_service),
) -> dict[str, Any]:
    """Get job statistics."""
    stats = await service.get_stats(session, organization_id)
    return create_success_response(data=stats.model_dump(mode="json"))


@router.get("/subjects/{subject_id}", response_model=dict)
async def get_subject_status(
    subject_id: str,
    organization_id: str | None = Query(default=None, description="Organization"),
    session: AsyncSession = Depends(get_session),
    service: JobService = Depends(get_job_service),
) -> dict[str, Any]:
    """Most recent job for a subject, or null when it never had one."""
    snapshot = await service.get_subject_status(session, subject_id, organization_id)
    data = snapshot.model_dump(mode="json") if snapshot else None
    return create_success_response(data=data)


@router.post("/subjects/{subject_id}/dispatch", response_model=dict)
async def dispatch_subject(
    subject_id: str,
    subject_kind: SubjectKind | None = Query(
        default=None, description="Subject kind; inferred from its latest job"
    ),
    organization_id: str | None = Query(default=None, description="Organization"),
    session: AsyncSession = Depends(get_session),
    service: JobService = Depends(get_job_service),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Retry now: run a dispatch cycle for the subject's pending job."""
    if subject_kind is None:
        latest = await service.get_subject_status(session, subject_id, organization_id)
        if latest is None:
            raise NotFoundError(
                "No job found for subject", details={"subject_id": subject_id}
            )
        subject_kind = latest.subject_kind

    report = await dispatcher.dispatch_subject(SubjectRef(subject_kind, subject_id))
    message = None
    if report.skipped:
        message = "Dispatcher busy, job will run on the next cycle"
    return create_success_response(
        data=report.model_dump(mode="json"), message=message
    )


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    organization_id: str | None = Query(default=None, description="Organization"),
    session: AsyncSession = Depends(get_session),
    service: JobService = Depends(get_job_service),
) -> dict[str, Any]:
    """Get a specific job by ID."""
    job = await service.get_job(session, job_id, organization_id)
    return create_success_response(
        data=JobSnapshot.from_record(job).model_dump(mode="json")
    )


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: UUID,
    organization_id: str | None = Query(default=None, description="Organization"),
    session: AsyncSession = Depends(get_session),
    service: JobService = Depends(get_job_service),
) -> dict[str, Any]:
    """Enqueue a fresh job for a failed job's subject and payload."""
    result = await service.retry_job(session, job_id, organization_id)
    return create_success_response(
        data=result.model_dump(mode="json"), message="Job retry enqueued"
    )


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    organization_id: str | None = Query(default=None, description="Organization"),
    session: AsyncSession = Depends(get_session),
    service: JobService = Depends(get_job_service),
) -> dict[str, Any]:
    """Request cancellation of a pending or processing job."""
    snapshot = await service.cancel_job(session, job_id, organization_id)
    return create_success_response(
        data=snapshot.model_dump(mode="json"), message="Job cancellation requested"
    )
