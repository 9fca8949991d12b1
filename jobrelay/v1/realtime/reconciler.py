"""
Client reconciler: merges pushed change events, polled snapshots and optimistic
local state into one monotonic per-subject view.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import httpx

from jobrelay.config.logging import get_logger
from jobrelay.v1.core.exceptions import JobFailedError, JobRelayException
from jobrelay.v1.jobs.models import JobStatus
from jobrelay.v1.jobs.schemas import JobSnapshot
from jobrelay.v1.jobs.service import JobService
from jobrelay.v1.realtime.notifier import ChangeNotifier

logger = get_logger(__name__)

_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as some stores return them) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass
class SubjectView:
    """What an observer currently believes about a subject's job."""

    subject_id: str
    snapshot: JobSnapshot | None
    optimistic: bool
    source: str
    received_at: float

    @property
    def status(self) -> JobStatus | None:
        if self.snapshot is not None:
            return self.snapshot.status
        return JobStatus.PENDING if self.optimistic else None

    @property
    def is_terminal(self) -> bool:
        return self.snapshot is not None and self.snapshot.is_terminal


class StatusSource(Protocol):
    """Authoritative status lookup used for polling."""

    async def fetch(
        self, subject_id: str, organization_id: str | None = None
    ) -> JobSnapshot | None: ...


class ServiceStatusSource:
    """Status source backed by the in-process job service."""

    def __init__(self, service: JobService, session_factory):
        self.service = service
        self.session_factory = session_factory

    async def fetch(
        self, subject_id: str, organization_id: str | None = None
    ) -> JobSnapshot | None:
        async with self.session_factory() as session:
            return await self.service.get_subject_status(
                session, subject_id, organization_id
            )


class HttpStatusSource:
    """Status source polling the status query endpoint of a running API."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout
        )

    async def fetch(
        self, subject_id: str, organization_id: str | None = None
    ) -> JobSnapshot | None:
        params = {"organization_id": organization_id} if organization_id else None
        response = await self.client.get(
            f"/v1/jobs/subjects/{subject_id}", params=params
        )
        response.raise_for_status()

        data = response.json().get("data")
        if data is None:
            return None
        return JobSnapshot.model_validate(data)

    async def close(self) -> None:
        await self.client.aclose()


class Reconciler:
    """
    Keeps a per-subject view that only moves forward.

    Incoming state is accepted when it is a newer job for the subject, a
    terminal state of the current job, or further along than the local view
    (more attempts, later updated_at, later status). A local view older than
    freshness_s accepts anything except a regression from terminal. Optimistic
    local state is replaced by the first server snapshot.
    """

    def __init__(
        self,
        source: StatusSource,
        notifier: ChangeNotifier | None = None,
        poll_interval_s: float = 4.0,
        freshness_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.notifier = notifier
        self.poll_interval_s = poll_interval_s
        self.freshness_s = freshness_s
        self.clock = clock
        self._views: dict[str, SubjectView] = {}
        self._listeners: list[Callable[[SubjectView], None]] = []

    def view(self, subject_id: str) -> SubjectView | None:
        return self._views.get(subject_id)

    def add_listener(self, listener: Callable[[SubjectView], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[SubjectView], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_optimistic(self, subject_id: str) -> SubjectView:
        """Show the subject as pending before the server has confirmed it."""
        view = SubjectView(
            subject_id=subject_id,
            snapshot=None,
            optimistic=True,
            source="optimistic",
            received_at=self.clock(),
        )
        self._views[subject_id] = view
        self._notify(view)
        return view

    def apply(self, snapshot: JobSnapshot, source: str = "push") -> bool:
        """Merge an incoming snapshot; returns whether the local view changed."""
        local = self._views.get(snapshot.subject_id)
        if not self._should_accept(local, snapshot):
            logger.debug(
                "Stale job snapshot ignored",
                subject_id=snapshot.subject_id,
                job_id=str(snapshot.id),
                status=snapshot.status.value,
                source=source,
            )
            return False

        view = SubjectView(
            subject_id=snapshot.subject_id,
            snapshot=snapshot,
            optimistic=False,
            source=source,
            received_at=self.clock(),
        )
        self._views[snapshot.subject_id] = view
        self._notify(view)
        return True

    def _should_accept(
        self, local: SubjectView | None, incoming: JobSnapshot
    ) -> bool:
        if local is None or local.snapshot is None:
            return True

        current = local.snapshot
        if incoming.id != current.id:
            return ensure_utc(incoming.created_at) >= ensure_utc(current.created_at)

        # A terminal job never reverts
        if current.is_terminal:
            return False
        if incoming.is_terminal:
            return True

        incoming_progress = (incoming.attempts, ensure_utc(incoming.updated_at))
        current_progress = (current.attempts, ensure_utc(current.updated_at))
        if incoming_progress > current_progress:
            return True
        if (
            incoming_progress == current_progress
            and _STATUS_RANK[incoming.status] > _STATUS_RANK[current.status]
        ):
            return True

        return self.clock() - local.received_at > self.freshness_s

    def _notify(self, view: SubjectView) -> None:
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                logger.exception(
                    "Reconciler listener failed", subject_id=view.subject_id
                )

    async def refresh(
        self, subject_id: str, organization_id: str | None = None
    ) -> SubjectView | None:
        """Poll the authoritative source once and merge the result."""
        snapshot = await self.source.fetch(subject_id, organization_id)
        if snapshot is not None:
            self.apply(snapshot, source="poll")
        return self._views.get(subject_id)

    async def await_result(
        self,
        subject_id: str,
        organization_id: str | None = None,
        timeout: float | None = None,
    ) -> JobSnapshot:
        """
        Wait until the subject's job reaches a terminal status.

        Push events and polling run side by side; whichever first delivers the
        terminal state resolves the wait, and both stop afterwards.

        Returns:
            The completed job snapshot

        Raises:
            JobFailedError: The job failed terminally
            TimeoutError: No terminal state within timeout
        """
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[JobSnapshot] = loop.create_future()

        def settle(view: SubjectView) -> None:
            if outcome.done() or view.subject_id != subject_id:
                return
            snapshot = view.snapshot
            if snapshot is None or not snapshot.is_terminal:
                return
            if snapshot.status == JobStatus.COMPLETED:
                outcome.set_result(snapshot)
            else:
                outcome.set_exception(
                    JobFailedError(
                        snapshot.error_message or "Job failed",
                        details={
                            "job_id": str(snapshot.id),
                            "subject_id": subject_id,
                            "attempts": snapshot.attempts,
                        },
                    )
                )

        self.add_listener(settle)
        subscription = None
        tasks = [
            asyncio.create_task(
                self._poll_until(outcome, settle, subject_id, organization_id)
            )
        ]
        if self.notifier is not None:
            subscription = self.notifier.subscribe(
                organization_id=organization_id, subject_id=subject_id
            )
            tasks.append(asyncio.create_task(self._consume(outcome, subscription)))

        try:
            return await asyncio.wait_for(outcome, timeout)
        finally:
            self.remove_listener(settle)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if subscription is not None:
                subscription.close()
            if not outcome.done():
                outcome.cancel()

    async def _poll_until(
        self,
        outcome: asyncio.Future,
        settle: Callable[[SubjectView], None],
        subject_id: str,
        organization_id: str | None,
    ) -> None:
        while not outcome.done():
            try:
                # A cached terminal view only settles once the source agrees
                # no newer job has replaced it
                view = await self.refresh(subject_id, organization_id)
                if view is not None:
                    settle(view)
            except (httpx.HTTPError, JobRelayException) as e:
                logger.warning(
                    "Status poll failed", subject_id=subject_id, error=str(e)
                )
            if outcome.done():
                break
            await asyncio.sleep(self.poll_interval_s)

    async def _consume(self, outcome: asyncio.Future, subscription) -> None:
        async for event in subscription:
            self.apply(event.row, source="push")
            if outcome.done():
                break
