"""Tests for merging pushed, polled and optimistic job state"""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import pytest

from jobrelay.v1.core.exceptions import JobFailedError
from jobrelay.v1.jobs.models import JobStatus, SubjectKind
from jobrelay.v1.jobs.schemas import JobSnapshot
from jobrelay.v1.realtime.notifier import ChangeEventType, ChangeNotifier
from jobrelay.v1.realtime.reconciler import (
    Reconciler,
    ServiceStatusSource,
    ensure_utc,
)

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
JOB_ID = UUID("00000000-0000-0000-0000-000000000001")


def snapshot(
    status: JobStatus = JobStatus.PENDING,
    attempts: int = 0,
    seconds: int = 0,
    job_id: UUID = JOB_ID,
    created_seconds: int = 0,
    error_message: str | None = None,
) -> JobSnapshot:
    return JobSnapshot(
        id=job_id,
        organization_id="org-1",
        subject_kind=SubjectKind.CONTENT_TYPE,
        subject_id="ct-1",
        content_type_id="ct-1",
        payload={},
        status=status,
        attempts=attempts,
        max_attempts=3,
        error_message=error_message,
        created_at=BASE_TIME + timedelta(seconds=created_seconds),
        updated_at=BASE_TIME + timedelta(seconds=seconds),
    )


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class ScriptedSource:
    """Status source returning queued snapshots, repeating the last one."""

    def __init__(self, *snapshots: JobSnapshot | None):
        self.snapshots = list(snapshots)
        self.calls = 0

    async def fetch(self, subject_id, organization_id=None):
        self.calls += 1
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        return self.snapshots[0] if self.snapshots else None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def reconciler(clock) -> Reconciler:
    return Reconciler(ScriptedSource(), clock=clock, freshness_s=30)


def test_ensure_utc():
    naive = datetime(2024, 1, 1, 8, 30)
    assert ensure_utc(naive).tzinfo is UTC
    assert ensure_utc(BASE_TIME) is BASE_TIME


def test_first_snapshot_is_accepted(reconciler):
    assert reconciler.apply(snapshot()) is True
    assert reconciler.view("ct-1").status == JobStatus.PENDING


def test_progress_moves_forward(reconciler):
    reconciler.apply(snapshot())
    assert reconciler.apply(snapshot(JobStatus.PROCESSING, 1, seconds=5), "push")
    assert reconciler.apply(snapshot(JobStatus.PENDING, 1, seconds=10), "push")

    view = reconciler.view("ct-1")
    assert view.status == JobStatus.PENDING
    assert view.snapshot.attempts == 1
    assert view.source == "push"


def test_stale_event_is_ignored(reconciler):
    """A delayed processing event never overrides the later retry state."""
    reconciler.apply(snapshot(JobStatus.PENDING, 1, seconds=10))

    assert reconciler.apply(snapshot(JobStatus.PROCESSING, 1, seconds=5)) is False
    assert reconciler.view("ct-1").status == JobStatus.PENDING


def test_status_rank_breaks_ties(reconciler):
    reconciler.apply(snapshot(JobStatus.PENDING, 1, seconds=5))
    assert reconciler.apply(snapshot(JobStatus.PROCESSING, 1, seconds=5)) is True
    assert reconciler.apply(snapshot(JobStatus.PENDING, 1, seconds=5)) is False


def test_terminal_never_regresses(reconciler, clock):
    reconciler.apply(snapshot(JobStatus.COMPLETED, 2, seconds=20))

    clock.now += 3600
    assert reconciler.apply(snapshot(JobStatus.PROCESSING, 3, seconds=30)) is False
    assert reconciler.view("ct-1").status == JobStatus.COMPLETED


def test_terminal_state_of_current_job_wins(reconciler):
    reconciler.apply(snapshot(JobStatus.PROCESSING, 2, seconds=20))
    # Terminal snapshot with an older clock reading is still accepted
    assert reconciler.apply(snapshot(JobStatus.FAILED, 2, seconds=19)) is True
    assert reconciler.view("ct-1").is_terminal


def test_newer_job_replaces_terminal_job(reconciler):
    """A fresh enqueue after a failure starts a new view for the subject."""
    reconciler.apply(snapshot(JobStatus.FAILED, 3, seconds=30))

    newer = snapshot(job_id=uuid4(), created_seconds=60, seconds=60)
    assert reconciler.apply(newer) is True
    assert reconciler.view("ct-1").snapshot.id == newer.id

    older = snapshot(job_id=uuid4(), created_seconds=-60, seconds=-60)
    assert reconciler.apply(older) is False


def test_stale_local_view_accepts_authoritative_state(reconciler, clock):
    reconciler.apply(snapshot(JobStatus.PENDING, 1, seconds=10))
    older = snapshot(JobStatus.PROCESSING, 1, seconds=5)

    assert reconciler.apply(older) is False
    clock.now += 31
    assert reconciler.apply(older) is True


def test_optimistic_state_is_replaced(reconciler):
    view = reconciler.set_optimistic("ct-1")
    assert view.optimistic is True
    assert view.status == JobStatus.PENDING
    assert view.snapshot is None

    assert reconciler.apply(snapshot(JobStatus.PROCESSING, 1, seconds=1)) is True
    view = reconciler.view("ct-1")
    assert view.optimistic is False
    assert view.status == JobStatus.PROCESSING


def test_listeners_see_accepted_changes(reconciler):
    seen = []
    reconciler.add_listener(lambda view: seen.append(view.status))

    reconciler.apply(snapshot())
    reconciler.apply(snapshot(JobStatus.PROCESSING, 1, seconds=5))
    reconciler.apply(snapshot(JobStatus.PENDING, 0, seconds=0))

    assert seen == [JobStatus.PENDING, JobStatus.PROCESSING]


def test_failing_listener_is_isolated(reconciler):
    seen = []

    def broken(view):
        raise RuntimeError("listener bug")

    reconciler.add_listener(broken)
    reconciler.add_listener(lambda view: seen.append(view.status))

    assert reconciler.apply(snapshot()) is True
    assert seen == [JobStatus.PENDING]


async def test_refresh_merges_polled_snapshot(clock):
    source = ScriptedSource(snapshot(JobStatus.PROCESSING, 1, seconds=5))
    reconciler = Reconciler(source, clock=clock)

    view = await reconciler.refresh("ct-1")

    assert view.source == "poll"
    assert view.status == JobStatus.PROCESSING


async def test_refresh_of_unknown_subject(clock):
    reconciler = Reconciler(ScriptedSource(), clock=clock)
    assert await reconciler.refresh("ct-404") is None


async def test_await_result_resolves_by_polling():
    source = ScriptedSource(
        snapshot(JobStatus.PENDING),
        snapshot(JobStatus.PROCESSING, 1, seconds=5),
        snapshot(JobStatus.COMPLETED, 1, seconds=9),
    )
    reconciler = Reconciler(source, poll_interval_s=0.01)

    result = await reconciler.await_result("ct-1", timeout=2)

    assert result.status == JobStatus.COMPLETED
    assert source.calls == 3


async def test_await_result_raises_on_failure():
    source = ScriptedSource(
        snapshot(JobStatus.FAILED, 3, seconds=9, error_message="Executor error: 500")
    )
    reconciler = Reconciler(source, poll_interval_s=0.01)

    with pytest.raises(JobFailedError, match="Executor error: 500") as exc_info:
        await reconciler.await_result("ct-1", timeout=2)
    assert exc_info.value.details["attempts"] == 3


async def test_await_result_resolves_by_push():
    """A pushed terminal event settles the wait without another poll."""
    notifier = ChangeNotifier()
    source = ScriptedSource(snapshot(JobStatus.PROCESSING, 1, seconds=5))
    reconciler = Reconciler(source, notifier=notifier, poll_interval_s=60)

    waiting = asyncio.create_task(reconciler.await_result("ct-1", "org-1", timeout=2))
    await asyncio.sleep(0.05)
    notifier.publish_row(
        ChangeEventType.UPDATE, snapshot(JobStatus.COMPLETED, 1, seconds=8)
    )

    result = await waiting
    assert result.status == JobStatus.COMPLETED
    assert source.calls == 1
    assert notifier.subscriber_count == 0


async def test_await_result_times_out():
    source = ScriptedSource(snapshot(JobStatus.PROCESSING, 1, seconds=5))
    reconciler = Reconciler(source, poll_interval_s=0.01)

    with pytest.raises(TimeoutError):
        await reconciler.await_result("ct-1", timeout=0.1)


async def test_await_result_with_known_terminal_view():
    reconciler = Reconciler(ScriptedSource(), poll_interval_s=60)
    reconciler.apply(snapshot(JobStatus.COMPLETED, 1, seconds=3))

    result = await reconciler.await_result("ct-1", timeout=1)
    assert result.status == JobStatus.COMPLETED


async def test_await_result_waits_for_newer_job():
    """A cached outcome of an earlier job does not resolve a wait on its successor."""
    newer_id = uuid4()
    source = ScriptedSource(
        snapshot(job_id=newer_id, created_seconds=60, seconds=60),
        snapshot(
            JobStatus.COMPLETED, 1, seconds=70, job_id=newer_id, created_seconds=60
        ),
    )
    reconciler = Reconciler(source, poll_interval_s=0.01)
    reconciler.apply(snapshot(JobStatus.COMPLETED, 1, seconds=3))

    result = await reconciler.await_result("ct-1", timeout=2)

    assert result.id == newer_id
    assert source.calls == 2


async def test_service_status_source(database, service, session, make_extraction):
    response = await service.enqueue(session, make_extraction())
    source = ServiceStatusSource(service, database.SessionLocal)

    fetched = await source.fetch("ct-1", "org-1")

    assert fetched.id == response.job_id
    assert await source.fetch("ct-1", "org-2") is None
