"""Tests for dispatch cycles, retries, cancellation and stale claim recovery"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from jobrelay.v1.core.exceptions import (
    ConflictError,
    ExecutorHTTPError,
    ExecutorLogicError,
    NotFoundError,
)
from jobrelay.v1.jobs.dispatcher import CANCELLED_MESSAGE, DispatcherState
from jobrelay.v1.jobs.models import JobStatus, SubjectKind
from jobrelay.v1.jobs.subjects import ContentType, SubjectRef, Webhook
from jobrelay.v1.metrics.service import HealthAggregator


async def reload(store, session, job_id):
    """Read a job as the dispatcher's own session committed it."""
    return await store.get(session, job_id)


async def test_cycle_completes_pending_job(
    dispatcher, service, store, session, executor, make_extraction
):
    response = await service.enqueue(session, make_extraction())

    report = await dispatcher.run_cycle()

    assert report.claimed == 1
    assert report.completed == 1
    assert report.job_ids == [response.job_id]
    assert executor.calls == [(str(response.job_id), 1)]

    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 1
    assert job.active_key is None
    assert job.result == {"extracted": True}
    assert job.processed_at is not None
    assert dispatcher.state == DispatcherState.IDLE
    assert dispatcher.last_cycle_at is not None


async def test_cycle_without_work(dispatcher):
    report = await dispatcher.run_cycle()
    assert report.claimed == 0
    assert report.skipped is False


async def test_always_failing_job_fails_after_max_attempts(
    dispatcher, service, store, session, executor, make_extraction
):
    """Extraction retries are immediate; the third failure is terminal."""
    executor.script(*(ExecutorHTTPError("Executor error: 500", 500) for _ in range(3)))
    response = await service.enqueue(session, make_extraction())

    first = await dispatcher.run_cycle()
    second = await dispatcher.run_cycle()
    third = await dispatcher.run_cycle()
    fourth = await dispatcher.run_cycle()

    assert (first.retried, second.retried, third.failed) == (1, 1, 1)
    assert fourth.claimed == 0
    assert [attempt for _, attempt in executor.calls] == [1, 2, 3]

    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 3
    assert job.error_message == "Executor error: 500"
    assert job.active_key is None


async def test_success_on_second_attempt(
    dispatcher, service, store, session, executor, make_extraction
):
    executor.script(ExecutorLogicError("No examples could be parsed"))
    response = await service.enqueue(session, make_extraction())

    await dispatcher.run_cycle()
    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.error_message == "No examples could be parsed"

    report = await dispatcher.run_cycle()
    assert report.completed == 1

    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 2


async def test_success_on_last_attempt_clears_error(
    dispatcher, service, store, session, executor, make_extraction
):
    executor.script(ExecutorLogicError("first"), ExecutorLogicError("second"))
    response = await service.enqueue(session, make_extraction())

    for _ in range(3):
        await dispatcher.run_cycle()

    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 3
    assert job.error_message is None


async def test_unexpected_executor_exception_is_retried(
    dispatcher, service, store, session, executor, make_extraction
):
    executor.script(RuntimeError("boom"))
    response = await service.enqueue(session, make_extraction())

    report = await dispatcher.run_cycle()

    assert report.retried == 1
    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.PENDING.value
    assert "RuntimeError" in job.error_message


async def test_executor_timeout_is_retried(
    dispatcher, settings, service, store, session, executor, make_extraction
):
    settings.executor_timeout_s = 0.05

    async def hang(job):
        await asyncio.sleep(1)

    executor.script(hang)
    response = await service.enqueue(session, make_extraction())

    report = await dispatcher.run_cycle()

    assert report.retried == 1
    job = await reload(store, session, response.job_id)
    assert job.error_message.startswith("Executor timed out")


async def test_webhook_backoff_defers_next_attempt(
    dispatcher, service, store, session, executor, make_webhook
):
    """A failed delivery is not claimable again until its backoff elapses."""
    executor.script(ExecutorHTTPError("Executor error: 503", 503))
    response = await service.enqueue(session, make_webhook())

    before = datetime.now(UTC)
    await dispatcher.run_cycle()

    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.PENDING.value
    next_attempt_at = job.next_attempt_at
    if next_attempt_at.tzinfo is None:
        next_attempt_at = next_attempt_at.replace(tzinfo=UTC)
    assert next_attempt_at >= before + timedelta(milliseconds=1000)

    report = await dispatcher.run_cycle()
    assert report.claimed == 0
    assert len(executor.calls) == 1


async def test_dispatch_subject_skips_backoff(
    dispatcher, service, store, session, executor, make_webhook
):
    """Retry now makes a deferred job claimable immediately."""
    executor.script(ExecutorHTTPError("Executor error: 503", 503))
    response = await service.enqueue(session, make_webhook())
    await dispatcher.run_cycle()

    report = await dispatcher.dispatch_subject(SubjectRef(SubjectKind.WEBHOOK, "wh-1"))

    assert report.completed == 1
    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 2


async def test_dispatch_subject_without_active_job(dispatcher):
    with pytest.raises(NotFoundError):
        await dispatcher.dispatch_subject(SubjectRef(SubjectKind.WEBHOOK, "missing"))


async def test_dispatch_subject_rejects_processing_job(
    dispatcher, service, store, session, make_extraction
):
    response = await service.enqueue(session, make_extraction())
    await store.claim(session, response.job_id, datetime.now(UTC))

    with pytest.raises(ConflictError):
        await dispatcher.dispatch_subject(
            SubjectRef(SubjectKind.CONTENT_TYPE, "ct-1")
        )


async def test_dispatch_subject_only_runs_that_subject(
    dispatcher, service, store, session, executor, make_extraction
):
    await service.enqueue(session, make_extraction("ct-1"))
    other = await service.enqueue(session, make_extraction("ct-2"))

    report = await dispatcher.dispatch_subject(
        SubjectRef(SubjectKind.CONTENT_TYPE, "ct-2")
    )

    assert report.job_ids == [other.job_id]
    assert len(executor.calls) == 1


async def test_overlapping_cycle_is_skipped(
    dispatcher, service, session, executor, make_extraction
):
    """A cycle requested while one is running is dropped, not queued."""
    started = asyncio.Event()
    release = asyncio.Event()

    async def block(job):
        started.set()
        await release.wait()

    executor.script(block)
    await service.enqueue(session, make_extraction())

    running = asyncio.create_task(dispatcher.run_cycle())
    await asyncio.wait_for(started.wait(), timeout=5)
    assert dispatcher.state == DispatcherState.BUSY

    skipped = await dispatcher.run_cycle()
    assert skipped.skipped is True
    assert skipped.claimed == 0

    release.set()
    report = await running
    assert report.completed == 1
    assert dispatcher.state == DispatcherState.IDLE


async def test_batch_size_limits_claims(
    dispatcher, settings, service, session, make_extraction
):
    settings.dispatch_batch_size = 2
    for index in range(3):
        await service.enqueue(session, make_extraction(f"ct-{index}"))

    first = await dispatcher.run_cycle()
    second = await dispatcher.run_cycle()

    assert first.claimed == 2
    assert second.claimed == 1


async def test_jobs_are_claimed_oldest_first(
    dispatcher, settings, service, session, make_extraction
):
    settings.dispatch_batch_size = 1
    oldest = await service.enqueue(session, make_extraction("ct-a"))
    await service.enqueue(session, make_extraction("ct-b"))

    report = await dispatcher.run_cycle()
    assert report.job_ids == [oldest.job_id]


async def test_claim_is_exclusive(service, store, session, make_extraction):
    response = await service.enqueue(session, make_extraction())
    now = datetime.now(UTC)

    first = await store.claim(session, response.job_id, now)
    second = await store.claim(session, response.job_id, now)

    assert first is not None
    assert first.status == JobStatus.PROCESSING.value
    assert second is None
    # The winning row stays loaded after the losing claim
    assert first.attempts == 1


async def test_cancelled_pending_job_fails_without_execution(
    dispatcher, service, store, session, executor, make_extraction
):
    response = await service.enqueue(session, make_extraction())
    await service.cancel_job(session, response.job_id)

    report = await dispatcher.run_cycle()

    assert report.failed == 1
    assert executor.calls == []
    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == CANCELLED_MESSAGE


async def test_cancelled_job_in_backoff_fails_on_next_cycle(
    dispatcher, service, store, session, executor, make_webhook
):
    """Cancelling a deferred delivery does not wait for its backoff to elapse."""
    executor.script(ExecutorHTTPError("Executor error: 503", 503))
    response = await service.enqueue(
        session,
        make_webhook(
            retry_config={
                "max_retries": 3,
                "retry_delay_ms": 600_000,
                "exponential_backoff": False,
            }
        ),
    )
    await dispatcher.run_cycle()
    await service.cancel_job(session, response.job_id)

    report = await dispatcher.run_cycle()

    assert report.failed == 1
    assert len(executor.calls) == 1
    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == CANCELLED_MESSAGE


async def test_cancel_during_attempt_prevents_retry(
    dispatcher, database, service, store, session, executor, make_extraction
):
    """A failure after a cancel request is terminal even with attempts left."""
    response = await service.enqueue(session, make_extraction())

    async def cancel_then_fail(job):
        async with database.SessionLocal() as other:
            await service.cancel_job(other, job.id)
        return ExecutorHTTPError("Executor error: 500", 500)

    executor.script(cancel_then_fail)

    report = await dispatcher.run_cycle()

    assert report.failed == 1
    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 1
    assert job.error_message == "Executor error: 500"


async def test_terminal_outcome_annotates_subject(
    dispatcher, service, session, executor, make_extraction, make_webhook
):
    session.add(ContentType(id="ct-1", organization_id="org-1", name="Blog post"))
    session.add(Webhook(id="wh-1", organization_id="org-1", url="https://hook"))
    await session.commit()

    executor.script(
        {"fields": 4},
        ExecutorHTTPError("Executor error: 410", 410),
    )
    await service.enqueue(session, make_extraction())
    await service.enqueue(
        session,
        make_webhook(
            retry_config={
                "max_retries": 0,
                "retry_delay_ms": 0,
                "exponential_backoff": False,
            }
        ),
    )

    report = await dispatcher.run_cycle()
    assert report.completed == 1
    assert report.failed == 1

    content_type = await session.get(ContentType, "ct-1", populate_existing=True)
    assert content_type.extraction_status == "completed"
    assert content_type.extraction_error is None

    webhook = await session.get(Webhook, "wh-1", populate_existing=True)
    assert webhook.delivery_status == "failed"
    assert webhook.last_error == "Executor error: 410"


async def test_missing_subject_row_does_not_break_cycle(
    dispatcher, service, store, session, make_extraction
):
    response = await service.enqueue(session, make_extraction("ct-orphan"))

    report = await dispatcher.run_cycle()

    assert report.completed == 1
    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.COMPLETED.value


async def test_outcomes_feed_endpoint_health(
    dispatcher, service, session, executor, make_extraction
):
    executor.script(ExecutorHTTPError("Executor error: 500", 500))
    await service.enqueue(session, make_extraction())

    await dispatcher.run_cycle()
    await dispatcher.run_cycle()

    health = await HealthAggregator().get_health(session, "content-extraction")
    assert health.total_executions == 2
    assert health.successful_executions == 1
    assert health.failed_executions == 1
    assert health.consecutive_failures == 0


async def test_webhook_health_is_tracked_per_webhook(
    dispatcher, service, session, make_webhook
):
    await service.enqueue(session, make_webhook("wh-a"))
    await service.enqueue(session, make_webhook("wh-b"))

    await dispatcher.run_cycle()

    aggregator = HealthAggregator()
    endpoints = {health.endpoint_id for health in await aggregator.list_health(session)}
    assert endpoints == {"wh-a", "wh-b"}


async def test_recover_stale_claim_returns_job_to_pending(
    dispatcher, service, store, session, make_extraction
):
    """A claim abandoned past the visibility timeout is released."""
    response = await service.enqueue(session, make_extraction())
    long_ago = datetime.now(UTC) - timedelta(hours=1)
    await store.claim(session, response.job_id, long_ago)

    recovered = await dispatcher.recover_stale_claims()

    assert recovered == 1
    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.error_message.startswith("Job timeout after 300s")

    report = await dispatcher.run_cycle()
    assert report.completed == 1


async def test_recover_stale_claim_fails_exhausted_job(
    dispatcher, service, store, session, make_webhook
):
    response = await service.enqueue(
        session,
        make_webhook(
            retry_config={
                "max_retries": 0,
                "retry_delay_ms": 0,
                "exponential_backoff": False,
            }
        ),
    )
    await store.claim(session, response.job_id, datetime.now(UTC) - timedelta(hours=1))

    assert await dispatcher.recover_stale_claims() == 1

    job = await reload(store, session, response.job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.active_key is None


async def test_recent_claims_are_not_recovered(
    dispatcher, service, store, session, make_extraction
):
    response = await service.enqueue(session, make_extraction())
    await store.claim(session, response.job_id, datetime.now(UTC))

    assert await dispatcher.recover_stale_claims() == 0


async def test_manual_retry_of_failed_job(
    dispatcher, service, store, session, executor, make_extraction
):
    """Retrying a failed job enqueues a fresh job; the failed one stays failed."""
    executor.script(*(ExecutorLogicError("bad input") for _ in range(3)))
    failed = await service.enqueue(session, make_extraction())
    for _ in range(3):
        await dispatcher.run_cycle()

    retried = await service.retry_job(session, failed.job_id)

    assert retried.job_id != failed.job_id
    assert retried.deduplicated is False
    old = await reload(store, session, failed.job_id)
    assert old.status == JobStatus.FAILED.value
    new = await reload(store, session, retried.job_id)
    assert new.status == JobStatus.PENDING.value
    assert new.payload == old.payload


async def test_purge_terminal_jobs(
    dispatcher, service, store, session, make_extraction
):
    response = await service.enqueue(session, make_extraction())
    await dispatcher.run_cycle()

    assert await service.purge_terminal_jobs(session, retention_days=1) == 0

    job = await reload(store, session, response.job_id)
    job.updated_at = datetime.now(UTC) - timedelta(days=3)
    await session.commit()

    assert await service.purge_terminal_jobs(session, retention_days=1) == 1
    assert await store.get(session, response.job_id) is None


async def test_insert_wakes_running_dispatcher(
    dispatcher, service, store, session, make_extraction
):
    """With the poll tick far away, an insert event alone triggers a cycle."""
    dispatcher.settings.dispatch_poll_interval_s = 3600
    await dispatcher.start()
    try:
        # Let the first poll tick run on the empty queue
        await asyncio.sleep(0.1)
        response = await service.enqueue(session, make_extraction())

        for _ in range(100):
            job = await reload(store, session, response.job_id)
            if job.status == JobStatus.COMPLETED.value:
                break
            await asyncio.sleep(0.05)
        assert job.status == JobStatus.COMPLETED.value
    finally:
        await dispatcher.stop()

    assert dispatcher.state == DispatcherState.STOPPED
    assert dispatcher.running is False


LEGAL_TRANSITIONS = {
    (JobStatus.PENDING, JobStatus.PROCESSING),
    (JobStatus.PROCESSING, JobStatus.PENDING),
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.FAILED),
}


async def test_observed_status_sequence_is_legal(
    dispatcher, service, notifier, session, executor, make_extraction
):
    """Fail, fail, succeed as seen by a change subscriber."""
    subscription = notifier.subscribe(subject_id="ct-1")
    executor.script(
        ExecutorHTTPError("Executor error: 500", 500),
        ExecutorLogicError("Extraction failed"),
        {"records": 2},
    )
    await service.enqueue(session, make_extraction())

    for _ in range(3):
        await dispatcher.run_cycle()

    statuses = []
    while not subscription.queue.empty():
        statuses.append(JobStatus(subscription.queue.get_nowait().row.status))
    subscription.close()

    assert statuses == [
        JobStatus.PENDING,
        JobStatus.PROCESSING,
        JobStatus.PENDING,
        JobStatus.PROCESSING,
        JobStatus.PENDING,
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
    ]
    for previous, current in zip(statuses, statuses[1:]):
        assert (previous, current) in LEGAL_TRANSITIONS
