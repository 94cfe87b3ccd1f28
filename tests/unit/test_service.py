"""Unit tests for service module."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import asyncpg
import pytest

from scan_orchestrator.errors import StoreUnavailableError
from scan_orchestrator.events import EventType
from scan_orchestrator.models import JobKind, JobOutcome, JobSpec, JobState


def drain(subscription):
    """Collect the event types buffered on a subscription."""
    events = []
    while subscription.pending:
        events.append(subscription._queue.get_nowait())
    return events


@pytest.mark.asyncio
async def test_enqueue_publishes_event(service, event_bus):
    """Test that a new job is announced."""
    sub = event_bus.subscribe()

    job_id = await service.enqueue(JobSpec.folder_scan("lib-1", "/media"))

    job = await service.get_job(job_id)
    assert job.state == JobState.READY
    assert job.attempt_count == 0
    assert job.max_attempts == 3
    events = drain(sub)
    assert [e.type for e in events] == [EventType.JOB_ENQUEUED]
    assert events[0].job_id == job_id
    assert events[0].entity_id == "lib-1"


@pytest.mark.asyncio
async def test_enqueue_duplicate_returns_existing_id(service, event_bus):
    """Test idempotent enqueue on an active dedupe key."""
    first = await service.enqueue(JobSpec.folder_scan("lib-1", "/media"))
    sub = event_bus.subscribe()

    second = await service.enqueue(JobSpec.folder_scan("lib-1", "/media"))

    assert second == first
    assert drain(sub) == []
    assert len(await service.list_jobs(entity_id="lib-1")) == 1


@pytest.mark.asyncio
async def test_enqueue_duplicate_elevates_priority(service):
    """Test that a higher-priority duplicate raises the waiting job's priority."""
    job_id = await service.enqueue(JobSpec.folder_scan("lib-1", "/media", priority=1))

    await service.enqueue(JobSpec.folder_scan("lib-1", "/media", priority=9))

    assert (await service.get_job(job_id)).priority == 9


@pytest.mark.asyncio
async def test_enqueue_after_terminal_creates_new_job(service):
    """Test that dedupe only applies while a job is active."""
    first = await service.enqueue(JobSpec.folder_scan("lib-1", "/media"))
    await service.cancel_job(first)

    second = await service.enqueue(JobSpec.folder_scan("lib-1", "/media"))

    assert second != first


@pytest.mark.asyncio
async def test_enqueue_with_future_available_at_is_deferred(service, clock):
    """Test deferred jobs are not leased before they are due."""
    spec = JobSpec(
        kind=JobKind.INDEX_UPSERT,
        owner_entity_id="lib-1",
        available_at=clock() + timedelta(seconds=60),
    )
    job_id = await service.enqueue(spec)

    assert (await service.get_job(job_id)).state == JobState.DEFERRED
    assert await service.lease_batch("index_upsert", "w1", 5) == []

    clock.advance(61)
    leased = await service.lease_batch("index_upsert", "w1", 5)
    assert [job.id for job in leased] == [job_id]


@pytest.mark.asyncio
async def test_enqueue_many(service, event_bus):
    """Test batch enqueue with a duplicate inside the batch."""
    sub = event_bus.subscribe(EventType.JOB_ENQUEUED)

    ids = await service.enqueue_many(
        [
            JobSpec.folder_scan("lib-1", "/a"),
            JobSpec.folder_scan("lib-1", "/b"),
            JobSpec.folder_scan("lib-1", "/a"),
        ]
    )

    assert ids[0] == ids[2]
    assert len(set(ids)) == 2
    assert sub.pending == 2
    assert await service.enqueue_many([]) == []


@pytest.mark.asyncio
async def test_lease_batch_sets_lease_and_publishes(service, event_bus, clock):
    """Test leasing marks jobs leased with an expiry."""
    await service.enqueue(JobSpec.folder_scan("lib-1", "/a"))
    sub = event_bus.subscribe(EventType.JOB_LEASED)

    jobs = await service.lease_batch(JobKind.FOLDER_SCAN, "w1", 10)

    assert len(jobs) == 1
    assert jobs[0].state == JobState.LEASED
    assert jobs[0].lease_owner == "w1"
    assert jobs[0].lease_expires_at == clock() + timedelta(seconds=30)
    assert drain(sub)[0].data == {"worker_id": "w1"}
    assert await service.lease_batch(JobKind.FOLDER_SCAN, "w2", 10) == []


@pytest.mark.asyncio
async def test_lease_batch_orders_higher_priority_entity_first(service, clock):
    """J2 (priority 5, entity B) is leased before J1 (priority 1, entity A)."""
    j1 = await service.enqueue(JobSpec(kind="folder_scan", owner_entity_id="A", priority=1))
    clock.advance(1)
    j2 = await service.enqueue(JobSpec(kind="folder_scan", owner_entity_id="B", priority=5))

    jobs = await service.lease_batch("folder_scan", "w1", 2)

    assert [job.id for job in jobs] == [j2, j1]


@pytest.mark.asyncio
async def test_lease_batch_reaches_entities_behind_a_large_backlog(service, clock):
    """A newer job of a quiet entity is leased ahead of a busy entity's backlog."""
    for i in range(20):
        await service.enqueue(JobSpec.media_analyze("busy", f"/busy/{i}"))
        clock.advance(1)
    quiet = await service.enqueue(JobSpec.media_analyze("quiet", "/quiet/0"))

    jobs = await service.lease_batch("media_analyze", "w1", 2)

    assert [job.owner_entity_id for job in jobs] == ["busy", "quiet"]
    assert jobs[1].id == quiet


@pytest.mark.asyncio
async def test_lease_batch_skips_paused_entities(service):
    """Test that paused entities' jobs stay ready."""
    paused = await service.enqueue(JobSpec(kind="folder_scan", owner_entity_id="A"))
    other = await service.enqueue(JobSpec(kind="folder_scan", owner_entity_id="B"))
    await service.pause_entity("A")

    jobs = await service.lease_batch("folder_scan", "w1", 5)

    assert [job.id for job in jobs] == [other]
    await service.resume_entity("A")
    assert [job.id for job in await service.lease_batch("folder_scan", "w1", 5)] == [paused]


@pytest.mark.asyncio
async def test_renew_lease_only_by_owner_before_expiry(service, clock):
    """Test lease renewal rules."""
    await service.enqueue(JobSpec.folder_scan("lib-1", "/a"))
    [job] = await service.lease_batch("folder_scan", "w1", 1)

    assert await service.renew_lease(job.id, "w2") is False
    clock.advance(20)
    assert await service.renew_lease(job.id, "w1") is True
    assert (await service.get_job(job.id)).lease_expires_at == clock() + timedelta(seconds=30)

    clock.advance(31)
    assert await service.renew_lease(job.id, "w1") is False


@pytest.mark.asyncio
async def test_complete_publishes_follow_ons_before_parent(service, event_bus):
    """Test causal order of completion events."""
    await service.enqueue(JobSpec.folder_scan("lib-1", "/media"))
    [job] = await service.lease_batch("folder_scan", "w1", 1)
    sub = event_bus.subscribe([EventType.JOB_ENQUEUED, EventType.JOB_COMPLETED])

    completed = await service.complete(
        job.id,
        "w1",
        [
            JobSpec(kind="media_analyze", payload={"path": "/media/a.mkv"}),
            JobSpec(kind="media_analyze", payload={"path": "/media/b.mkv"}),
        ],
    )

    assert completed is True
    events = drain(sub)
    assert [e.type for e in events] == [
        EventType.JOB_ENQUEUED,
        EventType.JOB_ENQUEUED,
        EventType.JOB_COMPLETED,
    ]
    assert all(e.entity_id == "lib-1" for e in events)
    children = await service.list_jobs(kind="media_analyze")
    assert len(children) == 2
    assert (await service.get_job(job.id)).state == JobState.COMPLETED


@pytest.mark.asyncio
async def test_complete_rejected_for_stale_worker(service, clock):
    """Test that a worker whose lease expired cannot complete."""
    await service.enqueue(JobSpec.folder_scan("lib-1", "/a"))
    [job] = await service.lease_batch("folder_scan", "w1", 1)
    clock.advance(31)

    assert await service.complete(job.id, "w1", [JobSpec(kind="media_analyze")]) is False
    assert await service.list_jobs(kind="media_analyze") == []


@pytest.mark.asyncio
async def test_fail_retryable_defers_with_backoff(service, event_bus, clock):
    """Test a retryable failure."""
    await service.enqueue(JobSpec.folder_scan("lib-1", "/a"))
    [job] = await service.lease_batch("folder_scan", "w1", 1)
    sub = event_bus.subscribe(EventType.JOB_RETRIED)

    outcome = await service.fail(job.id, "w1", "disk busy", retryable=True)

    assert outcome == JobOutcome.DEFERRED
    stored = await service.get_job(job.id)
    assert stored.state == JobState.DEFERRED
    assert stored.attempt_count == 1
    assert stored.available_at == clock() + timedelta(seconds=2)
    assert stored.last_error == "disk busy"
    assert stored.lease_owner is None
    assert sub.pending == 1


@pytest.mark.asyncio
async def test_fail_until_attempts_exhausted(service, clock):
    """Test that a job fails once attempt_count reaches max_attempts."""
    job_id = await service.enqueue(JobSpec.folder_scan("lib-1", "/a"))
    outcomes = []
    for _ in range(4):
        clock.advance(120)
        [job] = await service.lease_batch("folder_scan", "w1", 1)
        outcomes.append(await service.fail(job.id, "w1", "boom", retryable=True))

    assert outcomes == [JobOutcome.DEFERRED] * 3 + [JobOutcome.FAILED]
    stored = await service.get_job(job_id)
    assert stored.state == JobState.FAILED
    assert stored.attempt_count == stored.max_attempts == 3


@pytest.mark.asyncio
async def test_fail_fatal_and_rejected(service, event_bus):
    """Test fatal failures and reports from non-owners."""
    await service.enqueue(JobSpec.folder_scan("lib-1", "/a"))
    [job] = await service.lease_batch("folder_scan", "w1", 1)
    sub = event_bus.subscribe(EventType.JOB_FAILED)

    assert await service.fail(job.id, "w2", "x", retryable=False) == JobOutcome.REJECTED
    assert await service.fail(job.id, "w1", "corrupt", retryable=False) == JobOutcome.FAILED
    assert (await service.get_job(job.id)).attempt_count == 0
    assert drain(sub)[0].error == "corrupt"


@pytest.mark.asyncio
async def test_resurrect_lease_publishes_expired_then_retried(service, event_bus, clock):
    """Test resurrection of an expired lease."""
    await service.enqueue(JobSpec.folder_scan("lib-1", "/a"))
    [job] = await service.lease_batch("folder_scan", "w1", 1)
    clock.advance(31)
    [expired] = await service.find_expired_leases()
    sub = event_bus.subscribe()

    outcome = await service.resurrect_lease(expired)

    assert outcome == JobOutcome.DEFERRED
    assert [e.type for e in drain(sub)] == [EventType.LEASE_EXPIRED, EventType.JOB_RETRIED]
    stored = await service.get_job(job.id)
    assert stored.last_error == "lease expired"
    assert stored.attempt_count == 1


@pytest.mark.asyncio
async def test_resurrect_lease_skips_renewed_lease(service, clock):
    """Test that the compare-and-swap protects a lease renewed after the sweep read it."""
    await service.enqueue(JobSpec.folder_scan("lib-1", "/a"))
    [job] = await service.lease_batch("folder_scan", "w1", 1)
    clock.advance(31)
    [expired] = await service.find_expired_leases()
    # Owner renews after the sweep read the row
    service.store.jobs[job.id].lease_expires_at = clock() + timedelta(seconds=30)

    assert await service.resurrect_lease(expired) is None
    assert (await service.get_job(job.id)).state == JobState.LEASED


@pytest.mark.asyncio
async def test_cancel_entity(service, event_bus):
    """Test cancelling all active jobs of an entity."""
    a = await service.enqueue(JobSpec.folder_scan("lib-1", "/a"))
    b = await service.enqueue(JobSpec.folder_scan("lib-1", "/b"))
    other = await service.enqueue(JobSpec.folder_scan("lib-2", "/a"))
    sub = event_bus.subscribe(EventType.JOB_CANCELLED)

    cancelled = await service.cancel_entity("lib-1")

    assert set(cancelled) == {a, b}
    assert sub.pending == 2
    assert (await service.get_job(other)).state == JobState.READY
    assert await service.cancel_job(a) is False


@pytest.mark.asyncio
async def test_queue_snapshot_and_depth(service):
    """Test queue counts."""
    await service.enqueue(JobSpec.folder_scan("lib-1", "/a"))
    await service.enqueue(JobSpec.folder_scan("lib-1", "/b"))
    await service.enqueue(JobSpec.media_analyze("lib-1", "/a.mkv"))
    await service.lease_batch("folder_scan", "w1", 1)

    assert await service.queue_snapshot() == {
        "folder_scan": {"ready": 1, "leased": 1},
        "media_analyze": {"ready": 1},
    }
    assert await service.queue_depth(JobKind.FOLDER_SCAN) == 1


@pytest.mark.asyncio
async def test_store_call_retried_on_connection_error(service):
    """Test that connection-class failures are retried."""
    job_id = uuid4()
    flaky = AsyncMock(side_effect=[ConnectionRefusedError("down"), None])

    with patch.object(service.store, "cancel_job", flaky):
        assert await service.cancel_job(job_id) is False

    assert flaky.call_count == 2


@pytest.mark.asyncio
async def test_store_unavailable_after_retries(service):
    """Test StoreUnavailableError once retries are exhausted."""
    failing = AsyncMock(side_effect=asyncpg.exceptions.CannotConnectNowError("starting up"))

    with patch.object(service.store, "lease_jobs", failing):
        with pytest.raises(StoreUnavailableError) as exc_info:
            await service.lease_batch("folder_scan", "w1", 1)

    assert exc_info.value.operation == "lease_batch"
    assert failing.call_count == 3


@pytest.mark.asyncio
async def test_query_errors_are_not_retried(service):
    """Test that non-connection errors propagate immediately."""
    failing = AsyncMock(side_effect=ValueError("bad spec"))

    with patch.object(service.store, "insert_job", failing):
        with pytest.raises(ValueError):
            await service.enqueue(JobSpec(kind="folder_scan", owner_entity_id="lib-1"))

    assert failing.call_count == 1
