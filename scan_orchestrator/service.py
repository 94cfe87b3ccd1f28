"""High-level queue service over the job store."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from uuid import UUID

import asyncpg

from scan_orchestrator.backoff import BackoffPolicy
from scan_orchestrator.config import OrchestratorConfig
from scan_orchestrator.errors import StoreUnavailableError
from scan_orchestrator.events import EventBus, EventType, OrchestratorEvent
from scan_orchestrator.models import Job, JobKind, JobOutcome, JobSpec, JobState, kind_name
from scan_orchestrator.store import LEASE_EXPIRED_ERROR, JobStore

# Failures that mean the store could not be reached, as opposed to a bad query
STORE_UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
)


class QueueService:
    """
    High-level API for job operations.

    Wraps JobStore with retry on connection-class failures and publishes
    lifecycle events after each committed change.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        db_pool: asyncpg.Pool,
        event_bus: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None,
        backoff: Optional[Callable[[int], float]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.store = JobStore(db_pool)
        self.event_bus = event_bus or EventBus()
        self.logger = logger or logging.getLogger(__name__)
        self.backoff = backoff or BackoffPolicy(
            config.backoff_base_seconds, config.backoff_cap_seconds
        )
        self._store_backoff = BackoffPolicy(
            config.store_retry_base_seconds, config.store_retry_cap_seconds
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    async def _call(self, operation: str, func: Callable, *args: Any, **kwargs: Any) -> Any:
        """Run a store call, retrying with backoff while the store is unreachable."""
        attempts = self.config.store_retry_attempts
        for attempt in range(attempts):
            try:
                return await func(*args, **kwargs)
            except STORE_UNAVAILABLE_ERRORS as e:
                if attempt + 1 >= attempts:
                    self.logger.error(
                        f"Store call {operation} failed after {attempts} attempts: {str(e)}"
                    )
                    raise StoreUnavailableError(operation, attempts) from e
                delay = self._store_backoff(attempt)
                self.logger.warning(
                    f"Store call {operation} failed ({type(e).__name__}: {str(e)}), "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    def _publish(self, type: EventType, job: Job, **data: Any) -> None:
        self.event_bus.publish(OrchestratorEvent.for_job(type, job, **data))

    async def enqueue(self, spec: JobSpec) -> UUID:
        """
        Enqueue a job.

        If an active job with the same dedupe key exists, its id is returned
        instead and no new job is created. A higher priority on the duplicate
        is applied to the existing job while it waits.

        Args:
            spec: The job to create

        Returns:
            UUID: The created or existing job ID
        """
        job, created = await self._call(
            "enqueue",
            self.store.insert_job,
            spec,
            self.now(),
            self.config.default_max_attempts,
        )
        self._after_insert(job, created)
        return job.id

    async def enqueue_many(self, specs: Iterable[JobSpec]) -> List[UUID]:
        """Enqueue several jobs in one transaction."""
        specs = list(specs)
        if not specs:
            return []
        results = await self._call(
            "enqueue_many",
            self.store.insert_jobs,
            specs,
            self.now(),
            self.config.default_max_attempts,
        )
        for job, created in results:
            self._after_insert(job, created)
        return [job.id for job, _ in results]

    def _after_insert(self, job: Job, created: bool) -> None:
        if created:
            self.logger.info(
                f"Enqueued job {job.id} (kind={job.kind_name}, entity={job.owner_entity_id}, "
                f"priority={job.priority})"
            )
            self._publish(EventType.JOB_ENQUEUED, job)
        else:
            self.logger.debug(f"Merged duplicate into active job {job.id} ({job.dedupe_key})")

    async def lease_batch(
        self,
        kind: Union[JobKind, str],
        worker_id: str,
        max_count: int,
        ttl: Optional[timedelta] = None,
    ) -> List[Job]:
        """
        Atomically lease up to ``max_count`` ready jobs of a kind.

        Safe under concurrent callers: no job is handed to two workers.
        """
        if max_count <= 0:
            return []

        now = self.now()
        lease_expires_at = now + (ttl or self.config.lease_ttl)
        jobs = await self._call(
            "lease_batch",
            self.store.lease_jobs,
            kind_name(kind),
            worker_id,
            max_count,
            now,
            lease_expires_at,
        )

        if jobs:
            self.logger.info(f"Leased {len(jobs)} {kind_name(kind)} jobs to {worker_id}")
        for job in jobs:
            self._publish(EventType.JOB_LEASED, job, worker_id=worker_id)
        return jobs

    async def renew_lease(
        self, job_id: UUID, worker_id: str, ttl: Optional[timedelta] = None
    ) -> bool:
        """
        Extend a lease to ``now + ttl``. Returns False when ``worker_id`` no
        longer owns a live lease on the job.
        """
        now = self.now()
        lease_expires_at = await self._call(
            "renew_lease",
            self.store.renew_lease,
            job_id,
            worker_id,
            now,
            now + (ttl or self.config.lease_ttl),
        )
        if lease_expires_at is None:
            self.logger.warning(f"Lease renewal for job {job_id} by {worker_id} rejected")
            return False
        return True

    async def complete(
        self,
        job_id: UUID,
        worker_id: str,
        follow_on_jobs: Optional[Iterable[JobSpec]] = None,
    ) -> bool:
        """
        Complete a leased job and enqueue its follow-on jobs atomically.

        Returns False when ``worker_id`` does not own a live lease; nothing is
        written in that case.
        """
        result = await self._call(
            "complete",
            self.store.complete_job,
            job_id,
            worker_id,
            self.now(),
            list(follow_on_jobs or []),
            self.config.default_max_attempts,
        )
        if result is None:
            self.logger.warning(f"Completion of job {job_id} by {worker_id} rejected")
            return False

        job, children = result
        for child, created in children:
            self._after_insert(child, created)
        self.logger.info(f"Job {job_id} completed with {len(children)} follow-on jobs")
        self._publish(EventType.JOB_COMPLETED, job)
        return True

    async def fail(
        self, job_id: UUID, worker_id: str, error: str, retryable: bool
    ) -> JobOutcome:
        """
        Record a failed attempt.

        A retryable failure with attempts left is deferred with backoff;
        anything else is failed permanently.
        """
        job = await self._call(
            "fail",
            self.store.fail_job,
            job_id,
            worker_id,
            error,
            retryable,
            self.now(),
            self.backoff,
        )
        if job is None:
            self.logger.warning(f"Failure report for job {job_id} by {worker_id} rejected")
            return JobOutcome.REJECTED
        return self._after_failure(job)

    def _after_failure(self, job: Job) -> JobOutcome:
        if job.state == JobState.DEFERRED:
            self.logger.info(
                f"Job {job.id} will retry (attempt {job.attempt_count}/{job.max_attempts}) "
                f"at {job.available_at}"
            )
            self._publish(EventType.JOB_RETRIED, job)
            return JobOutcome.DEFERRED

        self.logger.error(f"Job {job.id} failed: {job.last_error}")
        self._publish(EventType.JOB_FAILED, job)
        return JobOutcome.FAILED

    async def find_expired_leases(self, limit: int = 500) -> List[Job]:
        """Find leased jobs whose lease has expired."""
        return await self._call(
            "find_expired_leases", self.store.find_expired_leases, self.now(), limit
        )

    async def resurrect_lease(self, job: Job) -> Optional[JobOutcome]:
        """
        Take an expired lease away from its owner.

        Behaves like a retryable failure with error "lease expired". Returns
        None if the lease changed since ``job`` was read.
        """
        resurrected = await self._call(
            "resurrect_lease",
            self.store.resurrect_expired_lease,
            job,
            self.now(),
            self.backoff,
            LEASE_EXPIRED_ERROR,
        )
        if resurrected is None:
            return None

        self.logger.warning(
            f"Lease on job {job.id} held by {job.lease_owner} expired at {job.lease_expires_at}"
        )
        self._publish(
            EventType.LEASE_EXPIRED,
            resurrected,
            worker_id=job.lease_owner,
            lease_expires_at=job.lease_expires_at.isoformat(),
        )
        return self._after_failure(resurrected)

    async def promote_deferred(self, kind: Optional[Union[JobKind, str]] = None) -> int:
        """Move due deferred jobs to ready."""
        return await self._call(
            "promote_deferred",
            self.store.promote_deferred_jobs,
            self.now(),
            kind_name(kind) if kind else None,
        )

    async def cancel_job(self, job_id: UUID) -> bool:
        """Cancel an active job. Returns False if it had already finished."""
        job = await self._call("cancel_job", self.store.cancel_job, job_id, self.now())
        if job is None:
            return False
        self.logger.info(f"Cancelled job {job_id}")
        self._publish(EventType.JOB_CANCELLED, job)
        return True

    async def cancel_entity(self, entity_id: str) -> List[UUID]:
        """Cancel every active job of an entity."""
        jobs = await self._call(
            "cancel_entity", self.store.cancel_entity_jobs, entity_id, self.now()
        )
        if jobs:
            self.logger.info(f"Cancelled {len(jobs)} jobs of entity {entity_id}")
        for job in jobs:
            self._publish(EventType.JOB_CANCELLED, job)
        return [job.id for job in jobs]

    async def pause_entity(self, entity_id: str) -> bool:
        """Stop leasing jobs of an entity until it is resumed."""
        return await self._call("pause_entity", self.store.pause_entity, entity_id, self.now())

    async def resume_entity(self, entity_id: str) -> bool:
        return await self._call("resume_entity", self.store.resume_entity, entity_id)

    async def is_entity_paused(self, entity_id: str) -> bool:
        return await self._call("is_entity_paused", self.store.is_entity_paused, entity_id)

    async def list_active_jobs(self, entity_id: str) -> List[Job]:
        return await self._call(
            "list_active_jobs", self.store.list_active_jobs_for_entity, entity_id
        )

    async def latest_terminal_job(self, entity_id: str) -> Optional[Job]:
        return await self._call(
            "latest_terminal_job", self.store.latest_terminal_job_for_entity, entity_id
        )

    async def list_active_entities(self) -> List[str]:
        """Entities with unfinished jobs or a pause marker."""
        return await self._call("list_active_entities", self.store.list_active_entity_ids)

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        return await self._call("get_job", self.store.get_job, job_id)

    async def list_jobs(
        self,
        *,
        kind: Optional[Union[JobKind, str]] = None,
        entity_id: Optional[str] = None,
        state: Optional[Union[JobState, str]] = None,
        limit: int = 50,
    ) -> List[Job]:
        """List jobs with optional filters."""
        return await self._call(
            "list_jobs",
            self.store.list_jobs,
            kind=kind,
            owner_entity_id=entity_id,
            state=state,
            limit=limit,
        )

    async def queue_snapshot(self) -> Dict[str, Dict[str, int]]:
        """Job counts per kind and state."""
        return await self._call("queue_snapshot", self.store.count_jobs_by_kind_and_state)

    async def queue_depth(self, kind: Union[JobKind, str]) -> int:
        """Number of jobs of a kind that could be leased right now."""
        return await self._call(
            "queue_depth", self.store.count_ready_jobs, kind_name(kind), self.now()
        )
