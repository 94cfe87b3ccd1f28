"""Worker pools that lease and execute jobs."""

import asyncio
import logging
import os
import socket
from collections.abc import Callable
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID, uuid4

from scan_orchestrator.config import OrchestratorConfig
from scan_orchestrator.context import CancellationToken, JobContext
from scan_orchestrator.errors import (
    FatalHandlerError,
    JobCancelledError,
    LeaseConflictError,
    RetryableHandlerError,
    StoreUnavailableError,
)
from scan_orchestrator.events import EventType, OrchestratorEvent
from scan_orchestrator.models import Job, JobKind, JobSpec, kind_name
from scan_orchestrator.registry import HandlerRegistry
from scan_orchestrator.service import QueueService


def default_worker_id() -> str:
    """Identifier unique to this process: ``host:pid:random``."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


def follow_on_specs(result: Any) -> List[JobSpec]:
    """Normalize a handler's return value to a list of JobSpecs."""
    if result is None:
        return []
    if isinstance(result, (JobSpec, dict)):
        result = [result]

    specs = []
    for item in result:
        if isinstance(item, JobSpec):
            specs.append(item)
        elif isinstance(item, dict):
            specs.append(JobSpec(**item))
        else:
            raise TypeError(f"Handler returned {type(item).__name__}, expected JobSpec")
    return specs


class WorkerPool:
    """
    Bounded pool executing jobs of one kind.

    The pool never holds more than ``concurrency`` leases: each poll leases at
    most the free capacity and every leased job runs on its own task.
    """

    def __init__(
        self,
        kind: Union[JobKind, str],
        handler: Callable,
        service: QueueService,
        config: OrchestratorConfig,
        worker_id: str,
        logger: Optional[logging.Logger] = None,
    ):
        self.kind = kind_name(kind)
        self.handler = handler
        self.service = service
        self.config = config
        self.worker_id = worker_id
        self.concurrency = config.get_concurrency_for_kind(kind)
        self.logger = logger or logging.getLogger(__name__)

        self._running: Dict[UUID, Tuple[asyncio.Task, JobContext]] = {}
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> int:
        return len(self._running)

    @property
    def free_capacity(self) -> int:
        return max(self.concurrency - len(self._running), 0)

    def running_job_ids(self) -> List[UUID]:
        return list(self._running)

    def wake(self) -> None:
        """Poll again without waiting for the poll interval."""
        self._wakeup.set()

    def cancel_job(self, job_id: UUID, reason: str = "cancelled") -> bool:
        """Signal the token of a running job. Returns False if it is not running here."""
        entry = self._running.get(job_id)
        if entry is None:
            return False
        entry[1].token.cancel(reason)
        self.logger.info(f"Signalled cancellation of job {job_id}: {reason}")
        return True

    async def poll_once(self) -> int:
        """Lease up to the free capacity and start a task per job."""
        capacity = self.free_capacity
        if capacity <= 0 or self._stopping:
            return 0

        jobs = await self.service.lease_batch(self.kind, self.worker_id, capacity)
        for job in jobs:
            self._spawn(job)
        return len(jobs)

    def _spawn(self, job: Job) -> None:
        ctx = JobContext(
            job,
            self.service,
            self.worker_id,
            self.config.lease_ttl,
            self.config.renew_min_margin,
            token=CancellationToken(),
            logger=self.logger,
        )
        task = asyncio.create_task(self._execute(ctx), name=f"job-{job.id}")
        self._running[job.id] = (task, ctx)

    async def run(self, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """Lease loop: poll on wake-up or every ``poll_interval_seconds``."""
        self.logger.info(
            f"Starting {self.kind} pool (concurrency={self.concurrency}, worker={self.worker_id})"
        )

        while not self._stopping:
            if shutdown_event and shutdown_event.is_set():
                self.logger.info(f"Shutdown signal received, exiting {self.kind} pool loop")
                break

            self._wakeup.clear()
            try:
                await self.poll_once()
            except StoreUnavailableError as e:
                self.logger.error(f"{self.kind} pool could not lease jobs: {str(e)}")
            except Exception as e:
                self.logger.error(f"Error in {self.kind} pool loop: {str(e)}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._wakeup.wait(), timeout=self.config.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self.run(), name=f"pool-{self.kind}")
        return self._loop_task

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """
        Stop leasing, give in-flight jobs ``grace_seconds`` to finish, then
        cancel the rest. Their leases lapse and the housekeeper retries them.
        """
        if grace_seconds is None:
            grace_seconds = self.config.shutdown_grace_seconds

        self._stopping = True
        self.wake()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        tasks = [task for task, _ in self._running.values()]
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        if pending:
            self.logger.warning(
                f"{len(pending)} {self.kind} jobs still running after {grace_seconds}s, cancelling"
            )
            for _, ctx in list(self._running.values()):
                ctx.token.cancel("shutdown")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _execute(self, ctx: JobContext) -> None:
        job = ctx.job
        watchdog = asyncio.create_task(self._watch_lease(ctx))
        try:
            await self._run_handler(ctx)
        except StoreUnavailableError as e:
            # The lease will lapse and the housekeeper takes the job back
            self.logger.error(f"Could not report outcome of job {job.id}: {str(e)}")
        except Exception as e:
            self.logger.error(f"Error finishing job {job.id}: {str(e)}", exc_info=True)
        finally:
            watchdog.cancel()
            self._running.pop(job.id, None)
            self.wake()

    async def _run_handler(self, ctx: JobContext) -> None:
        job = ctx.job
        self.logger.info(
            f"Executing job {job.id} (kind={self.kind}, entity={job.owner_entity_id}, "
            f"attempt={job.attempt_count + 1}/{job.max_attempts})"
        )

        try:
            result = await self.handler(ctx, job.payload)
            follow_ons = follow_on_specs(result)
        except (JobCancelledError, LeaseConflictError) as e:
            # Cancelled or lost the lease: the job is no longer ours to report
            self.logger.info(f"Job {job.id} stopped: {str(e)}")
            return
        except RetryableHandlerError as e:
            self.logger.warning(f"Job {job.id} failed (retryable): {str(e)}")
            await self.service.fail(job.id, self.worker_id, _describe(e), retryable=True)
            return
        except FatalHandlerError as e:
            self.logger.error(f"Job {job.id} failed (fatal): {str(e)}")
            await self.service.fail(job.id, self.worker_id, _describe(e), retryable=False)
            return
        except Exception as e:
            self.logger.error(f"Job {job.id} failed: {str(e)}", exc_info=True)
            await self.service.fail(
                job.id,
                self.worker_id,
                _describe(e),
                retryable=self.config.retry_unknown_errors,
            )
            return

        completed = await self.service.complete(job.id, self.worker_id, follow_ons)
        if completed:
            self.logger.info(f"Job {job.id} completed successfully")
        else:
            self.logger.warning(f"Result of job {job.id} discarded, lease no longer held")

    async def _watch_lease(self, ctx: JobContext) -> None:
        """Signal the token once the current lease expiry passes."""
        while not ctx.cancelled:
            remaining = (ctx.lease_expires_at - self.service.now()).total_seconds()
            if remaining <= 0:
                self.logger.warning(f"Lease on job {ctx.job.id} expired while running")
                ctx.token.cancel("lease expired")
                return
            try:
                await asyncio.wait_for(ctx.token.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                continue


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {str(error)}"


class WorkerPoolManager:
    """
    Owns one WorkerPool per registered job kind.

    Listens on the event bus to wake pools when work is enqueued and to
    signal running jobs that were cancelled.
    """

    def __init__(
        self,
        service: QueueService,
        registry: HandlerRegistry,
        config: OrchestratorConfig,
        worker_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.service = service
        self.registry = registry
        self.config = config
        self.worker_id = worker_id or default_worker_id()
        self.logger = logger or logging.getLogger(__name__)
        self.pools: Dict[str, WorkerPool] = {
            kind: WorkerPool(kind, handler, service, config, self.worker_id, self.logger)
            for kind, handler in registry.all_handlers().items()
        }
        self._subscription = None
        self._pump_task: Optional[asyncio.Task] = None

    def get_pool(self, kind: Union[JobKind, str]) -> Optional[WorkerPool]:
        return self.pools.get(kind_name(kind))

    def cancel_job(self, job_id: UUID, reason: str = "cancelled") -> bool:
        return any(pool.cancel_job(job_id, reason) for pool in self.pools.values())

    def handle_event(self, event: OrchestratorEvent) -> None:
        if event.type == EventType.JOB_CANCELLED and event.job_id is not None:
            self.cancel_job(event.job_id)
        elif event.type == EventType.JOB_ENQUEUED and event.kind:
            pool = self.pools.get(event.kind)
            if pool is not None:
                pool.wake()

    async def _pump_events(self) -> None:
        async for event in self._subscription:
            try:
                self.handle_event(event)
            except Exception as e:
                self.logger.error(f"Error handling event {event.type.value}: {str(e)}", exc_info=True)

    async def start(self) -> None:
        if not self.pools:
            self.logger.warning("No handlers registered, no worker pools started")
        self._subscription = self.service.event_bus.subscribe(
            [EventType.JOB_CANCELLED, EventType.JOB_ENQUEUED]
        )
        self._pump_task = asyncio.create_task(self._pump_events(), name="pool-events")
        for pool in self.pools.values():
            pool.start()
        self.logger.info(f"Started {len(self.pools)} worker pools as {self.worker_id}")

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        await asyncio.gather(*(pool.stop(grace_seconds) for pool in self.pools.values()))
        if self._subscription is not None:
            self._subscription.close()
        if self._pump_task is not None:
            await self._pump_task
            self._pump_task = None
        self.logger.info("Worker pools stopped")
