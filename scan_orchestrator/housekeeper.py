"""Lease housekeeper: takes back jobs whose lease expired."""

import asyncio
import logging
from typing import Optional

from scan_orchestrator.models import JobOutcome
from scan_orchestrator.service import QueueService


class LeaseHousekeeper:
    """
    Periodically resurrects expired leases.

    Each expired lease is handled like a retryable failure: the job is
    deferred with backoff, or failed once it has no attempts left. The
    swap is conditional on the lease fields read during the sweep, so a
    worker that renews or finishes in the meantime keeps its result.
    """

    def __init__(
        self,
        service: QueueService,
        interval_seconds: Optional[float] = None,
        batch_size: int = 500,
        logger: Optional[logging.Logger] = None,
    ):
        self.service = service
        self.interval_seconds = (
            interval_seconds or service.config.get_housekeeping_interval_seconds()
        )
        self.batch_size = batch_size
        self.logger = logger or logging.getLogger(__name__)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> int:
        """Run one pass. Returns the number of leases taken back."""
        resurrected = 0
        while True:
            expired = await self.service.find_expired_leases(self.batch_size)
            taken = 0
            for job in expired:
                outcome = await self.service.resurrect_lease(job)
                if outcome is None:
                    self.logger.debug(f"Lease on job {job.id} changed during sweep, skipping")
                    continue
                taken += 1
                if outcome == JobOutcome.FAILED:
                    self.logger.error(
                        f"Job {job.id} failed after lease expiry, no attempts left"
                    )
            resurrected += taken
            # A short page is the last one; a page of skips would be read again
            if len(expired) < self.batch_size or taken == 0:
                break

        promoted = await self.service.promote_deferred()
        if resurrected or promoted:
            self.logger.info(
                f"Housekeeping resurrected {resurrected} expired leases, "
                f"promoted {promoted} deferred jobs"
            )
        return resurrected

    async def run(self, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """Sweep every ``interval_seconds`` until ``shutdown_event`` is set or stopped."""
        self.logger.info(f"Starting lease housekeeper (interval={self.interval_seconds}s)")
        stop_event = shutdown_event or self._stop_event

        while not stop_event.is_set() and not self._stop_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                self.logger.error(f"Error in lease housekeeper: {str(e)}", exc_info=True)

            await self._wait(stop_event)

        self.logger.info("Lease housekeeper stopped")

    async def _wait(self, stop_event: asyncio.Event) -> None:
        events = [stop_event]
        if stop_event is not self._stop_event:
            events.append(self._stop_event)
        waiters = [asyncio.create_task(event.wait()) for event in events]
        try:
            await asyncio.wait(
                waiters, timeout=self.interval_seconds, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="lease-housekeeper")
        return self._task

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
