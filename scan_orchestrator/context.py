"""Execution context handed to job handlers."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from scan_orchestrator.errors import JobCancelledError, LeaseConflictError
from scan_orchestrator.models import Job


class CancellationToken:
    """Cooperative cancellation signal for one running job."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class JobContext:
    """
    Handle given to a handler for one leased job.

    Long-running handlers call ``heartbeat()`` between units of work to keep
    their lease, and ``check_cancelled()`` to stop promptly after a cancel or
    lease loss.
    """

    def __init__(
        self,
        job: Job,
        service: Any,
        worker_id: str,
        lease_ttl: timedelta,
        renew_min_margin: timedelta,
        token: Optional[CancellationToken] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.job = job
        self.service = service
        self.worker_id = worker_id
        self.lease_ttl = lease_ttl
        self.renew_min_margin = renew_min_margin
        self.token = token or CancellationToken()
        self.logger = logger or logging.getLogger(__name__)
        self.lease_expires_at: datetime = job.lease_expires_at
        self._lease_started_at: datetime = job.lease_expires_at - lease_ttl

    @property
    def job_id(self):
        return self.job.id

    @property
    def entity_id(self) -> str:
        return self.job.owner_entity_id

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload

    @property
    def attempt(self) -> int:
        """Number of earlier failed attempts of this job."""
        return self.job.attempt_count

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def check_cancelled(self) -> None:
        """Raise JobCancelledError if the job was cancelled or its lease lost."""
        if self.token.cancelled:
            raise JobCancelledError(str(self.job.id), self.token.reason)

    def renewal_due(self, now: Optional[datetime] = None) -> bool:
        """True once half the TTL has elapsed or less than the margin remains."""
        now = now or self.service.now()
        elapsed = now - self._lease_started_at
        remaining = self.lease_expires_at - now
        return elapsed >= self.lease_ttl / 2 or remaining < self.renew_min_margin

    async def heartbeat(self) -> bool:
        """
        Renew the lease if renewal is due.

        Returns True if the lease was renewed. Raises LeaseConflictError and
        signals cancellation when the lease is no longer ours.
        """
        self.check_cancelled()

        now = self.service.now()
        if not self.renewal_due(now):
            return False

        renewed = await self.service.renew_lease(self.job.id, self.worker_id, self.lease_ttl)
        if not renewed:
            self.token.cancel("lease lost")
            raise LeaseConflictError(str(self.job.id), self.worker_id)

        # The store computed its expiry slightly after ``now``
        self._lease_started_at = now
        self.lease_expires_at = now + self.lease_ttl
        self.logger.debug(f"Renewed lease on job {self.job.id} until {self.lease_expires_at}")
        return True

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early with JobCancelledError if the job is cancelled."""
        try:
            await asyncio.wait_for(self.token.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.check_cancelled()
