"""Database store layer for scan jobs."""

import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID, uuid4

import asyncpg

from scan_orchestrator.errors import JobNotFoundError, JobStoreError
from scan_orchestrator.models import Job, JobKind, JobSpec, JobState, kind_name

# Must match the predicate of uq_scan_jobs_dedupe_active for ON CONFLICT inference
ACTIVE_STATES_SQL = "('ready', 'deferred', 'leased')"

LEASE_EXPIRED_ERROR = "lease expired"

_DEDUPE_MERGE_ATTEMPTS = 3

# Ranks every eligible ready job of a kind inside its entity; no rows are locked
_PICK_READY_SQL = """
WITH ranked AS (
    SELECT j.id, j.priority, j.available_at, j.created_at,
           ROW_NUMBER() OVER (
               PARTITION BY j.owner_entity_id
               ORDER BY j.priority DESC, j.available_at ASC, j.created_at ASC, j.id ASC
           ) AS entity_rank
    FROM scan_jobs j
    WHERE j.kind = $1
      AND j.state = 'ready'
      AND j.available_at <= $2
      AND j.id <> ALL($4::uuid[])
      AND NOT EXISTS (
          SELECT 1 FROM scan_entity_pauses p
          WHERE p.owner_entity_id = j.owner_entity_id
      )
)
SELECT id FROM ranked
ORDER BY entity_rank ASC, priority DESC, available_at ASC, created_at ASC, id ASC
LIMIT $3
"""

# Locks exactly the picked rows that are still ready
_CLAIM_SQL = """
WITH claimable AS (
    SELECT id FROM scan_jobs
    WHERE id = ANY($1::uuid[]) AND state = 'ready'
    FOR UPDATE SKIP LOCKED
)
UPDATE scan_jobs
SET state = 'leased',
    lease_owner = $2,
    lease_expires_at = $3,
    updated_at = $4
FROM claimable
WHERE scan_jobs.id = claimable.id
RETURNING scan_jobs.*
"""


def fair_lease_order(jobs: Iterable[Job]) -> List[Job]:
    """
    Order a batch of jobs round-robin across owner entities.

    Jobs are ranked inside their entity by ``(priority DESC, available_at,
    created_at, id)``. The batch is then ordered by ``(entity rank, priority
    DESC, available_at, created_at, id)``: every entity's best job comes
    before any entity's second job, and higher priority wins within a round.
    The lease query uses the same ordering.
    """

    def within_entity(job: Job):
        return (-job.priority, job.available_at, job.created_at, str(job.id))

    by_entity: Dict[str, List[Job]] = {}
    for job in jobs:
        by_entity.setdefault(job.owner_entity_id, []).append(job)

    ranked = []
    for entity_jobs in by_entity.values():
        for rank, job in enumerate(sorted(entity_jobs, key=within_entity)):
            ranked.append((rank, job))

    ranked.sort(key=lambda item: (item[0],) + within_entity(item[1]))
    return [job for _, job in ranked]


class JobStore:
    """Database layer for job operations."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_job(
        self, spec: JobSpec, now: datetime, default_max_attempts: int
    ) -> Tuple[Job, bool]:
        """
        Insert a job unless an active job with the same dedupe key exists.

        Returns the job and whether it was newly created.
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                return await self._insert_job(conn, spec, now, default_max_attempts)

    async def insert_jobs(
        self, specs: List[JobSpec], now: datetime, default_max_attempts: int
    ) -> List[Tuple[Job, bool]]:
        """Insert several jobs in one transaction."""
        results = []
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                for spec in specs:
                    results.append(
                        await self._insert_job(conn, spec, now, default_max_attempts)
                    )
        return results

    async def _insert_job(
        self,
        conn: asyncpg.Connection,
        spec: JobSpec,
        now: datetime,
        default_max_attempts: int,
        default_owner_entity_id: Optional[str] = None,
    ) -> Tuple[Job, bool]:
        owner_entity_id = spec.owner_entity_id or default_owner_entity_id
        if not owner_entity_id:
            raise ValueError(f"Job spec for kind {spec.kind} has no owner_entity_id")

        available_at = spec.available_at or now
        state = JobState.DEFERRED if available_at > now else JobState.READY
        max_attempts = spec.max_attempts or default_max_attempts
        payload = json.dumps(spec.payload)

        for _ in range(_DEDUPE_MERGE_ATTEMPTS):
            row = await conn.fetchrow(
                f"""
                INSERT INTO scan_jobs (
                    id, kind, owner_entity_id, payload, priority, dedupe_key,
                    state, available_at, attempt_count, max_attempts,
                    created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 0, $9, $10, $10)
                ON CONFLICT (dedupe_key) WHERE state IN {ACTIVE_STATES_SQL}
                DO NOTHING
                RETURNING *
                """,
                uuid4(),
                spec.kind,
                owner_entity_id,
                payload,
                spec.priority,
                spec.dedupe_key,
                state.value,
                available_at,
                max_attempts,
                now,
            )
            if row:
                return self._row_to_job(row), True

            existing = await conn.fetchrow(
                f"""
                SELECT * FROM scan_jobs
                WHERE dedupe_key = $1 AND state IN {ACTIVE_STATES_SQL}
                ORDER BY created_at ASC
                LIMIT 1
                """,
                spec.dedupe_key,
            )
            if existing is None:
                # The conflicting job reached a terminal state in between
                continue

            if spec.priority > existing["priority"]:
                elevated = await conn.fetchrow(
                    """
                    UPDATE scan_jobs
                    SET priority = $2, updated_at = $3
                    WHERE id = $1 AND state IN ('ready', 'deferred') AND priority < $2
                    RETURNING *
                    """,
                    existing["id"],
                    spec.priority,
                    now,
                )
                if elevated:
                    existing = elevated

            return self._row_to_job(existing), False

        raise JobStoreError(f"Could not resolve dedupe conflict for key {spec.dedupe_key}")

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM scan_jobs WHERE id = $1", job_id)

        if not row:
            raise JobNotFoundError(str(job_id))

        return self._row_to_job(row)

    async def list_jobs(
        self,
        kind: Optional[Union[JobKind, str]] = None,
        owner_entity_id: Optional[str] = None,
        state: Optional[Union[JobState, str]] = None,
        limit: int = 50,
    ) -> List[Job]:
        """List jobs with optional filters."""
        query = "SELECT * FROM scan_jobs WHERE 1=1"
        params: List[Any] = []
        param_idx = 1

        if kind:
            query += f" AND kind = ${param_idx}"
            params.append(kind_name(kind))
            param_idx += 1

        if owner_entity_id:
            query += f" AND owner_entity_id = ${param_idx}"
            params.append(owner_entity_id)
            param_idx += 1

        if state:
            query += f" AND state = ${param_idx}"
            params.append(JobState(state).value)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def lease_jobs(
        self,
        kind: str,
        worker_id: str,
        max_count: int,
        now: datetime,
        lease_expires_at: datetime,
    ) -> List[Job]:
        """
        Atomically lease up to ``max_count`` ready jobs of one kind.

        Due deferred jobs are promoted to ready first. Jobs are picked
        round-robin across entities (see fair_lease_order) without locking,
        then only the picked rows are claimed with FOR UPDATE SKIP LOCKED.
        Rows a concurrent caller claimed first are skipped and the batch is
        topped up from the next ranked jobs. Jobs of paused entities are
        never picked.
        """
        if max_count <= 0:
            return []

        rows: List[asyncpg.Record] = []
        skipped: List[UUID] = []
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                await self._promote_deferred(conn, now, kind)
                while len(rows) < max_count:
                    picked = await conn.fetch(
                        _PICK_READY_SQL, kind, now, max_count - len(rows), skipped
                    )
                    if not picked:
                        break

                    picked_ids = [row["id"] for row in picked]
                    claimed = await conn.fetch(
                        _CLAIM_SQL, picked_ids, worker_id, lease_expires_at, now
                    )
                    rows.extend(claimed)

                    # Held by another caller until it commits, so still visible as ready
                    claimed_ids = {row["id"] for row in claimed}
                    skipped.extend(job_id for job_id in picked_ids if job_id not in claimed_ids)

        return fair_lease_order(self._row_to_job(row) for row in rows)

    async def promote_deferred_jobs(self, now: datetime, kind: Optional[str] = None) -> int:
        """Move deferred jobs whose available_at has passed to ready."""
        async with self.db_pool.acquire() as conn:
            return await self._promote_deferred(conn, now, kind)

    async def _promote_deferred(
        self, conn: asyncpg.Connection, now: datetime, kind: Optional[str] = None
    ) -> int:
        result = await conn.execute(
            """
            UPDATE scan_jobs
            SET state = 'ready', updated_at = $1
            WHERE id IN (
                SELECT id FROM scan_jobs
                WHERE state = 'deferred'
                  AND available_at <= $1
                  AND ($2::text IS NULL OR kind = $2)
                FOR UPDATE SKIP LOCKED
            )
            """,
            now,
            kind,
        )
        # Extract count from result string like "UPDATE 5"
        return int(result.split()[-1]) if result else 0

    async def renew_lease(
        self, job_id: UUID, worker_id: str, now: datetime, lease_expires_at: datetime
    ) -> Optional[datetime]:
        """Extend a lease held by ``worker_id``. Returns the new expiry or None."""
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                UPDATE scan_jobs
                SET lease_expires_at = $4, updated_at = $3
                WHERE id = $1
                  AND state = 'leased'
                  AND lease_owner = $2
                  AND lease_expires_at > $3
                RETURNING lease_expires_at
                """,
                job_id,
                worker_id,
                now,
                lease_expires_at,
            )

    async def complete_job(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime,
        follow_on_jobs: List[JobSpec],
        default_max_attempts: int,
    ) -> Optional[Tuple[Job, List[Tuple[Job, bool]]]]:
        """
        Mark a leased job completed and insert its follow-on jobs atomically.

        Returns None when ``worker_id`` does not hold a live lease; nothing is
        written in that case.
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE scan_jobs
                    SET state = 'completed',
                        lease_owner = NULL,
                        lease_expires_at = NULL,
                        updated_at = $3
                    WHERE id = $1
                      AND state = 'leased'
                      AND lease_owner = $2
                      AND lease_expires_at > $3
                    RETURNING *
                    """,
                    job_id,
                    worker_id,
                    now,
                )
                if row is None:
                    return None

                parent = self._row_to_job(row)
                children = []
                for spec in follow_on_jobs:
                    children.append(
                        await self._insert_job(
                            conn,
                            spec,
                            now,
                            default_max_attempts,
                            default_owner_entity_id=parent.owner_entity_id,
                        )
                    )
                return parent, children

    async def fail_job(
        self,
        job_id: UUID,
        worker_id: str,
        error: str,
        retryable: bool,
        now: datetime,
        backoff: Callable[[int], float],
    ) -> Optional[Job]:
        """
        Record a failure reported by the lease owner.

        Returns the updated job, or None when ``worker_id`` does not hold a
        live lease.
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT * FROM scan_jobs
                    WHERE id = $1
                      AND state = 'leased'
                      AND lease_owner = $2
                      AND lease_expires_at > $3
                    FOR UPDATE
                    """,
                    job_id,
                    worker_id,
                    now,
                )
                if row is None:
                    return None
                return await self._apply_failure(
                    conn, self._row_to_job(row), error, retryable, now, backoff
                )

    async def find_expired_leases(self, now: datetime, limit: int = 500) -> List[Job]:
        """Find leased jobs whose lease has expired."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM scan_jobs
                WHERE state = 'leased' AND lease_expires_at < $1
                ORDER BY lease_expires_at ASC
                LIMIT $2
                """,
                now,
                limit,
            )
        return [self._row_to_job(row) for row in rows]

    async def resurrect_expired_lease(
        self,
        job: Job,
        now: datetime,
        backoff: Callable[[int], float],
        error: str = LEASE_EXPIRED_ERROR,
    ) -> Optional[Job]:
        """
        Resurrect one expired lease with a compare-and-swap on the lease fields.

        ``job`` is the snapshot read by find_expired_leases. If the owner
        renewed, completed or failed the job since then, the lease fields no
        longer match and nothing is changed (returns None).
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT * FROM scan_jobs
                    WHERE id = $1
                      AND state = 'leased'
                      AND lease_owner = $2
                      AND lease_expires_at = $3
                      AND lease_expires_at < $4
                    FOR UPDATE
                    """,
                    job.id,
                    job.lease_owner,
                    job.lease_expires_at,
                    now,
                )
                if row is None:
                    return None
                return await self._apply_failure(
                    conn, self._row_to_job(row), error, True, now, backoff
                )

    async def _apply_failure(
        self,
        conn: asyncpg.Connection,
        job: Job,
        error: str,
        retryable: bool,
        now: datetime,
        backoff: Callable[[int], float],
    ) -> Job:
        if retryable and job.attempt_count < job.max_attempts:
            available_at = now + timedelta(seconds=backoff(job.attempt_count))
            row = await conn.fetchrow(
                """
                UPDATE scan_jobs
                SET state = 'deferred',
                    attempt_count = attempt_count + 1,
                    available_at = $2,
                    lease_owner = NULL,
                    lease_expires_at = NULL,
                    last_error = $3,
                    updated_at = $4
                WHERE id = $1
                RETURNING *
                """,
                job.id,
                available_at,
                error,
                now,
            )
        else:
            row = await conn.fetchrow(
                """
                UPDATE scan_jobs
                SET state = 'failed',
                    lease_owner = NULL,
                    lease_expires_at = NULL,
                    last_error = $2,
                    updated_at = $3
                WHERE id = $1
                RETURNING *
                """,
                job.id,
                error,
                now,
            )
        return self._row_to_job(row)

    async def cancel_job(self, job_id: UUID, now: datetime) -> Optional[Job]:
        """Cancel one active job. Returns None if it was already terminal."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE scan_jobs
                SET state = 'cancelled',
                    lease_owner = NULL,
                    lease_expires_at = NULL,
                    updated_at = $2
                WHERE id = $1 AND state IN {ACTIVE_STATES_SQL}
                RETURNING *
                """,
                job_id,
                now,
            )
        return self._row_to_job(row) if row else None

    async def cancel_entity_jobs(self, owner_entity_id: str, now: datetime) -> List[Job]:
        """Cancel every active job owned by an entity."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                UPDATE scan_jobs
                SET state = 'cancelled',
                    lease_owner = NULL,
                    lease_expires_at = NULL,
                    updated_at = $2
                WHERE owner_entity_id = $1 AND state IN {ACTIVE_STATES_SQL}
                RETURNING *
                """,
                owner_entity_id,
                now,
            )
        return [self._row_to_job(row) for row in rows]

    async def list_active_jobs_for_entity(self, owner_entity_id: str) -> List[Job]:
        """List non-terminal jobs of an entity."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM scan_jobs
                WHERE owner_entity_id = $1 AND state IN {ACTIVE_STATES_SQL}
                ORDER BY created_at ASC
                """,
                owner_entity_id,
            )
        return [self._row_to_job(row) for row in rows]

    async def latest_terminal_job_for_entity(self, owner_entity_id: str) -> Optional[Job]:
        """Get the most recently finished job of an entity."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM scan_jobs
                WHERE owner_entity_id = $1
                  AND state IN ('completed', 'failed', 'cancelled')
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                owner_entity_id,
            )
        return self._row_to_job(row) if row else None

    async def list_active_entity_ids(self) -> List[str]:
        """List entities with non-terminal jobs or a pause marker."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT DISTINCT owner_entity_id FROM scan_jobs
                WHERE state IN {ACTIVE_STATES_SQL}
                UNION
                SELECT owner_entity_id FROM scan_entity_pauses
                """
            )
        return sorted(row["owner_entity_id"] for row in rows)

    async def pause_entity(self, owner_entity_id: str, now: datetime) -> bool:
        """Stop dispatching an entity's jobs. Returns False if already paused."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                INSERT INTO scan_entity_pauses (owner_entity_id, paused_at)
                VALUES ($1, $2)
                ON CONFLICT (owner_entity_id) DO NOTHING
                """,
                owner_entity_id,
                now,
            )
        # "INSERT 0 1" when a row was written
        return result.endswith(" 1")

    async def resume_entity(self, owner_entity_id: str) -> bool:
        """Resume dispatching an entity's jobs. Returns False if it was not paused."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM scan_entity_pauses WHERE owner_entity_id = $1",
                owner_entity_id,
            )
        return result.endswith(" 1")

    async def is_entity_paused(self, owner_entity_id: str) -> bool:
        async with self.db_pool.acquire() as conn:
            paused = await conn.fetchval(
                "SELECT EXISTS (SELECT 1 FROM scan_entity_pauses WHERE owner_entity_id = $1)",
                owner_entity_id,
            )
        return bool(paused)

    async def count_jobs_by_kind_and_state(self) -> Dict[str, Dict[str, int]]:
        """Count jobs grouped by kind and state."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT kind, state, COUNT(*) AS cnt FROM scan_jobs GROUP BY kind, state"
            )

        counts: Dict[str, Dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["kind"], {})[row["state"]] = row["cnt"]
        return counts

    async def count_ready_jobs(self, kind: str, now: datetime) -> int:
        """Count jobs of a kind that are ready to be leased."""
        async with self.db_pool.acquire() as conn:
            count = await conn.fetchval(
                """
                SELECT COUNT(*) FROM scan_jobs
                WHERE kind = $1
                  AND (state = 'ready' OR (state = 'deferred' AND available_at <= $2))
                """,
                kind,
                now,
            )
        return count or 0

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            kind=row["kind"],
            owner_entity_id=row["owner_entity_id"],
            payload=json.loads(row["payload"])
            if isinstance(row["payload"], str)
            else row["payload"],
            priority=row["priority"],
            state=JobState(row["state"]),
            available_at=row["available_at"],
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            dedupe_key=row["dedupe_key"],
            lease_owner=row["lease_owner"],
            lease_expires_at=row["lease_expires_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
