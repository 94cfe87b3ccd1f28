"""Database schema DDL for the scan orchestrator."""

JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS scan_jobs (
  id               UUID PRIMARY KEY,
  kind             TEXT NOT NULL,
  owner_entity_id  TEXT NOT NULL,
  payload          JSONB NOT NULL,
  priority         INT NOT NULL DEFAULT 0,
  dedupe_key       TEXT,

  state            TEXT NOT NULL CHECK (state IN ('ready', 'deferred', 'leased', 'completed', 'failed', 'cancelled')),
  available_at     TIMESTAMPTZ NOT NULL,

  lease_owner      TEXT,
  lease_expires_at TIMESTAMPTZ,

  attempt_count    INT NOT NULL DEFAULT 0,
  max_attempts     INT NOT NULL,
  last_error       TEXT,

  created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),

  CONSTRAINT scan_jobs_lease_fields CHECK (
    (state = 'leased' AND lease_owner IS NOT NULL AND lease_expires_at IS NOT NULL)
    OR (state <> 'leased' AND lease_owner IS NULL AND lease_expires_at IS NULL)
  ),
  CONSTRAINT scan_jobs_attempts CHECK (attempt_count >= 0 AND attempt_count <= max_attempts)
);

-- At most one active job per dedupe key
CREATE UNIQUE INDEX IF NOT EXISTS uq_scan_jobs_dedupe_active
ON scan_jobs (dedupe_key)
WHERE state IN ('ready', 'deferred', 'leased');

CREATE INDEX IF NOT EXISTS idx_scan_jobs_ready
ON scan_jobs (kind, priority DESC, available_at, created_at)
WHERE state = 'ready';

-- Per-entity ranking for the round-robin lease pick
CREATE INDEX IF NOT EXISTS idx_scan_jobs_ready_entity
ON scan_jobs (kind, owner_entity_id, priority DESC, available_at, created_at)
WHERE state = 'ready';

CREATE INDEX IF NOT EXISTS idx_scan_jobs_deferred
ON scan_jobs (kind, available_at)
WHERE state = 'deferred';

-- Index for the lease housekeeper to find expired leases efficiently
CREATE INDEX IF NOT EXISTS idx_scan_jobs_expired_leases
ON scan_jobs (lease_expires_at)
WHERE state = 'leased';

CREATE INDEX IF NOT EXISTS idx_scan_jobs_entity_state
ON scan_jobs (owner_entity_id, state);

CREATE TABLE IF NOT EXISTS scan_entity_pauses (
  owner_entity_id  TEXT PRIMARY KEY,
  paused_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""
