"""Database schema DDL for durable jobs."""

QUEUES_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS job_queues (
  name                 TEXT PRIMARY KEY,
  description          TEXT,
  concurrency_limit    INT CHECK (concurrency_limit IS NULL OR concurrency_limit > 0),
  retry_delay_seconds  INT NOT NULL DEFAULT 60 CHECK (retry_delay_seconds >= 0),
  max_retries          INT NOT NULL DEFAULT 3 CHECK (max_retries >= 1),
  timeout_seconds      INT NOT NULL DEFAULT 300,
  is_paused            BOOLEAN NOT NULL DEFAULT FALSE,
  created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at           TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS jobs (
  id                 UUID PRIMARY KEY,
  tenant_id          TEXT,
  queue_name         TEXT NOT NULL,
  job_type           TEXT NOT NULL,
  priority           INT NOT NULL DEFAULT 0,
  payload            JSONB NOT NULL,

  status             TEXT NOT NULL CHECK (status IN ('queued', 'delayed', 'processing', 'completed', 'failed', 'cancelled')),
  scheduled_for      TIMESTAMPTZ,
  delay_ms           BIGINT NOT NULL DEFAULT 0,

  attempts           INT NOT NULL DEFAULT 0,
  max_attempts       INT NOT NULL CHECK (max_attempts >= 1),
  next_retry_at      TIMESTAMPTZ,
  timeout_seconds    INT,
  idempotency_key    TEXT,

  locked_by          UUID,
  locked_at          TIMESTAMPTZ,

  progress           INT NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
  progress_data      JSONB,
  result             JSONB,
  error_message      TEXT,
  error_stack        TEXT,
  processing_time_ms BIGINT,

  created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
  started_at         TIMESTAMPTZ,
  completed_at       TIMESTAMPTZ,
  failed_at          TIMESTAMPTZ,

  CHECK ((locked_by IS NULL) = (locked_at IS NULL))
);

-- Lease lookup: eligible jobs per queue in priority-then-FIFO order
CREATE INDEX IF NOT EXISTS idx_jobs_lease
ON jobs (queue_name, priority DESC, created_at ASC)
WHERE status IN ('queued', 'delayed', 'failed');

CREATE INDEX IF NOT EXISTS idx_jobs_tenant_status
ON jobs (tenant_id, status);

CREATE INDEX IF NOT EXISTS idx_jobs_created_at
ON jobs (created_at);

-- Supervisor lookup for stuck leases
CREATE INDEX IF NOT EXISTS idx_jobs_processing_locked_at
ON jobs (locked_at)
WHERE status = 'processing';

CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_idempotency
ON jobs (COALESCE(tenant_id, ''), idempotency_key)
WHERE idempotency_key IS NOT NULL;
"""

JOB_LOGS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS job_logs (
  id          BIGSERIAL PRIMARY KEY,
  job_id      UUID NOT NULL,
  level       TEXT NOT NULL,
  message     TEXT NOT NULL,
  details     JSONB,
  created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_job_logs_job_id
ON job_logs (job_id, created_at);
"""

JOB_DEPENDENCIES_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS job_dependencies (
  job_id             UUID NOT NULL,
  depends_on_job_id  UUID NOT NULL,
  created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
  PRIMARY KEY (job_id, depends_on_job_id),
  CHECK (job_id <> depends_on_job_id)
);
"""

WORKERS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS job_workers (
  id              UUID PRIMARY KEY,
  hostname        TEXT NOT NULL,
  pid             INT,
  queues          TEXT[] NOT NULL,
  status          TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'stopped')),
  current_job_id  UUID,
  last_heartbeat  TIMESTAMPTZ NOT NULL DEFAULT now(),
  started_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
  stopped_at      TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_job_workers_active_heartbeat
ON job_workers (last_heartbeat)
WHERE status = 'active';
"""

RECURRING_JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS recurring_jobs (
  id                UUID PRIMARY KEY,
  name              TEXT NOT NULL UNIQUE,
  description       TEXT,
  queue_name        TEXT NOT NULL,
  job_type          TEXT NOT NULL,
  payload_template  JSONB NOT NULL,
  cron_expression   TEXT,
  interval_seconds  INT CHECK (interval_seconds IS NULL OR interval_seconds > 0),
  timezone          TEXT NOT NULL DEFAULT 'UTC',
  max_retries       INT NOT NULL DEFAULT 3,
  timeout_seconds   INT NOT NULL DEFAULT 300,
  is_enabled        BOOLEAN NOT NULL DEFAULT TRUE,
  last_run_at       TIMESTAMPTZ,
  created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
  CHECK ((cron_expression IS NULL) <> (interval_seconds IS NULL))
);
"""

JOB_METRICS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS job_metrics (
  queue_name               TEXT NOT NULL,
  period_start             TIMESTAMPTZ NOT NULL,
  period_end               TIMESTAMPTZ NOT NULL,
  jobs_enqueued            INT NOT NULL DEFAULT 0,
  jobs_completed           INT NOT NULL DEFAULT 0,
  jobs_failed              INT NOT NULL DEFAULT 0,
  avg_wait_time_ms         DOUBLE PRECISION,
  max_wait_time_ms         DOUBLE PRECISION,
  avg_processing_time_ms   DOUBLE PRECISION,
  max_processing_time_ms   DOUBLE PRECISION,
  PRIMARY KEY (queue_name, period_start)
);
"""

SCHEMA_DDL = "\n".join(
    [
        QUEUES_TABLE_DDL,
        JOBS_TABLE_DDL,
        JOB_LOGS_TABLE_DDL,
        JOB_DEPENDENCIES_TABLE_DDL,
        WORKERS_TABLE_DDL,
        RECURRING_JOBS_TABLE_DDL,
        JOB_METRICS_TABLE_DDL,
    ]
)
