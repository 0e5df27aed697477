# inbox/infra/pg_job_repo_async.py
"""
Async PostgreSQL job repository (asyncpg).

DB-backed job queue (`job_queue`) with claim/complete/fail semantics.
Uses FOR UPDATE SKIP LOCKED for safe concurrent claiming, so the AI
worker and the send worker can share the table.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from inbox.core.ingestion.dispatcher import JOB_SEND_MESSAGE
from inbox.infra.db_resilience_async import safe_db_conn
from inbox.infra.logging_config import get_logger
from inbox.infra.metrics import inc_counter

logger = get_logger(__name__)

STALE_SEND_ERROR = "Stale processing: delivery ambiguous, not re-sent"


@dataclass
class Job:
    """A background job from the job_queue table."""

    id: str
    tenant_id: str
    job_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_for: datetime
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


def _row_to_job(row) -> Job:
    """Convert an asyncpg Record to a Job dataclass."""
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        job_type=row["job_type"],
        payload=payload,
        status=row["status"],
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_for=row["scheduled_for"],
        created_at=row["created_at"],
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


class AsyncPostgresJobRepository:
    """DB-backed job queue with claim/complete/fail semantics."""

    async def enqueue(
        self,
        tenant_id: str,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 1,
        max_attempts: int = 3,
        delay_seconds: float = 0,
    ) -> str:
        """
        Insert a new pending job.

        Args:
            tenant_id: Tenant identifier
            job_type: Job type string ('ai_response', 'send_message')
            payload: JSON-serializable job data
            priority: Lower = higher priority
            max_attempts: Max attempts before the job is marked failed
            delay_seconds: Delay before first execution (0 = immediate)

        Returns:
            Job ID (UUID string)
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO job_queue (tenant_id, job_type, payload, priority, max_attempts, scheduled_for)
                VALUES ($1, $2, $3::jsonb, $4, $5, now() + make_interval(secs => $6))
                RETURNING id
                """,
                tenant_id,
                job_type,
                json.dumps(payload, default=str),
                priority,
                max_attempts,
                float(delay_seconds),
            )
            job_id = str(row["id"])
            logger.debug(
                f"Job enqueued: id={job_id[:8]}, type={job_type}, delay={delay_seconds}s",
                extra={"tenant_id": tenant_id},
            )
            inc_counter("jobs_enqueued", job_type=job_type)
            return job_id

    async def claim_batch(self, job_types: Sequence[str], batch_size: int = 5) -> list[Job]:
        """
        Atomically claim up to batch_size due jobs of the given types.

        Returns:
            List of claimed Job objects (status changed to 'processing')
        """
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                WITH claimed AS (
                    SELECT id FROM job_queue
                    WHERE status = 'pending'
                      AND job_type = ANY($1::text[])
                      AND scheduled_for <= now()
                    ORDER BY priority, scheduled_for
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE job_queue
                SET status = 'processing', started_at = now()
                WHERE id IN (SELECT id FROM claimed)
                RETURNING *
                """,
                list(job_types),
                batch_size,
            )
            return [_row_to_job(row) for row in rows]

    async def complete(self, job_id: str) -> None:
        """Mark a job as done."""
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE job_queue
                SET status = 'done', completed_at = now()
                WHERE id = $1
                """,
                job_id,
            )

    async def fail(
        self,
        job_id: str,
        error_message: str,
        *,
        base_delay: float = 5.0,
        retryable: bool = True,
    ) -> None:
        """
        Record a job failure.

        Retryable failures with attempts left are rescheduled with
        exponential backoff (base_delay * 2^attempts). Everything else is
        marked 'failed' permanently.
        """
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE job_queue
                SET
                  attempts = attempts + 1,
                  error_message = $2,
                  status = CASE
                    WHEN $4 AND attempts + 1 < max_attempts THEN 'pending'
                    ELSE 'failed'
                  END,
                  scheduled_for = CASE
                    WHEN $4 AND attempts + 1 < max_attempts
                      THEN now() + make_interval(secs => $3 * power(2, attempts))
                    ELSE scheduled_for
                  END,
                  completed_at = CASE
                    WHEN $4 AND attempts + 1 < max_attempts THEN NULL
                    ELSE now()
                  END
                WHERE id = $1
                """,
                job_id,
                error_message[:2000],
                base_delay,
                retryable,
            )

    async def count_by_status(self, tenant_id: str | None = None) -> dict[str, int]:
        """Return {status: count} for the metrics endpoint."""
        async with safe_db_conn() as conn:
            if tenant_id:
                rows = await conn.fetch(
                    "SELECT status, count(*)::int as cnt FROM job_queue WHERE tenant_id = $1 GROUP BY status",
                    tenant_id,
                )
            else:
                rows = await conn.fetch(
                    "SELECT status, count(*)::int as cnt FROM job_queue GROUP BY status",
                )
            return {row["status"]: row["cnt"] for row in rows}

    async def reset_stale_processing(
        self,
        timeout_seconds: int = 300,
        job_types: Sequence[str] | None = None,
    ) -> int:
        """
        Reset jobs stuck in 'processing' longer than timeout.

        Covers process crashes where a job was claimed but never completed.
        Only `job_types` are touched so a worker never reclaims jobs owned by
        another process (None means every type). A stale send_message job
        may already have reached the provider, so it is failed instead of
        re-queued.
        """
        types_filter = list(job_types) if job_types is not None else None
        async with safe_db_conn() as conn:
            async with conn.transaction():
                failed = await conn.execute(
                    """
                    UPDATE job_queue
                    SET status = 'failed', error_message = $3, completed_at = now()
                    WHERE status = 'processing'
                      AND started_at < now() - make_interval(secs => $1)
                      AND ($2::text[] IS NULL OR job_type = ANY($2::text[]))
                      AND job_type = $4
                    """,
                    timeout_seconds,
                    types_filter,
                    STALE_SEND_ERROR,
                    JOB_SEND_MESSAGE,
                )
                result = await conn.execute(
                    """
                    UPDATE job_queue
                    SET status = 'pending', scheduled_for = now()
                    WHERE status = 'processing'
                      AND started_at < now() - make_interval(secs => $1)
                      AND ($2::text[] IS NULL OR job_type = ANY($2::text[]))
                      AND job_type <> $3
                    """,
                    timeout_seconds,
                    types_filter,
                    JOB_SEND_MESSAGE,
                )
            failed_count = int(failed.split()[-1]) if failed else 0
            count = int(result.split()[-1]) if result else 0
            if failed_count > 0:
                logger.error(
                    f"Failed {failed_count} stale send jobs (stuck > {timeout_seconds}s), "
                    "delivery unknown",
                )
                inc_counter("jobs_stale_send_failed")
            if count > 0:
                logger.warning(f"Reset {count} stale processing jobs (stuck > {timeout_seconds}s)")
                inc_counter("jobs_stale_reset")
            return count + failed_count
