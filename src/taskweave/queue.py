"""Durable job queue stored next to the entities it points at.

Jobs reference entities by id (``ref``) and carry only a minimal payload.
Delivery is at-least-once: a claim is a lease, and jobs whose lease expired
without completion are handed out again by :meth:`JobQueue.requeue_stale`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from textwrap import dedent
from typing import Any

from taskweave.config import settings
from taskweave.db import DbConnection, dumps, row_to, rows_to, to_iso, transaction, utcnow
from taskweave.models import QueueJob

log = logging.getLogger(__name__)

_JOB_JSON = ("payload", "result")

KEEP_COMPLETED = 100
KEEP_FAILED = 500


class JobQueue:
    def __init__(
        self,
        db: DbConnection,
        *,
        lease_seconds: int | None = None,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
    ) -> None:
        self.db = db
        self.lease = timedelta(seconds=lease_seconds or settings.queue_lease_seconds)
        self.max_attempts = max_attempts or settings.queue_max_attempts
        self.backoff_ms = backoff_ms if backoff_ms is not None else settings.queue_backoff_ms

    def enqueue(
        self,
        queue: str,
        job_id: str,
        payload: dict[str, Any] | None = None,
        *,
        ref: str | None = None,
        priority: int = 0,
        delay: timedelta | None = None,
        run_at: datetime | None = None,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
    ) -> QueueJob:
        """Add a job unless one with the same id already exists.

        Lower *priority* numbers run first. *run_at* wins over *delay*.
        """
        now = utcnow()
        if run_at is None:
            run_at = now + (delay or timedelta(0))
        self.db.execute(
            dedent("""\
            INSERT INTO queue_jobs
                (id, queue, ref, payload, priority, status, attempts, max_attempts,
                 backoff_ms, run_after, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'waiting', 0, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
        """),
            (
                job_id,
                queue,
                ref,
                dumps(payload or {}),
                priority,
                max_attempts or self.max_attempts,
                self.backoff_ms if backoff_ms is None else backoff_ms,
                to_iso(run_at),
                to_iso(now),
                to_iso(now),
            ),
        )
        self.db.commit()
        job = self.get(job_id)
        assert job is not None
        return job

    def get(self, job_id: str) -> QueueJob | None:
        row = self.db.execute("SELECT * FROM queue_jobs WHERE id = ?", (job_id,)).fetchone()
        return row_to(QueueJob, row, _JOB_JSON) if row else None

    def list_jobs(
        self,
        queue: str,
        *,
        ref: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[QueueJob]:
        sql = "SELECT * FROM queue_jobs WHERE queue = ?"
        params: list[object] = [queue]
        if ref is not None:
            sql += " AND ref = ?"
            params.append(ref)
        if statuses:
            statuses = list(statuses)
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        rows = self.db.execute(sql + " ORDER BY run_after, created_at", params).fetchall()
        return rows_to(QueueJob, rows, _JOB_JSON)

    def remove(self, job_id: str) -> bool:
        """Remove a waiting job. An active job cannot be removed."""
        cur = self.db.execute(
            "DELETE FROM queue_jobs WHERE id = ? AND status = 'waiting'", (job_id,)
        )
        self.db.commit()
        return cur.rowcount == 1

    def remove_by_ref(self, queue: str, ref: str) -> int:
        cur = self.db.execute(
            "DELETE FROM queue_jobs WHERE queue = ? AND ref = ? AND status = 'waiting'",
            (queue, ref),
        )
        self.db.commit()
        return cur.rowcount

    def claim_next(self, queue: str, worker_id: str) -> QueueJob | None:
        """Atomically claim the most urgent due job, or return ``None``."""
        while True:
            now = utcnow()
            with transaction(self.db) as conn:
                candidate = conn.execute(
                    dedent("""\
                    SELECT id FROM queue_jobs
                    WHERE queue = ? AND status = 'waiting' AND run_after <= ?
                    ORDER BY priority, run_after, created_at
                    LIMIT 1
                """),
                    (queue, to_iso(now)),
                ).fetchone()
                if candidate is None:
                    return None

                cur = conn.execute(
                    dedent("""\
                    UPDATE queue_jobs
                    SET status = 'active', attempts = attempts + 1, locked_by = ?,
                        locked_until = ?, updated_at = ?
                    WHERE id = ? AND status = 'waiting'
                """),
                    (
                        worker_id,
                        to_iso(now + self.lease),
                        to_iso(now),
                        candidate["id"],
                    ),
                )
            if cur.rowcount != 1:
                continue
            return self.get(candidate["id"])

    def _owned(self, job_id: str, worker_id: str | None) -> tuple[str, list[object]]:
        """WHERE clause matching *job_id* only while this delivery still holds it."""
        sql = "WHERE id = ? AND status = 'active'"
        params: list[object] = [job_id]
        if worker_id is not None:
            sql += " AND locked_by = ?"
            params.append(worker_id)
        return sql, params

    def complete(
        self,
        job_id: str,
        result: dict[str, Any] | None = None,
        *,
        worker_id: str | None = None,
    ) -> bool:
        """Mark an active job completed.

        With *worker_id* the job must still be leased to that worker. Returns
        ``False`` when the lease was lost and the job was left alone.
        """
        now = to_iso(utcnow())
        where, params = self._owned(job_id, worker_id)
        cur = self.db.execute(
            dedent(f"""\
            UPDATE queue_jobs
            SET status = 'completed', result = ?, locked_by = NULL, locked_until = NULL,
                finished_at = ?, updated_at = ?
            {where}
        """),
            [dumps(result), now, now, *params],
        )
        self.db.commit()
        if cur.rowcount != 1:
            log.warning("Job %s is no longer held by %s; result dropped", job_id, worker_id)
            return False
        return True

    def fail(
        self, job_id: str, error: str, *, worker_id: str | None = None
    ) -> QueueJob | None:
        """Record a failed attempt; redeliver with exponential backoff while
        attempts remain, otherwise mark the job failed for good.

        Returns ``None`` when the job is gone or no longer held by *worker_id*.
        """
        job = self.get(job_id)
        if job is None:
            return None
        now = utcnow()
        where, params = self._owned(job_id, worker_id)
        retrying = job.attempts < job.max_attempts
        if retrying:
            delay = timedelta(milliseconds=job.backoff_ms * 2 ** max(job.attempts - 1, 0))
            cur = self.db.execute(
                dedent(f"""\
                UPDATE queue_jobs
                SET status = 'waiting', error = ?, run_after = ?, locked_by = NULL,
                    locked_until = NULL, updated_at = ?
                {where}
            """),
                [error, to_iso(now + delay), to_iso(now), *params],
            )
        else:
            cur = self.db.execute(
                dedent(f"""\
                UPDATE queue_jobs
                SET status = 'failed', error = ?, locked_by = NULL, locked_until = NULL,
                    finished_at = ?, updated_at = ?
                {where}
            """),
                [error, to_iso(now), to_iso(now), *params],
            )
        self.db.commit()
        if cur.rowcount != 1:
            log.warning("Job %s is no longer held by %s; failure dropped", job_id, worker_id)
            return None
        if retrying:
            log.info(
                "Job %s failed (attempt %d/%d), retrying in %s",
                job_id,
                job.attempts,
                job.max_attempts,
                delay,
            )
        return self.get(job_id)

    def requeue_stale(self, now: datetime | None = None) -> int:
        """Hand jobs whose lease expired back to the waiting set."""
        now = now or utcnow()
        cur = self.db.execute(
            dedent("""\
            UPDATE queue_jobs
            SET status = 'waiting', locked_by = NULL, locked_until = NULL, updated_at = ?
            WHERE status = 'active' AND locked_until < ?
        """),
            (to_iso(now), to_iso(now)),
        )
        self.db.commit()
        if cur.rowcount:
            log.warning("Requeued %d jobs with expired leases", cur.rowcount)
        return cur.rowcount

    def next_run_after(self, queue: str) -> datetime | None:
        row = self.db.execute(
            "SELECT MIN(run_after) FROM queue_jobs WHERE queue = ? AND status = 'waiting'",
            (queue,),
        ).fetchone()
        return datetime.fromisoformat(row[0]) if row and row[0] else None

    def stats(self, queue: str) -> dict[str, int]:
        counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0}
        rows = self.db.execute(
            "SELECT status, COUNT(*) FROM queue_jobs WHERE queue = ? GROUP BY status",
            (queue,),
        ).fetchall()
        for status, count in rows:
            counts[status] = count
        return counts

    def prune(
        self,
        queue: str,
        *,
        keep_completed: int = KEEP_COMPLETED,
        keep_failed: int = KEEP_FAILED,
    ) -> int:
        removed = 0
        for status, keep in (("completed", keep_completed), ("failed", keep_failed)):
            cur = self.db.execute(
                dedent("""\
                DELETE FROM queue_jobs
                WHERE queue = ? AND status = ? AND id NOT IN (
                    SELECT id FROM queue_jobs
                    WHERE queue = ? AND status = ?
                    ORDER BY finished_at DESC
                    LIMIT ?
                )
            """),
                (queue, status, queue, status, keep),
            )
            removed += cur.rowcount
        self.db.commit()
        return removed
