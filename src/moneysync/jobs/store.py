"""Durable job queue backed by the ``jobs`` schema.

Every state transition is a conditional UPDATE whose row count tells the caller
whether it won: two workers racing for the same job cannot both claim it, and a
worker whose lease was taken over cannot complete or fail the job.
"""

import json
import logging
from datetime import datetime
from typing import Any

from moneysync.database import SyncDatabase
from moneysync.utils.clock import from_db_timestamp, to_db_timestamp

from .models import (
    JobFailure,
    JobPayload,
    JobRecord,
    JobStatus,
    JobType,
    QueueStatus,
    dump_job_payload,
    parse_job_payload,
)

logger = logging.getLogger(__name__)

_JOB_COLUMNS = """
    job_id, job_type, payload, status, priority, attempts, max_attempts, run_at,
    lease_owner, lease_expires_at, stall_count, last_error, created_at,
    updated_at, started_at, finished_at
"""


def _row_to_job(row: tuple[Any, ...]) -> JobRecord:
    return JobRecord(
        job_id=row[0],
        job_type=JobType(row[1]),
        payload=parse_job_payload(json.loads(row[2])),
        status=JobStatus(row[3]),
        priority=row[4],
        attempts=row[5],
        max_attempts=row[6],
        run_at=from_db_timestamp(row[7]),
        lease_owner=row[8],
        lease_expires_at=from_db_timestamp(row[9]),
        stall_count=row[10],
        last_error=row[11],
        created_at=from_db_timestamp(row[12]),
        updated_at=from_db_timestamp(row[13]),
        started_at=from_db_timestamp(row[14]),
        finished_at=from_db_timestamp(row[15]),
    )


class JobStore:
    """Row-level operations on ``jobs.job_queue`` and ``jobs.job_failures``."""

    def __init__(self, database: SyncDatabase):
        self.db = database

    def insert(
        self,
        job_id: str,
        payload: JobPayload,
        priority: int,
        max_attempts: int,
        run_at: datetime,
        now: datetime,
    ) -> bool:
        """Insert a pending job.

        Returns:
            bool: False if a job with this id already exists
        """
        inserted = self.db.execute_count(
            """
            INSERT OR IGNORE INTO jobs.job_queue (
                job_id, seq, job_type, payload, status, priority, attempts,
                max_attempts, run_at, stall_count, created_at, updated_at
            ) VALUES (?, nextval('jobs.job_queue_seq'), ?, ?, ?, ?, 0, ?, ?, 0, ?, ?)
            """,
            [
                job_id,
                payload.kind,
                dump_job_payload(payload),
                JobStatus.PENDING.value,
                priority,
                max_attempts,
                to_db_timestamp(run_at),
                to_db_timestamp(now),
                to_db_timestamp(now),
            ],
        )
        return inserted == 1

    def get(self, job_id: str) -> JobRecord | None:
        row = self.db.fetchone(
            f"SELECT {_JOB_COLUMNS} FROM jobs.job_queue WHERE job_id = ?", [job_id]
        )
        return _row_to_job(row) if row else None

    def candidates(
        self, job_types: list[JobType], now: datetime, limit: int = 10
    ) -> list[JobRecord]:
        """Return claimable jobs: due pending jobs and active jobs whose lease expired."""
        if not job_types:
            return []
        rows = self.db.fetchall(
            f"""
            SELECT {_JOB_COLUMNS} FROM jobs.job_queue
            WHERE list_contains(?, job_type)
              AND (
                (status = 'pending' AND run_at <= ?)
                OR (status = 'active' AND lease_expires_at <= ?)
              )
            ORDER BY priority, run_at, seq
            LIMIT ?
            """,
            [
                [t.value for t in job_types],
                to_db_timestamp(now),
                to_db_timestamp(now),
                limit,
            ],
        )
        return [_row_to_job(row) for row in rows]

    def active_count(self, job_type: JobType, now: datetime) -> int:
        """Count jobs of a type currently held under a live lease."""
        row = self.db.fetchone(
            """
            SELECT count(*) FROM jobs.job_queue
            WHERE job_type = ? AND status = 'active' AND lease_expires_at > ?
            """,
            [job_type.value, to_db_timestamp(now)],
        )
        return int(row[0]) if row else 0

    def claim_pending(
        self, job_id: str, worker_id: str, now: datetime, lease_until: datetime
    ) -> bool:
        claimed = self.db.execute_count(
            """
            UPDATE jobs.job_queue
            SET status = 'active', attempts = attempts + 1, lease_owner = ?,
                lease_expires_at = ?, started_at = ?, updated_at = ?
            WHERE job_id = ? AND status = 'pending' AND run_at <= ?
            """,
            [
                worker_id,
                to_db_timestamp(lease_until),
                to_db_timestamp(now),
                to_db_timestamp(now),
                job_id,
                to_db_timestamp(now),
            ],
        )
        return claimed == 1

    def reclaim_stalled(
        self,
        job: JobRecord,
        worker_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        """Take over an active job whose lease expired, counting the stall."""
        claimed = self.db.execute_count(
            """
            UPDATE jobs.job_queue
            SET attempts = attempts + 1, stall_count = stall_count + 1,
                lease_owner = ?, lease_expires_at = ?, started_at = ?, updated_at = ?
            WHERE job_id = ? AND status = 'active'
              AND lease_owner = ? AND lease_expires_at <= ?
            """,
            [
                worker_id,
                to_db_timestamp(lease_until),
                to_db_timestamp(now),
                to_db_timestamp(now),
                job.job_id,
                job.lease_owner,
                to_db_timestamp(now),
            ],
        )
        return claimed == 1

    def fail_stalled(self, job: JobRecord, error: str, now: datetime) -> bool:
        """Fail an active job whose lease expired without reclaiming it."""
        failed = self.db.execute_count(
            """
            UPDATE jobs.job_queue
            SET status = 'failed', lease_owner = NULL, lease_expires_at = NULL,
                last_error = ?, finished_at = ?, updated_at = ?
            WHERE job_id = ? AND status = 'active'
              AND lease_owner = ? AND lease_expires_at <= ?
            """,
            [
                error,
                to_db_timestamp(now),
                to_db_timestamp(now),
                job.job_id,
                job.lease_owner,
                to_db_timestamp(now),
            ],
        )
        return failed == 1

    def renew_lease(
        self, job_id: str, worker_id: str, lease_until: datetime, now: datetime
    ) -> bool:
        renewed = self.db.execute_count(
            """
            UPDATE jobs.job_queue
            SET lease_expires_at = ?, updated_at = ?
            WHERE job_id = ? AND status = 'active' AND lease_owner = ?
            """,
            [to_db_timestamp(lease_until), to_db_timestamp(now), job_id, worker_id],
        )
        return renewed == 1

    def complete(self, job_id: str, worker_id: str, now: datetime) -> bool:
        completed = self.db.execute_count(
            """
            UPDATE jobs.job_queue
            SET status = 'completed', lease_owner = NULL, lease_expires_at = NULL,
                finished_at = ?, updated_at = ?
            WHERE job_id = ? AND status = 'active' AND lease_owner = ?
            """,
            [to_db_timestamp(now), to_db_timestamp(now), job_id, worker_id],
        )
        return completed == 1

    def reschedule(
        self, job_id: str, worker_id: str, run_at: datetime, error: str, now: datetime
    ) -> bool:
        """Return a failed attempt to pending, due again at ``run_at``."""
        rescheduled = self.db.execute_count(
            """
            UPDATE jobs.job_queue
            SET status = 'pending', lease_owner = NULL, lease_expires_at = NULL,
                run_at = ?, last_error = ?, updated_at = ?
            WHERE job_id = ? AND status = 'active' AND lease_owner = ?
            """,
            [to_db_timestamp(run_at), error, to_db_timestamp(now), job_id, worker_id],
        )
        return rescheduled == 1

    def fail(self, job_id: str, worker_id: str, error: str, now: datetime) -> bool:
        failed = self.db.execute_count(
            """
            UPDATE jobs.job_queue
            SET status = 'failed', lease_owner = NULL, lease_expires_at = NULL,
                last_error = ?, finished_at = ?, updated_at = ?
            WHERE job_id = ? AND status = 'active' AND lease_owner = ?
            """,
            [error, to_db_timestamp(now), to_db_timestamp(now), job_id, worker_id],
        )
        return failed == 1

    def record_failure(
        self, job_id: str, attempt: int, error: str, transient: bool, now: datetime
    ) -> None:
        self.db.execute(
            """
            INSERT INTO jobs.job_failures (job_id, attempt, error, transient, failed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [job_id, attempt, error, transient, to_db_timestamp(now)],
        )

    def failures(self, job_id: str) -> list[JobFailure]:
        rows = self.db.fetchall(
            """
            SELECT job_id, attempt, error, transient, failed_at
            FROM jobs.job_failures
            WHERE job_id = ?
            ORDER BY failed_at, attempt
            """,
            [job_id],
        )
        return [
            JobFailure(
                job_id=row[0],
                attempt=row[1],
                error=row[2],
                transient=row[3],
                failed_at=from_db_timestamp(row[4]),
            )
            for row in rows
        ]

    def list_by_status(
        self, status: JobStatus, job_type: JobType | None = None, limit: int = 100
    ) -> list[JobRecord]:
        sql = f"SELECT {_JOB_COLUMNS} FROM jobs.job_queue WHERE status = ?"
        params: list[Any] = [status.value]
        if job_type is not None:
            sql += " AND job_type = ?"
            params.append(job_type.value)
        sql += " ORDER BY updated_at DESC, seq DESC LIMIT ?"
        params.append(limit)
        return [_row_to_job(row) for row in self.db.fetchall(sql, params)]

    def counts(self, now: datetime, job_type: JobType | None = None) -> QueueStatus:
        sql = """
            SELECT
                count(*) FILTER (WHERE status = 'pending' AND run_at <= ?),
                count(*) FILTER (WHERE status = 'active'),
                count(*) FILTER (WHERE status = 'completed'),
                count(*) FILTER (WHERE status = 'failed'),
                count(*) FILTER (WHERE status = 'pending' AND run_at > ?)
            FROM jobs.job_queue
        """
        params: list[Any] = [to_db_timestamp(now), to_db_timestamp(now)]
        if job_type is not None:
            sql += " WHERE job_type = ?"
            params.append(job_type.value)
        row = self.db.fetchone(sql, params) or (0, 0, 0, 0, 0)
        return QueueStatus(
            pending=row[0], active=row[1], completed=row[2], failed=row[3], delayed=row[4]
        )

    def retry_failed(self, job_id: str, now: datetime) -> bool:
        """Move a failed job back to pending with a fresh attempt budget."""
        retried = self.db.execute_count(
            """
            UPDATE jobs.job_queue
            SET status = 'pending', attempts = 0, stall_count = 0, run_at = ?,
                last_error = NULL, finished_at = NULL, updated_at = ?
            WHERE job_id = ? AND status = 'failed'
            """,
            [to_db_timestamp(now), to_db_timestamp(now), job_id],
        )
        return retried == 1

    def remove(self, job_id: str) -> bool:
        """Delete a job that is not currently leased, along with its failures."""
        with self.db.transaction():
            removed = self.db.execute_count(
                "DELETE FROM jobs.job_queue WHERE job_id = ? AND status != 'active'",
                [job_id],
            )
            if removed:
                self.db.execute(
                    "DELETE FROM jobs.job_failures WHERE job_id = ?", [job_id]
                )
        return removed == 1

    def purge_completed(self, finished_before: datetime) -> int:
        return self.db.execute_count(
            """
            DELETE FROM jobs.job_queue
            WHERE status = 'completed' AND finished_at < ?
            """,
            [to_db_timestamp(finished_before)],
        )
