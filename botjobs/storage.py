"""
SQLite storage layer for the bot job engine.
"""
import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any

from loguru import logger

from botjobs.exceptions import StorageError
from botjobs.models import Job, PENDING, IN_FLIGHT, COMPLETED, FAILED, STATUSES, MAX_ERROR_LENGTH
from botjobs.utils import utcnow, to_iso, seconds_before

DEFAULT_DB_PATH = "botjobs.db"

# Seconds a connection waits for another writer's lock before giving up
BUSY_TIMEOUT = 30.0

JOB_COLUMNS = (
    "id, kind, payload, status, attempts, dedupe_key, created_at, updated_at, "
    "claimed_at, completed_at, error"
)


class Storage:
    """
    Handles all database operations for the job queue.

    This is the only component that writes job state. Uses SQLite for
    persistence with a simple schema:
    - jobs table: stores all job records and their status
    - config table: stores engine configuration
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file (defaults to $BOTJOBS_DB, then botjobs.db)
        """
        self.db_path = db_path or os.environ.get("BOTJOBS_DB", DEFAULT_DB_PATH)
        self._ensure_db_exists()

    def _ensure_db_exists(self):
        """Create database and tables if they don't exist."""
        with self._get_connection() as conn:
            self._create_tables(conn)

    @contextmanager
    def _get_connection(self):
        """
        Context manager for database connections.

        Commits on success, rolls back on error and always closes the
        connection. Any sqlite3 error surfaces as StorageError.
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open job store {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Job store error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _create_tables(self, conn: sqlite3.Connection):
        """
        Create database schema.

        The seq column preserves enqueue order for jobs created within the
        same timestamp; dedupe_key is unique when set.
        """
        conn.execute("PRAGMA journal_mode=WAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                dedupe_key TEXT UNIQUE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                claimed_at TEXT,
                completed_at TEXT,
                error TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status_created
            ON jobs(status, created_at)
        """)

    def enqueue_job(
        self,
        kind: str,
        payload: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> Job:
        """
        Save a new pending job.

        Args:
            kind: Action kind the job will be dispatched on
            payload: JSON-serialisable data handed to the action
            job_id: Explicit id; a uuid4 is generated when omitted
            dedupe_key: When a job with this key already exists, it is
                returned unchanged instead of creating a second one

        Returns:
            The stored Job (new, or the existing one for a duplicate key)

        Example:
            job = storage.enqueue_job('bot_move', {'room_code': 'ABCD', 'player_id': 1, 'expected_turn': 7})
        """
        if not kind or not str(kind).strip():
            raise ValueError("Job kind cannot be empty")
        if job_id is not None and not str(job_id).strip():
            raise ValueError("Job id cannot be empty")

        job = Job(id=job_id or str(uuid.uuid4()), kind=kind, payload=payload or {},
                  status=PENDING, dedupe_key=dedupe_key)
        try:
            encoded = json.dumps(job.payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Payload is not JSON serialisable: {e}") from e

        with self._get_connection() as conn:
            cursor = conn.execute(f"""
                INSERT OR IGNORE INTO jobs ({JOB_COLUMNS})
                VALUES (?, ?, ?, ?, 0, ?, ?, ?, NULL, NULL, NULL)
            """, (job.id, job.kind, encoded, PENDING, job.dedupe_key, job.created_at, job.updated_at))

            if cursor.rowcount == 1:
                logger.debug(f"Enqueued job {job.id} kind={job.kind}")
                return job

            # Ignored: either the dedupe key or the id already exists
            if dedupe_key is not None:
                row = conn.execute(
                    f"SELECT {JOB_COLUMNS} FROM jobs WHERE dedupe_key = ?", (dedupe_key,)
                ).fetchone()
                if row:
                    logger.debug(f"Job with dedupe key {dedupe_key} already queued as {row['id']}")
                    return Job.from_row(row)
            raise ValueError(f"Job '{job.id}' already exists")

    def get_job(self, job_id: str) -> Optional[Job]:
        """
        Retrieve a job by its ID.

        Returns:
            Job if found, None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return Job.from_row(row) if row else None

    def list_jobs(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[Job]:
        """
        List jobs in enqueue order, optionally filtered by status.

        Example:
            pending = storage.list_jobs(status='pending')
            first_ten = storage.list_jobs(limit=10)
        """
        if status is not None and status not in STATUSES:
            raise ValueError(f"Unknown status '{status}'")

        sql = f"SELECT {JOB_COLUMNS} FROM jobs"
        params: List[Any] = []

        if status:
            sql += " WHERE status = ?"
            params.append(status)

        sql += " ORDER BY created_at ASC, seq ASC"

        if limit:
            sql += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            return [Job.from_row(row) for row in conn.execute(sql, params).fetchall()]

    def claim_batch(
        self,
        limit: int,
        now: Optional[datetime] = None,
        stale_after: Optional[float] = None,
    ) -> List[Job]:
        """
        Atomically claim up to `limit` eligible jobs, oldest first.

        A job is eligible when it is pending, or when it has been in flight
        since before `now - stale_after` (its executor crashed or never
        wrote a result). Each claimed job moves to in_flight with
        claimed_at = now and attempts + 1.

        How it works:
            1. BEGIN IMMEDIATE takes the database write lock, so no other
               claimer can read the same rows until this one commits
            2. Select the eligible ids in order
            3. Flip each with an UPDATE that re-checks eligibility and keep
               only the rows it actually changed
            4. Commit and return the claimed jobs

        Args:
            limit: Maximum number of jobs to claim
            now: Claim timestamp (defaults to the current UTC time)
            stale_after: Seconds after which an in_flight claim may be taken
                over; None disables stale recovery

        Returns:
            Claimed jobs in claim order; an empty list when nothing is eligible
        """
        if limit <= 0:
            return []

        now = now or utcnow()
        now_str = to_iso(now)

        where = "status = ?"
        params: List[Any] = [PENDING]
        if stale_after is not None:
            where = "(status = ? OR (status = ? AND claimed_at < ?))"
            params = [PENDING, IN_FLIGHT, to_iso(seconds_before(now, stale_after))]

        claimed: List[Job] = []
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")

            rows = conn.execute(f"""
                SELECT id, status FROM jobs
                WHERE {where}
                ORDER BY created_at ASC, seq ASC
                LIMIT ?
            """, params + [limit]).fetchall()

            for row in rows:
                cursor = conn.execute(f"""
                    UPDATE jobs
                    SET status = ?, claimed_at = ?, updated_at = ?, attempts = attempts + 1
                    WHERE id = ? AND {where}
                """, [IN_FLIGHT, now_str, now_str, row['id']] + params)
                if cursor.rowcount != 1:
                    continue
                if row['status'] == IN_FLIGHT:
                    logger.warning(f"Reclaiming stale in-flight job {row['id']}")
                job_row = conn.execute(
                    f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (row['id'],)
                ).fetchone()
                claimed.append(Job.from_row(job_row))

        if claimed:
            logger.debug(f"Claimed {len(claimed)} job(s): {', '.join(job.id for job in claimed)}")
        return claimed

    def start_job(self, job_id: str, claimed_at: str) -> Optional[str]:
        """
        Confirm a claim right before its action runs and restart its stale clock.

        Jobs wait in the run's thread pool after being claimed, so a claim can
        go stale and be taken over before its action starts. The refresh only
        lands while the job is in flight under `claimed_at`.

        Returns:
            The new claimed_at token, or None if the claim no longer holds
        """
        now = to_iso(utcnow())
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET claimed_at = ?, updated_at = ?
                WHERE id = ? AND status = ? AND claimed_at = ?
            """, (now, now, job_id, IN_FLIGHT, claimed_at))
            if cursor.rowcount != 1:
                return None
        return now

    def _finish(self, job_id: str, claimed_at: str, status: str, error: Optional[str]) -> bool:
        now = to_iso(utcnow())
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET status = ?, completed_at = ?, updated_at = ?, error = ?
                WHERE id = ? AND status = ? AND claimed_at = ?
            """, (status, now, now, error, job_id, IN_FLIGHT, claimed_at))
            return cursor.rowcount == 1

    def complete_job(self, job_id: str, claimed_at: str) -> bool:
        """
        Mark a claimed job completed.

        The write only lands while the job is still in flight under the
        claim identified by `claimed_at`; terminal jobs and jobs reclaimed by
        another run are left untouched.

        Returns:
            True if the job was updated, False if the claim no longer holds
        """
        return self._finish(job_id, claimed_at, COMPLETED, None)

    def fail_job(self, job_id: str, claimed_at: str, error: str) -> bool:
        """
        Mark a claimed job failed with a reason.

        Same claim check as complete_job. The reason is truncated to 500
        characters.
        """
        return self._finish(job_id, claimed_at, FAILED, (error or "unknown error")[:MAX_ERROR_LENGTH])

    def get_job_counts(self) -> Dict[str, int]:
        """
        Get count of jobs by status.

        Returns:
            Dictionary mapping every status to its count, e.g.
            {'pending': 5, 'in_flight': 2, 'completed': 100, 'failed': 3}
        """
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT status, COUNT(*) AS count
                FROM jobs
                GROUP BY status
            """).fetchall()

        counts = {status: 0 for status in STATUSES}
        for row in rows:
            counts[row['status']] = row['count']
        return counts

    def set_config(self, key: str, value: str) -> None:
        """
        Store a configuration value.

        Example:
            storage.set_config('batch-size', '20')
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO config (key, value)
                VALUES (?, ?)
            """, (key, str(value)))

    def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Retrieve a configuration value, or `default` when unset."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM config WHERE key = ?", (key,)
            ).fetchone()
            return row['value'] if row else default

    def list_config(self) -> Dict[str, str]:
        """List all stored configuration key-value pairs."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key, value FROM config ORDER BY key").fetchall()
            return {row['key']: row['value'] for row in rows}
