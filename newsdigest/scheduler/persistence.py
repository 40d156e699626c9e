"""
Job Store for Job Scheduler.

The Dispatcher mirrors every Job state transition here for audit and crash
visibility. The store is an external collaborator: only the JobStore
protocol is required, two implementations ship with the package.

- InMemoryJobStore: process-local, used by tests and embedded setups
- SQLiteJobStore: durable, SQLite with WAL mode, one connection per call

Retention is a store-level concern; nothing here deletes records.
"""

import asyncio
import copy
import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Protocol, runtime_checkable

from .entities import Job, JobStatus
from .errors import JobStoreError


# Columns that the Dispatcher may update after creation
UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "scheduled_at",
        "started_at",
        "completed_at",
        "attempts",
        "retry_count",
        "result",
        "error",
        "error_kind",
        "updated_at",
    }
)


@runtime_checkable
class JobStore(Protocol):
    """Interface the scheduler requires from durable job storage."""

    async def create(self, job: Job) -> None:
        """Persist a newly submitted job."""
        ...

    async def update_status(self, job_id: str, fields: dict) -> None:
        """Apply the fields produced by Job.status_fields()."""
        ...

    async def find(self, job_id: str) -> Optional[Job]:
        """Load a job by ID."""
        ...

    async def list_by_status(
        self,
        status: JobStatus,
        since: Optional[datetime] = None,
        job_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        """List jobs in a status, oldest first."""
        ...


def _check_fields(fields: dict) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise JobStoreError(f"Cannot update immutable job fields: {sorted(unknown)}")


class InMemoryJobStore:
    """Dict-backed JobStore. Records are copied in and out."""

    def __init__(self):
        self._records: dict[str, dict] = {}

    async def create(self, job: Job) -> None:
        if job.job_id in self._records:
            raise JobStoreError(f"Job already exists: {job.job_id}")
        self._records[job.job_id] = copy.deepcopy(job.to_dict())

    async def update_status(self, job_id: str, fields: dict) -> None:
        _check_fields(fields)
        record = self._records.get(job_id)
        if record is None:
            raise JobStoreError(f"Job not found in store: {job_id}")
        record.update(copy.deepcopy(fields))

    async def find(self, job_id: str) -> Optional[Job]:
        record = self._records.get(job_id)
        if record is None:
            return None
        return Job.from_dict(copy.deepcopy(record))

    async def list_by_status(
        self,
        status: JobStatus,
        since: Optional[datetime] = None,
        job_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        jobs = [
            Job.from_dict(copy.deepcopy(record))
            for record in self._records.values()
            if record["status"] == JobStatus(status).value
        ]
        if since is not None:
            jobs = [job for job in jobs if job.created_at >= since]
        if job_type is not None:
            jobs = [job for job in jobs if job.job_type == job_type]
        jobs.sort(key=lambda job: job.created_at)
        if limit is not None:
            jobs = jobs[:limit]
        return jobs

    def __len__(self) -> int:
        return len(self._records)


class SQLiteJobStore:
    """
    SQLite-based JobStore.

    - Abstracts SQLite storage behind the async JobStore protocol
    - Blocking sqlite3 calls run in a worker thread via asyncio.to_thread
    - Does NOT contain business logic
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file (parent directory is created)
        """
        self.db_path = str(db_path)
        if self.db_path == ":memory:":
            # Every call opens a fresh connection, so the schema would not survive
            raise ValueError("SQLiteJobStore needs a file path; use InMemoryJobStore instead")
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_jobs (
                    job_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    job_type TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    scheduled_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL,
                    timeout REAL NOT NULL,
                    result TEXT,
                    error TEXT,
                    error_kind TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_status
                ON scheduled_jobs (status, created_at)
            """)

    # =========================================================================
    # Row Conversion
    # =========================================================================

    @staticmethod
    def _encode(fields: dict) -> dict:
        encoded = dict(fields)
        for key in ("payload", "metadata"):
            if key in encoded:
                encoded[key] = json.dumps(encoded[key] or {}, default=str)
        if "result" in encoded:
            encoded["result"] = (
                json.dumps(encoded["result"], default=str)
                if encoded["result"] is not None
                else None
            )
        return encoded

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        data = dict(row)
        data["payload"] = json.loads(data["payload"] or "{}")
        data["metadata"] = json.loads(data["metadata"] or "{}")
        data["result"] = json.loads(data["result"]) if data["result"] else None
        return Job.from_dict(data)

    # =========================================================================
    # Sync Operations
    # =========================================================================

    def _create_sync(self, job: Job) -> None:
        record = self._encode(job.to_dict())
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO scheduled_jobs ({columns}) VALUES ({placeholders})",
                tuple(record.values()),
            )

    def _update_sync(self, job_id: str, fields: dict) -> None:
        _check_fields(fields)
        if not fields:
            return
        record = self._encode(fields)
        assignments = ", ".join(f"{key} = ?" for key in record)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE scheduled_jobs SET {assignments} WHERE job_id = ?",
                (*record.values(), job_id),
            )
            if cursor.rowcount == 0:
                raise JobStoreError(f"Job not found in store: {job_id}")

    def _find_sync(self, job_id: str) -> Optional[Job]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()
        return self._row_to_job(row) if row else None

    def _list_sync(
        self,
        status: JobStatus,
        since: Optional[datetime],
        job_type: Optional[str],
        limit: Optional[int],
    ) -> list[Job]:
        query = "SELECT * FROM scheduled_jobs WHERE status = ?"
        params: list = [JobStatus(status).value]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(since.isoformat())
        if job_type is not None:
            query += " AND job_type = ?"
            params.append(job_type)
        query += " ORDER BY created_at ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    # =========================================================================
    # JobStore Protocol
    # =========================================================================

    async def create(self, job: Job) -> None:
        try:
            await asyncio.to_thread(self._create_sync, job)
        except sqlite3.Error as e:
            raise JobStoreError(f"Failed to create job {job.job_id}: {e}") from e

    async def update_status(self, job_id: str, fields: dict) -> None:
        try:
            await asyncio.to_thread(self._update_sync, job_id, fields)
        except sqlite3.Error as e:
            raise JobStoreError(f"Failed to update job {job_id}: {e}") from e

    async def find(self, job_id: str) -> Optional[Job]:
        try:
            return await asyncio.to_thread(self._find_sync, job_id)
        except sqlite3.Error as e:
            raise JobStoreError(f"Failed to load job {job_id}: {e}") from e

    async def list_by_status(
        self,
        status: JobStatus,
        since: Optional[datetime] = None,
        job_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        try:
            return await asyncio.to_thread(self._list_sync, status, since, job_type, limit)
        except sqlite3.Error as e:
            raise JobStoreError(f"Failed to list {status} jobs: {e}") from e
