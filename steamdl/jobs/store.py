"""SQLite-backed persistence for job records."""
from __future__ import annotations

import logging
from typing import List, Optional, Protocol, Sequence

import aiosqlite

from .models import JobRecord, JobStatus

logger = logging.getLogger(__name__)

_COLUMNS = (
    "job_id",
    "identity_id",
    "target",
    "status",
    "progress",
    "phase",
    "created_at",
    "started_at",
    "completed_at",
    "error_message",
    "artifact_path",
    "retain_until",
)


class JobRepository(Protocol):
    """Persistence seam used by the scheduler."""

    async def save(self, record: JobRecord) -> None: ...

    async def load(self, job_id: str) -> Optional[JobRecord]: ...

    async def list_by_status(self, *statuses: JobStatus, limit: int = 100) -> List[JobRecord]: ...


class JobStore:
    """Async SQLite store for job lifecycle tracking."""

    def __init__(self, db_path: str = "steamdl_jobs.db") -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Create the jobs table if it doesn't exist."""
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                job_id TEXT PRIMARY KEY,
                identity_id TEXT NOT NULL,
                target TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'queued',
                progress REAL DEFAULT 0.0,
                phase TEXT DEFAULT '',
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                error_message TEXT,
                artifact_path TEXT,
                retain_until TEXT
            )
        """)
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, created_at)")
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    # ── CRUD ─────────────────────────────────────────────────────────

    async def save(self, record: JobRecord) -> None:
        """Insert or replace the full record."""
        db = await self._conn()
        data = record.model_dump(mode="json")
        placeholders = ",".join("?" for _ in _COLUMNS)
        await db.execute(
            f"INSERT OR REPLACE INTO jobs ({','.join(_COLUMNS)}) VALUES ({placeholders})",
            tuple(data[c] for c in _COLUMNS),
        )
        await db.commit()

    async def load(self, job_id: str) -> Optional[JobRecord]:
        """Fetch a single job by ID."""
        db = await self._conn()
        async with db.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return self._row_to_record(row, desc)

    async def list_by_status(self, *statuses: JobStatus, limit: int = 100) -> List[JobRecord]:
        """List jobs in any of *statuses*, oldest first."""
        if not statuses:
            return []
        db = await self._conn()
        marks = ",".join("?" for _ in statuses)
        async with db.execute(
            f"SELECT * FROM jobs WHERE status IN ({marks}) ORDER BY created_at ASC LIMIT ?",
            (*(s.value for s in statuses), limit),
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    async def list_jobs(self, limit: int = 50, identity_id: Optional[str] = None) -> List[JobRecord]:
        """List jobs ordered by creation time (newest first)."""
        db = await self._conn()
        if identity_id is None:
            query, params = "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,)
        else:
            query = "SELECT * FROM jobs WHERE identity_id = ? ORDER BY created_at DESC LIMIT ?"
            params = (identity_id, limit)
        async with db.execute(query, params) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _row_to_record(row: Sequence, description) -> JobRecord:
        cols = [d[0] for d in description]
        return JobRecord(**dict(zip(cols, row)))
