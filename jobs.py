# ABOUTME: SQLite-backed async job store for background text-to-speech jobs
# ABOUTME: Tracks job status, chunk progress (processed/failed/total), ETA, and error state
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from scheduler import ProgressUpdate

logger = logging.getLogger("longform-tts.jobs")

DB_PATH = "data/jobs.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    status TEXT DEFAULT 'queued',
    text_chars INTEGER DEFAULT 0,
    format TEXT,
    voice TEXT,
    language TEXT,
    chunks_total INTEGER DEFAULT 0,
    chunks_done INTEGER DEFAULT 0,
    chunks_failed INTEGER DEFAULT 0,
    status_message TEXT,
    eta_minutes INTEGER,
    error TEXT,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def init_db():
    """Create tables if they don't exist."""
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executescript(SCHEMA)
        await db.commit()


def new_job_id() -> str:
    return uuid.uuid4().hex[:12]


async def create_job(
    job_id: str,
    text_chars: int,
    fmt: str,
    voice: str,
    language: str,
) -> dict:
    """Insert a new job and return its row as dict."""
    now = _now()
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO jobs (id, status, text_chars, format, voice, language, created_at, updated_at)
               VALUES (?, 'queued', ?, ?, ?, ?, ?, ?)""",
            (job_id, text_chars, fmt, voice, language, now, now),
        )
        await db.commit()
    return await get_job(job_id)


async def get_job(job_id: str) -> dict | None:
    """Fetch a single job by ID."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None


async def list_jobs() -> list[dict]:
    """List all jobs, newest first."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM jobs ORDER BY created_at DESC") as cursor:
            return [dict(row) async for row in cursor]


async def update_status(job_id: str, status: str, error: str | None = None):
    """Update job status and optionally set error."""
    now = _now()
    async with aiosqlite.connect(DB_PATH) as db:
        if error:
            await db.execute(
                "UPDATE jobs SET status=?, error=?, updated_at=? WHERE id=?",
                (status, error, now, job_id),
            )
        elif status == "completed":
            await db.execute(
                "UPDATE jobs SET status=?, eta_minutes=0, updated_at=?, completed_at=? WHERE id=?",
                (status, now, now, job_id),
            )
        else:
            await db.execute(
                "UPDATE jobs SET status=?, updated_at=? WHERE id=?",
                (status, now, job_id),
            )
        await db.commit()


async def update_progress(job_id: str, update: ProgressUpdate):
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """UPDATE jobs SET chunks_done=?, chunks_total=?, chunks_failed=?,
                   status_message=?, eta_minutes=?, updated_at=? WHERE id=?""",
            (update.processed, update.total, update.failed, update.message,
             update.estimated_remaining_minutes, _now(), job_id),
        )
        await db.commit()


async def delete_job(job_id: str):
    """Delete a job record."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        await db.commit()


class JobProgress:
    """Progress observer that records scheduler updates on a job row."""

    def __init__(self, job_id: str):
        self.job_id = job_id

    async def on_progress(self, update: ProgressUpdate) -> None:
        logger.debug("Job %s: %d/%d chunks (%d failed)", self.job_id,
                     update.processed, update.total, update.failed)
        await update_progress(self.job_id, update)
