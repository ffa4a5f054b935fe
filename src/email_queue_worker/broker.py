# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed job broker for email events.

The broker keeps one ``jobs`` table and offers the enqueue/claim/report
contract the worker consumes:

- ``enqueue`` validates an event and stores it under a deterministic job id
  (type, content hash and a per-type time window), so that an event
  published twice in quick succession yields a single job.
- ``claim`` hands out ready jobs by priority and marks them active.
- ``ack`` / ``retry`` / ``fail`` report the outcome of one attempt;
  ``retry`` finalizes the job as failed once its attempts are used up.
- ``requeue_stalled`` returns jobs whose claim is too old to the queue.

A single aiosqlite connection is held open between ``connect()`` and
``close()``; the resilience manager supervises it.

Example:
    Basic usage::

        broker = SqliteJobBroker("/data/email_jobs.db")
        await broker.connect()
        result = await broker.enqueue({"type": "WELCOME_EMAIL", ...})
        jobs = await broker.claim(limit=5, worker_id="worker-1")
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import sqlite3
import time
from collections.abc import Iterable
from typing import Any

import aiosqlite

from .errors import BrokerConnectionError
from .logger import get_logger
from .models import DEFAULT_PRIORITY, EVENT_PRIORITIES, EmailEvent, EventType, Job, parse_event

JOB_STATUSES = ("waiting", "active", "completed", "failed")

# Publisher deduplication windows in seconds
DEDUP_WINDOWS = {
    EventType.ORDER_CONFIRMATION_RESEND.value: 15 * 60,
    EventType.ORDER_CONFIRMATION.value: 5 * 60,
    EventType.ADMIN_ORDER_NOTIFICATION.value: 3 * 60,
}
DEFAULT_DEDUP_WINDOW = 2 * 60

STALLED_REASON = "job stalled more than allowable limit"


def dedup_window_seconds(event_type: str) -> int:
    return DEDUP_WINDOWS.get(event_type, DEFAULT_DEDUP_WINDOW)


def content_hash(event: EmailEvent) -> str:
    """Hash the identifying content of ``event`` (timestamp rounded to the minute)."""
    data = event.model_dump(mode="json", exclude={"timestamp"}, exclude_none=True)
    if "message" in data:
        data["message"] = data["message"][:200]
    if "reset_token" in data:
        data["reset_token"] = data["reset_token"][:8]
    data["timestamp_minute"] = int(event.timestamp.timestamp() // 60)
    raw = json.dumps(data, sort_keys=True)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:12]


def generate_job_id(event: EmailEvent) -> str:
    window = int(event.timestamp.timestamp() // dedup_window_seconds(event.type))
    return f"{event.type}-{content_hash(event)}-{window}"


class SqliteJobBroker:
    """Durable job queue on SQLite.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:".
        default_max_attempts: Attempts given to jobs enqueued without one.
    """

    def __init__(self, db_path: str = "/data/email_jobs.db", *, default_max_attempts: int = 5,
                 lifecycle=None, logger=None):
        self.db_path = db_path or ":memory:"
        self.default_max_attempts = max(1, int(default_max_attempts))
        self.lifecycle = lifecycle
        self.logger = logger or get_logger("JobBroker")
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------ connection
    @property
    def is_connected(self) -> bool:
        return self._db is not None

    async def connect(self) -> None:
        """Open the connection and create the schema if needed."""
        if self._db is not None:
            return
        try:
            db = await aiosqlite.connect(self.db_path)
            db.row_factory = aiosqlite.Row
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    data TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'waiting',
                    priority INTEGER NOT NULL DEFAULT 5,
                    attempts_made INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 5,
                    stalled_count INTEGER NOT NULL DEFAULT 0,
                    available_at REAL NOT NULL,
                    created_at REAL NOT NULL,
                    claimed_at REAL,
                    claimed_by TEXT,
                    finished_at REAL,
                    last_error TEXT
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_ready ON jobs(status, available_at, priority)")
            await db.commit()
        except (sqlite3.Error, OSError) as exc:
            raise BrokerConnectionError(f"Cannot open job store {self.db_path}: {exc}") from exc
        self._db = db
        self.logger.info("Job broker connected (%s)", self.db_path)

    async def close(self) -> None:
        db, self._db = self._db, None
        if db is not None:
            await db.close()
            self.logger.info("Job broker connection closed")

    async def reconnect(self) -> None:
        await self.close()
        await self.connect()

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise BrokerConnectionError("Broker connection is not open")
        return self._db

    # --------------------------------------------------------------- helpers
    @staticmethod
    def _decode(row: aiosqlite.Row) -> dict[str, Any]:
        item = dict(row)
        item["data"] = json.loads(item["data"])
        return item

    @staticmethod
    def _to_job(item: dict[str, Any]) -> Job:
        return Job(
            id=item["id"],
            data=item["data"],
            attempts_made=item["attempts_made"],
            max_attempts=item["max_attempts"],
            enqueued_at=item["created_at"],
            priority=item["priority"],
        )

    async def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        async with self._conn().execute(sql, params) as cur:
            rows = await cur.fetchall()
        return [self._decode(row) for row in rows]

    # --------------------------------------------------------------- enqueue
    async def enqueue(
        self,
        event: EmailEvent | dict[str, Any],
        *,
        job_id: str | None = None,
        max_attempts: int | None = None,
        priority: int | None = None,
        delay_ms: int = 0,
    ) -> dict[str, Any]:
        """Validate and store an event.

        Returns:
            ``{"id", "duplicate", "priority"}``; ``duplicate`` is True when a
            job with the same id already existed and nothing was inserted.

        Raises:
            EventValidationError: If the event is invalid.
        """
        parsed = parse_event(event)
        job_id = job_id or generate_job_id(parsed)
        priority = priority if priority is not None else EVENT_PRIORITIES.get(parsed.type, DEFAULT_PRIORITY)
        max_attempts = max(1, int(max_attempts or self.default_max_attempts))
        now = time.time()
        db = self._conn()
        async with self._lock:
            cur = await db.execute(
                """
                INSERT OR IGNORE INTO jobs
                (id, event_type, data, status, priority, max_attempts, available_at, created_at)
                VALUES (?, ?, ?, 'waiting', ?, ?, ?, ?)
                """,
                (
                    job_id,
                    parsed.type,
                    json.dumps(parsed.to_payload()),
                    priority,
                    max_attempts,
                    now + max(0, delay_ms) / 1000.0,
                    now,
                ),
            )
            await db.commit()
            duplicate = cur.rowcount == 0
        if duplicate:
            self.logger.warning("Duplicate event detected and deduplicated: %s | Job: %s", parsed.type, job_id)
        else:
            self.logger.info(
                "Email event published: %s (Job ID: %s) | Priority: %d | Locale: %s",
                parsed.type,
                job_id,
                priority,
                parsed.locale.value,
            )
        if self.lifecycle is not None:
            self.lifecycle.log(
                "created",
                job_id=job_id,
                event_type=parsed.type,
                locale=parsed.locale.value,
                metadata={
                    "priority": priority,
                    "is_duplicate": duplicate,
                    "deduplication_window_s": dedup_window_seconds(parsed.type),
                },
            )
        return {"id": job_id, "duplicate": duplicate, "priority": priority}

    # ----------------------------------------------------------------- claim
    async def claim(self, limit: int, worker_id: str, *, now: float | None = None) -> list[Job]:
        """Mark up to ``limit`` ready jobs active and return them, highest priority first."""
        if limit <= 0:
            return []
        now = time.time() if now is None else now
        db = self._conn()
        async with self._lock:
            async with db.execute(
                """
                SELECT * FROM jobs
                WHERE status = 'waiting' AND available_at <= ?
                ORDER BY priority ASC, available_at ASC, created_at ASC
                LIMIT ?
                """,
                (now, limit),
            ) as cur:
                rows = [self._decode(row) for row in await cur.fetchall()]
            if not rows:
                return []
            await db.executemany(
                "UPDATE jobs SET status = 'active', claimed_at = ?, claimed_by = ? WHERE id = ?",
                [(now, worker_id, row["id"]) for row in rows],
            )
            await db.commit()
        return [self._to_job(row) for row in rows]

    # ------------------------------------------------------------- reporting
    async def ack(self, job_id: str) -> None:
        db = self._conn()
        async with self._lock:
            await db.execute(
                """
                UPDATE jobs SET status = 'completed', attempts_made = attempts_made + 1,
                    finished_at = ?, claimed_at = NULL, last_error = NULL
                WHERE id = ?
                """,
                (time.time(), job_id),
            )
            await db.commit()

    async def retry(self, job_id: str, delay_ms: int, error: str) -> str:
        """Consume one attempt and schedule redelivery.

        Returns:
            The job's new status: ``waiting``, or ``failed`` when no attempts
            remain.
        """
        now = time.time()
        db = self._conn()
        async with self._lock:
            async with db.execute("SELECT attempts_made, max_attempts FROM jobs WHERE id = ?", (job_id,)) as cur:
                row = await cur.fetchone()
            if row is None:
                return "missing"
            attempts = row["attempts_made"] + 1
            if attempts >= row["max_attempts"]:
                status = "failed"
                await db.execute(
                    """
                    UPDATE jobs SET status = 'failed', attempts_made = ?, finished_at = ?,
                        claimed_at = NULL, last_error = ?
                    WHERE id = ?
                    """,
                    (attempts, now, error, job_id),
                )
            else:
                status = "waiting"
                await db.execute(
                    """
                    UPDATE jobs SET status = 'waiting', attempts_made = ?, available_at = ?,
                        claimed_at = NULL, claimed_by = NULL, last_error = ?
                    WHERE id = ?
                    """,
                    (attempts, now + max(0, delay_ms) / 1000.0, error, job_id),
                )
            await db.commit()
        return status

    async def fail(self, job_id: str, error: str) -> None:
        """Finalize a job as failed without further retries."""
        db = self._conn()
        async with self._lock:
            await db.execute(
                """
                UPDATE jobs SET status = 'failed', attempts_made = attempts_made + 1,
                    finished_at = ?, claimed_at = NULL, last_error = ?
                WHERE id = ?
                """,
                (time.time(), error, job_id),
            )
            await db.commit()

    async def requeue_stalled(
        self,
        stalled_after_seconds: float,
        max_stalled_count: int = 1,
        *,
        exclude: Iterable[str] = (),
        now: float | None = None,
    ) -> dict[str, list[str]]:
        """Return active jobs whose claim is older than ``stalled_after_seconds`` to the queue.

        A job stalled more than ``max_stalled_count`` times is failed instead.
        Ids in ``exclude`` (jobs this process is still running) are left alone.
        """
        skip = set(exclude)
        now = time.time() if now is None else now
        db = self._conn()
        requeued: list[str] = []
        failed: list[str] = []
        async with self._lock:
            async with db.execute(
                "SELECT id, stalled_count FROM jobs WHERE status = 'active' AND claimed_at < ?",
                (now - stalled_after_seconds,),
            ) as cur:
                rows = await cur.fetchall()
            for row in rows:
                if row["id"] in skip:
                    continue
                count = row["stalled_count"] + 1
                if count > max_stalled_count:
                    failed.append(row["id"])
                    await db.execute(
                        """
                        UPDATE jobs SET status = 'failed', stalled_count = ?, finished_at = ?,
                            claimed_at = NULL, last_error = ?
                        WHERE id = ?
                        """,
                        (count, now, STALLED_REASON, row["id"]),
                    )
                else:
                    requeued.append(row["id"])
                    await db.execute(
                        """
                        UPDATE jobs SET status = 'waiting', stalled_count = ?, available_at = ?,
                            claimed_at = NULL, claimed_by = NULL
                        WHERE id = ?
                        """,
                        (count, now, row["id"]),
                    )
            await db.commit()
        return {"requeued": requeued, "failed": failed}

    # ----------------------------------------------------------- inspection
    async def counts(self) -> dict[str, int]:
        now = time.time()
        result = {"waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 0}
        async with self._conn().execute(
            """
            SELECT CASE WHEN status = 'waiting' AND available_at > ? THEN 'delayed' ELSE status END AS bucket,
                   COUNT(*) AS n
            FROM jobs GROUP BY bucket
            """,
            (now,),
        ) as cur:
            for row in await cur.fetchall():
                result[row["bucket"]] = row["n"]
        result["total"] = sum(result.values())
        return result

    async def list_jobs(self, status: str | None = None, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        if status is not None and status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {status}")
        if status is None:
            return await self._fetch(
                "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ? OFFSET ?", (limit, offset)
            )
        return await self._fetch(
            "SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (status, limit, offset),
        )

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        rows = await self._fetch("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return rows[0] if rows else None

    async def retry_failed(self, job_id: str) -> dict[str, Any]:
        """Put a failed job back in the queue with a fresh attempt budget."""
        job = await self.get_job(job_id)
        if job is None:
            return {"success": False, "message": f"Job {job_id} not found"}
        if job["status"] == "completed":
            return {"success": False, "message": f"Job {job_id} is already completed successfully"}
        if job["status"] != "failed":
            return {"success": False, "message": f"Job {job_id} is {job['status']}, not failed"}
        db = self._conn()
        async with self._lock:
            await db.execute(
                """
                UPDATE jobs SET status = 'waiting', attempts_made = 0, stalled_count = 0,
                    available_at = ?, finished_at = NULL, claimed_at = NULL, claimed_by = NULL
                WHERE id = ?
                """,
                (time.time(), job_id),
            )
            await db.commit()
        self.logger.info("Job %s queued for retry", job_id)
        return {"success": True, "message": f"Job {job_id} has been queued for retry"}

    async def remove(self, job_id: str) -> bool:
        db = self._conn()
        async with self._lock:
            cur = await db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            await db.commit()
        return cur.rowcount > 0

    async def clean(self, status: str, older_than_seconds: float) -> int:
        """Delete finished jobs of ``status`` finished more than ``older_than_seconds`` ago."""
        if status not in ("completed", "failed"):
            raise ValueError("Only completed or failed jobs can be cleaned")
        db = self._conn()
        async with self._lock:
            cur = await db.execute(
                "DELETE FROM jobs WHERE status = ? AND finished_at < ?",
                (status, time.time() - older_than_seconds),
            )
            await db.commit()
        return cur.rowcount
