# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Worker runtime: the broker-side adapter around ``EventProcessor``.

``EmailWorker`` owns three background loops:

- the poll loop claims ready jobs while the concurrency limit and the
  sliding-window rate limiter allow, runs each one through the processor
  and reports the ``Outcome`` back to the broker;
- the stalled check requeues jobs whose claim is older than the stalled
  interval (a crashed process never reports them);
- the cleanup loop sweeps expired entries from the delivery cache.

Outcome translation:

- ``Completed`` and ``Skipped("already_delivered")``: ack;
- ``Skipped("in_flight")``: nothing, the running execution reports;
- ``RetryableFailure``: retry with delay (the broker finalizes the job as
  failed when its attempts are used up);
- ``PermanentFailure``: fail with the ``PERMANENT_ERROR:`` reason.

Broker connection errors are handed to ``ConnectionResilienceManager``.
Listeners registered with ``on(name, callback)`` are notified of
``active``, ``completed``, ``failed``, ``stalled``, ``error``, ``drained``,
``paused`` and ``resumed``.

Example:
    Running a worker::

        broker = SqliteJobBroker("/data/email_jobs.db")
        worker = EmailWorker(broker, collaborators, concurrency=5)
        await worker.start()
        ...
        report = await worker.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import os
import socket
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from .backoff import JOB_RETRY_BACKOFF, RECONNECT_BACKOFF, BackoffCalculator
from .broker import SqliteJobBroker
from .collaborators import Collaborators
from .context import WorkerContext
from .errors import BrokerConnectionError
from .logger import get_logger
from .models import Completed, EmailEvent, Job, Outcome, PermanentFailure, RetryableFailure, Skipped, parse_event
from .processor import EventProcessor
from .rate_limit import JobRateLimiter
from .resilience import ConnectionResilienceManager
from .senders import EmailSenders
from .shutdown import DEFAULT_SHUTDOWN_TIMEOUT, ShutdownCoordinator, ShutdownReport

WORKER_EVENTS = ("active", "completed", "failed", "stalled", "error", "drained", "paused", "resumed")


class EmailWorker:
    """Consume email jobs from a broker.

    Attributes:
        broker: Job broker the worker claims from and reports to.
        context: Shared per-process state (guards, tracker, metrics).
        processor: Per-job decision logic.
        resilience: Broker connection supervisor.
        shutdown_coordinator: Graceful shutdown driver used by ``stop()``.
    """

    def __init__(
        self,
        broker: SqliteJobBroker,
        collaborators: Collaborators,
        *,
        context: WorkerContext | None = None,
        concurrency: int = 5,
        rate_limit_max: int = 10,
        rate_limit_duration_ms: int = 1000,
        poll_interval: float = 1.0,
        stalled_interval: float = 30.0,
        max_stalled_count: int = 1,
        cleanup_interval: float = 3600.0,
        backoff: BackoffCalculator = JOB_RETRY_BACKOFF,
        reconnect_backoff: BackoffCalculator = RECONNECT_BACKOFF,
        max_reconnect_attempts: int = 10,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        shutdown_poll_interval: float = 1.0,
        frontend_url: str = "http://localhost:3000",
        worker_id: str | None = None,
        logger=None,
    ):
        self.broker = broker
        self.context = context or WorkerContext()
        self.logger = logger or get_logger("EmailWorker")
        self.concurrency = max(1, int(concurrency))
        self.poll_interval = float(poll_interval)
        self.stalled_interval = float(stalled_interval)
        self.max_stalled_count = int(max_stalled_count)
        self.cleanup_interval = float(cleanup_interval)
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}"

        self.rate_limiter = JobRateLimiter(rate_limit_max, rate_limit_duration_ms)
        self.senders = EmailSenders(collaborators, self.context.deliveries, frontend_url=frontend_url)
        self.processor = EventProcessor(self.context, self.senders, backoff=backoff)
        self.resilience = ConnectionResilienceManager(
            broker.reconnect,
            disconnect=broker.close,
            max_reconnect_attempts=max_reconnect_attempts,
            backoff=reconnect_backoff,
            state=self.context.resilience,
            metrics=self.context.metrics,
        )
        self.shutdown_coordinator = ShutdownCoordinator(
            self.context,
            runtime=self,
            broker=broker,
            resilience=self.resilience,
            timeout=shutdown_timeout,
            poll_interval=shutdown_poll_interval,
        )

        self._listeners: dict[str, list[Callable[..., Any]]] = {name: [] for name in WORKER_EVENTS}
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._paused = False
        self._started = False
        self._closed = False
        self._running: dict[str, asyncio.Task] = {}
        self._task_poll: asyncio.Task | None = None
        self._task_stalled: asyncio.Task | None = None
        self._task_cleanup: asyncio.Task | None = None
        self._had_work = False

    # ------------------------------------------------------------- listeners
    def on(self, name: str, callback: Callable[..., Any]) -> None:
        """Register ``callback`` for worker notification ``name``."""
        if name not in self._listeners:
            raise ValueError(f"Unknown worker event: {name}")
        self._listeners[name].append(callback)

    async def _emit(self, name: str, *args: Any) -> None:
        for callback in self._listeners[name]:
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception("Listener for '%s' failed", name)

    # ------------------------------------------------------------- lifecycle
    @property
    def is_running(self) -> bool:
        return self._started and not self._closed

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def start(self) -> None:
        """Connect to the broker and start the background loops."""
        if self._started:
            return
        try:
            await self.broker.connect()
            self.resilience.mark_connected()
        except BrokerConnectionError as exc:
            self.context.resilience.connected = False
            self.context.resilience.last_error = str(exc)
            self.logger.error("Broker unavailable at startup: %s", exc)
        self._stop.clear()
        self._started = True
        self._task_poll = asyncio.create_task(self._poll_loop(), name="email-poll-loop")
        self._task_stalled = asyncio.create_task(self._stalled_loop(), name="email-stalled-check-loop")
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="delivery-cleanup-loop")
        self.logger.info(
            "Email worker initialized | Concurrency: %d | Rate limit: %d jobs/%dms | Graceful shutdown timeout: %ds",
            self.concurrency,
            self.rate_limiter.max_jobs,
            self.rate_limiter.duration_ms,
            int(self.shutdown_coordinator.timeout),
        )

    async def stop(self) -> ShutdownReport:
        """Run the graceful shutdown sequence."""
        return await self.shutdown_coordinator.shutdown("stop")

    async def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        self.logger.info("Email worker paused")
        await self._emit("paused")

    async def resume(self) -> None:
        if not self._paused:
            return
        if self.context.is_shutting_down:
            self.logger.warning("Cannot resume worker during shutdown")
            return
        self._paused = False
        self._wake_event.set()
        self.logger.info("Email worker resumed")
        await self._emit("resumed")

    async def close(self, force: bool = False) -> None:
        """Stop the loops; wait for running jobs unless ``force``."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        self._wake_event.set()
        for task in (self._task_stalled, self._task_cleanup):
            if task is not None:
                task.cancel()
        running = list(self._running.values())
        if force:
            for task in running:
                task.cancel()
        await asyncio.gather(
            *(task for task in [self._task_poll, self._task_stalled, self._task_cleanup] if task),
            *running,
            return_exceptions=True,
        )
        self.logger.info("Email worker runtime closed%s", " (forced)" if force else "")

    # ------------------------------------------------------------- poll loop
    async def _wait_for_wakeup(self, timeout: float) -> None:
        if self._stop.is_set():
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    async def _poll_loop(self) -> None:
        while not self._stop.is_set():
            if self._paused or self.context.is_shutting_down:
                await self._wait_for_wakeup(self.poll_interval)
                continue
            if not self.context.resilience.connected:
                await self._recover_connection(None)
                continue
            try:
                claimed = await self._poll_once()
            except BrokerConnectionError as exc:
                await self._emit("error", exc)
                await self._recover_connection(exc)
                continue
            except Exception as exc:
                self.logger.exception("Unhandled error in email poll loop: %s", exc)
                await self._emit("error", exc)
                claimed = 0
            if not claimed:
                await self._wait_for_wakeup(self.poll_interval)

    async def _recover_connection(self, exc: BaseException | None) -> None:
        if self.context.resilience.exhausted:
            await self._wait_for_wakeup(self.poll_interval)
            return
        ok = await self.resilience.handle_connection_lost(exc)
        if not ok:
            await self._wait_for_wakeup(self.poll_interval)

    async def _poll_once(self) -> int:
        """Claim and start as many jobs as capacity and rate limit allow; return how many."""
        capacity = self.concurrency - len(self._running)
        if capacity <= 0:
            return 0
        wait = self.rate_limiter.check_and_plan()
        if wait > 0:
            self.logger.debug("Rate limit reached, next start in %.2fs", wait)
            await self._wait_for_wakeup(wait)
            return 0
        if self.rate_limiter.max_jobs:
            capacity = min(capacity, self.rate_limiter.max_jobs - self.rate_limiter.used)
        jobs = await self.broker.claim(capacity, self.worker_id)
        if not jobs:
            if self._had_work and not self._running:
                self._had_work = False
                self.logger.info("Email queue drained")
                await self._emit("drained")
            return 0
        self._had_work = True
        for job in jobs:
            self.rate_limiter.log_start()
            task = asyncio.create_task(self._run_job(job), name=f"email-job-{job.id}")
            self._running[job.id] = task
            task.add_done_callback(lambda _t, job_id=job.id: self._running.pop(job_id, None))
        return len(jobs)

    async def _run_job(self, job: Job) -> None:
        await self._emit("active", job)
        outcome = await self.processor.process(job)
        try:
            await self._report(job, outcome)
        except BrokerConnectionError as exc:
            self.logger.error("[%s] Cannot report job outcome, broker unavailable: %s", job.id, exc)
            await self._emit("error", exc)
        except Exception as exc:
            self.logger.exception("[%s] Failed to report job outcome", job.id)
            await self._emit("error", exc)
        self._wake_event.set()

    async def _report(self, job: Job, outcome: Outcome) -> None:
        match outcome:
            case Completed():
                await self.broker.ack(job.id)
                await self._emit("completed", job, outcome)
            case Skipped(reason="already_delivered"):
                await self.broker.ack(job.id)
                await self._emit("completed", job, outcome)
            case Skipped():
                pass
            case RetryableFailure():
                error_text = str(outcome.error) or outcome.error.__class__.__name__
                status = await self.broker.retry(job.id, outcome.delay_ms, error_text)
                label = "MAX_RETRIES" if status == "failed" else "WILL_RETRY"
                self.logger.error(
                    "[%s] Job failed: %s | Status: %s | Attempts: %d/%d | Error: %s",
                    job.id,
                    job.event_type,
                    label,
                    job.attempt_number,
                    job.max_attempts,
                    error_text,
                )
                await self._emit("failed", job, outcome)
            case PermanentFailure():
                await self.broker.fail(job.id, outcome.reason)
                self.logger.error(
                    "[%s] Job failed: %s | Status: PERMANENT | Attempts: %d/%d | Error: %s",
                    job.id,
                    job.event_type,
                    job.attempt_number,
                    job.max_attempts,
                    outcome.reason,
                )
                await self._emit("failed", job, outcome)

    # ----------------------------------------------------- maintenance loops
    async def _stalled_loop(self) -> None:
        while not self._stop.is_set():
            await asyncio.sleep(self.stalled_interval)
            if not self.context.resilience.connected or self.context.is_shutting_down:
                continue
            try:
                result = await self.broker.requeue_stalled(
                    self.stalled_interval, self.max_stalled_count, exclude=list(self._running)
                )
            except Exception:
                self.logger.exception("Stalled job check failed")
                continue
            for job_id in result["requeued"]:
                self.logger.warning("[%s] Job stalled and was returned to the queue", job_id)
                await self._emit("stalled", job_id)
            for job_id in result["failed"]:
                self.logger.error("[%s] Job stalled more than %d times, marked failed", job_id, self.max_stalled_count)
                await self._emit("stalled", job_id)
            if result["requeued"]:
                self._wake_event.set()

    async def _cleanup_loop(self) -> None:
        while not self._stop.is_set():
            await asyncio.sleep(self.cleanup_interval)
            try:
                removed = await self.context.deliveries.cleanup_expired()
            except Exception:
                self.logger.exception("Delivery cache cleanup failed")
                continue
            if removed:
                self.logger.info("Cleaned up %d expired delivery records", removed)

    # -------------------------------------------------------- operator view
    def get_worker_health(self) -> dict[str, Any]:
        ctx = self.context
        if not self._started:
            status = "not_initialized"
        elif ctx.is_shutting_down:
            status = "shutting_down"
        elif self._closed or self._task_poll is None or self._task_poll.done():
            status = "stopped"
        elif not ctx.resilience.connected:
            status = "error"
        else:
            status = "healthy"
        return {
            "status": status,
            "is_running": self.is_running,
            "is_paused": self._paused,
            "is_shutting_down": ctx.is_shutting_down,
            "active_jobs": len(ctx.in_flight),
            "active_job_ids": ctx.in_flight.snapshot(),
            "concurrency": self.concurrency,
            "rate_limit": {"max": self.rate_limiter.max_jobs, "duration_ms": self.rate_limiter.duration_ms},
            "broker_status": ctx.resilience.status,
            "worker_id": self.worker_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def get_resilience_status(self) -> dict[str, Any]:
        return self.resilience.status()

    async def trigger_reconnection(self) -> dict[str, Any]:
        result = await self.resilience.trigger_reconnection()
        if result["success"]:
            self._wake_event.set()
        return result

    async def get_delivery_tracking_status(self) -> dict[str, Any]:
        return await self.context.deliveries.status()

    async def verify_email_delivery(self, event: EmailEvent | dict[str, Any]) -> dict[str, Any]:
        return await self.context.deliveries.verify(parse_event(event))
