# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Graceful shutdown of the worker process.

Sequence:

1. flag ``is_shutting_down`` on the worker context (new jobs are rejected
   as transient and redelivered after restart) and stop reconnecting;
2. pause intake on the runtime;
3. poll the in-flight guard until it is empty or the timeout elapses;
4. drained: close the runtime, then the broker connection;
   timed out or failed: ``force_shutdown()``;
5. clear the in-flight set and the delivery cache.

``shutdown()`` is idempotent: concurrent and repeated calls share the first
run and get the same ``ShutdownReport``.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field

from .context import WorkerContext
from .logger import get_logger

DEFAULT_SHUTDOWN_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 1.0


@dataclass(frozen=True)
class ShutdownReport:
    drained: bool
    forced: bool
    elapsed: float
    remaining_job_ids: tuple[str, ...] = field(default_factory=tuple)


class ShutdownCoordinator:
    """Drive the shutdown sequence for one worker context.

    Attributes:
        context: Worker context whose in-flight guard is drained.
        runtime: Object with async ``pause()`` and ``close(force=False)``.
        broker: Object with async ``close()``.
        resilience: Optional connection manager; its reconnect loop is cancelled.
        timeout: Seconds to wait for in-flight jobs.
        poll_interval: Seconds between drain checks.
    """

    def __init__(
        self,
        context: WorkerContext,
        *,
        runtime=None,
        broker=None,
        resilience=None,
        timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        logger=None,
    ):
        self.context = context
        self.runtime = runtime
        self.broker = broker
        self.resilience = resilience
        self.timeout = float(timeout)
        self.poll_interval = float(poll_interval)
        self.logger = logger or get_logger("ShutdownCoordinator")
        self._task: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        return self._task is not None

    def _ensure_started(self, reason: str) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(reason), name="graceful-shutdown")
        else:
            self.logger.info("Shutdown already in progress (%s ignored)", reason)
        return self._task

    async def shutdown(self, reason: str = "requested") -> ShutdownReport:
        return await asyncio.shield(self._ensure_started(reason))

    async def _run(self, reason: str) -> ShutdownReport:
        ctx = self.context
        loop = asyncio.get_running_loop()
        started = loop.time()
        ctx.begin_shutdown()
        self.logger.info("Starting graceful shutdown of email worker (%s)...", reason)

        drained = False
        forced = False
        remaining: tuple[str, ...] = ()
        try:
            if self.resilience is not None:
                await self.resilience.close()
            if self.runtime is not None:
                await self.runtime.pause()
                self.logger.info("Worker paused - no new jobs will be processed")

            drained = await ctx.in_flight.wait_until_empty(self.timeout, self.poll_interval)
            if drained:
                self.logger.info("All active jobs completed")
                if self.runtime is not None:
                    await self.runtime.close()
                if self.broker is not None:
                    await self.broker.close()
                self.logger.info("Worker closed successfully")
            else:
                remaining = tuple(ctx.in_flight.snapshot())
                self.logger.warning(
                    "Shutdown timeout reached with %d jobs still active: %s", len(remaining), list(remaining)
                )
                await self.force_shutdown()
                forced = True
        except Exception:
            self.logger.exception("Error during graceful shutdown")
            remaining = tuple(ctx.in_flight.snapshot())
            await self.force_shutdown()
            forced = True
        finally:
            ctx.in_flight.clear()
            await ctx.deliveries.clear()

        elapsed = loop.time() - started
        self.logger.info(
            "Shutdown finished in %.2fs | Drained: %s | Forced: %s", elapsed, drained, forced
        )
        return ShutdownReport(drained=drained, forced=forced, elapsed=elapsed, remaining_job_ids=remaining)

    async def force_shutdown(self) -> None:
        """Close runtime and broker without waiting; unfinished jobs are redelivered by the broker."""
        self.logger.warning("Forcing worker shutdown")
        if self.runtime is not None:
            try:
                await self.runtime.close(force=True)
            except Exception:
                self.logger.exception("Error while force-closing worker runtime")
        if self.broker is not None:
            try:
                await self.broker.close()
            except Exception:
                self.logger.exception("Error while closing broker connection")

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start the shutdown sequence on SIGTERM and SIGINT."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        self.logger.info("Received %s, starting graceful shutdown...", sig.name)
        self._ensure_started(sig.name)
