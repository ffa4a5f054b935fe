# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Supervision of the job broker connection.

When the broker link fails outside of shutdown, the manager reconnects with
exponential backoff (``RECONNECT_BACKOFF``: 1 s, 2 s, 4 s ... capped at
30 s). After ``max_reconnect_attempts`` consecutive failures it gives up and
waits for an operator to call ``trigger_reconnection()``.

State transitions::

    connected -> reconnecting (attempt += 1, sleep backoff(attempt))
    reconnecting -> connected (attempts reset to 0)
    reconnecting -> exhausted (attempts >= max)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .backoff import RECONNECT_BACKOFF, BackoffCalculator
from .logger import get_logger

DEFAULT_MAX_RECONNECT_ATTEMPTS = 10


@dataclass
class ResilienceState:
    """Connection-level state shared with the shutdown coordinator."""

    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    reconnect_attempts: int = 0
    is_shutting_down: bool = False
    connected: bool = False
    reconnecting: bool = False
    last_error: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.reconnect_attempts >= self.max_reconnect_attempts

    @property
    def status(self) -> str:
        if self.is_shutting_down:
            return "shutting_down"
        if self.connected:
            return "connected"
        if self.reconnecting:
            return "reconnecting"
        if self.exhausted:
            return "exhausted"
        return "disconnected" if self.last_error is None else "error"


class ConnectionResilienceManager:
    """Reconnect loop around a broker ``connect`` coroutine.

    Attributes:
        state: The shared ``ResilienceState``.
        backoff: Delay calculator for reconnect attempts.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[Any]],
        *,
        disconnect: Callable[[], Awaitable[Any]] | None = None,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        backoff: BackoffCalculator = RECONNECT_BACKOFF,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        state: ResilienceState | None = None,
        metrics=None,
        logger=None,
    ):
        self._connect = connect
        self._disconnect = disconnect
        self.backoff = backoff
        self._sleep = sleep
        self.state = state or ResilienceState()
        self.state.max_reconnect_attempts = max(1, int(max_reconnect_attempts))
        self.metrics = metrics
        self.logger = logger or get_logger("ConnectionResilience")
        self._task: asyncio.Task | None = None

    def _set_attempts(self, value: int) -> None:
        self.state.reconnect_attempts = value
        if self.metrics is not None:
            self.metrics.set_reconnect_attempts(value)

    def mark_connected(self) -> None:
        if self.state.reconnect_attempts:
            self.logger.info("Broker connection established")
        self.state.connected = True
        self.state.last_error = None
        self._set_attempts(0)

    def begin_shutdown(self) -> None:
        """Stop automatic reconnection; a running loop exits at its next step."""
        self.state.is_shutting_down = True

    async def handle_connection_lost(self, exc: BaseException | None = None) -> bool:
        """React to a broker error or unexpected close.

        Concurrent callers share one reconnect loop.

        Returns:
            True if the connection was re-established, False if the manager
            is shutting down or gave up.
        """
        if self.state.is_shutting_down:
            self.logger.info("Broker connection closed during shutdown")
            return False
        self.state.connected = False
        if exc is not None:
            self.state.last_error = str(exc) or exc.__class__.__name__
            self.logger.error("Broker connection error: %s", self.state.last_error)
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._reconnect_loop(), name="broker-reconnect-loop")
        task = self._task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Loop cancelled by close(); the caller itself was not
            if task.cancelled():
                return False
            raise

    async def _reconnect_loop(self) -> bool:
        self.state.reconnecting = True
        try:
            while not self.state.is_shutting_down:
                self._set_attempts(self.state.reconnect_attempts + 1)
                attempt = self.state.reconnect_attempts
                maximum = self.state.max_reconnect_attempts
                if attempt >= maximum:
                    self.logger.error(
                        "Broker reconnection failed after %d attempts. Manual intervention required.",
                        maximum,
                    )
                    return False
                delay = self.backoff.delay_seconds(attempt)
                self.logger.warning(
                    "Attempting broker reconnection (%d/%d) in %dms", attempt, maximum, int(delay * 1000)
                )
                await self._sleep(delay)
                if self.state.is_shutting_down:
                    return False
                try:
                    await self._connect()
                except Exception as exc:
                    self.state.last_error = str(exc) or exc.__class__.__name__
                    self.logger.error("Broker reconnection attempt %d failed: %s", attempt, self.state.last_error)
                    continue
                self.logger.info("Broker reconnection successful")
                self.mark_connected()
                return True
            return False
        finally:
            self.state.reconnecting = False

    async def trigger_reconnection(self) -> dict[str, Any]:
        """Operator-initiated reconnect, bypassing the backoff wait once."""
        if self.state.is_shutting_down:
            return {"success": False, "message": "Cannot reconnect during shutdown"}
        self.logger.info("Manual reconnection triggered")
        try:
            if self._disconnect is not None:
                await self._disconnect()
            await self._connect()
        except Exception as exc:
            self.state.connected = False
            self.state.last_error = str(exc) or exc.__class__.__name__
            return {"success": False, "message": self.state.last_error}
        self.mark_connected()
        return {"success": True, "message": "Reconnection successful"}

    def status(self) -> dict[str, Any]:
        return {
            "status": self.state.status,
            "is_shutting_down": self.state.is_shutting_down,
            "connected": self.state.connected,
            "reconnect_attempts": self.state.reconnect_attempts,
            "max_reconnect_attempts": self.state.max_reconnect_attempts,
            "reconnecting": self.state.reconnecting,
            "last_error": self.state.last_error,
            "reconnect_base_delay_ms": self.backoff.base_ms,
            "reconnect_max_delay_ms": self.backoff.cap_ms,
        }

    async def close(self) -> None:
        """Cancel a pending reconnect loop."""
        self.begin_shutdown()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
