# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Sliding-window rate limiter for job starts.

The worker starts at most ``max_jobs`` jobs in any window of
``duration_ms`` milliseconds. The sliding window spreads starts over time
instead of allowing a burst at each window boundary.

Example:
    Throttling the poll loop::

        limiter = JobRateLimiter(max_jobs=100, duration_ms=60_000)
        delay = limiter.check_and_plan()
        if delay == 0:
            limiter.log_start()
            # Safe to start one job now
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable


class JobRateLimiter:
    """Process-local sliding-window limiter.

    Attributes:
        max_jobs: Jobs allowed per window; 0 disables the limit.
        duration_ms: Window length in milliseconds.
    """

    def __init__(
        self,
        max_jobs: int,
        duration_ms: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_jobs = max(0, int(max_jobs))
        self.duration_ms = max(1, int(duration_ms))
        self._clock = clock
        self._starts: deque[float] = deque()

    def _prune(self, now: float) -> None:
        window = self.duration_ms / 1000.0
        while self._starts and now - self._starts[0] >= window:
            self._starts.popleft()

    def check_and_plan(self) -> float:
        """Return seconds to wait before the next start is allowed (0 = now)."""
        if not self.max_jobs:
            return 0.0
        now = self._clock()
        self._prune(now)
        if len(self._starts) < self.max_jobs:
            return 0.0
        return max(0.0, self._starts[0] + self.duration_ms / 1000.0 - now)

    def log_start(self) -> None:
        """Record a job start."""
        if self.max_jobs:
            self._starts.append(self._clock())

    @property
    def used(self) -> int:
        self._prune(self._clock())
        return len(self._starts)
