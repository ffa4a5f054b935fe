# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exponential backoff calculators.

``delay(attempt) = min(base * multiplier ** (attempt - 1), cap)``

Two instances are used by the worker:

- ``JOB_RETRY_BACKOFF``: spacing of broker re-deliveries
  (1 min, 5 min, 25 min, ... capped at 4 h).
- ``RECONNECT_BACKOFF``: spacing of broker reconnect attempts
  (1 s, 2 s, 4 s, ... capped at 30 s).

No jitter is applied.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffCalculator:
    """Deterministic exponential backoff.

    Attributes:
        base_ms: Delay of the first attempt in milliseconds.
        multiplier: Growth factor between consecutive attempts.
        cap_ms: Upper bound for any delay in milliseconds.
    """

    base_ms: int
    multiplier: float
    cap_ms: int

    def delay_ms(self, attempt: int) -> int:
        """Return the delay in milliseconds for a 1-based attempt number."""
        attempt = max(1, int(attempt))
        # Stop multiplying once the cap is reached to keep huge attempts cheap
        delay = float(self.base_ms)
        for _ in range(attempt - 1):
            if delay >= self.cap_ms:
                break
            delay *= self.multiplier
        return int(min(delay, self.cap_ms))

    def delay_seconds(self, attempt: int) -> float:
        """Return the delay in seconds, suitable for ``asyncio.sleep``."""
        return self.delay_ms(attempt) / 1000.0

    def history(self, attempt_number: int) -> list[dict[str, int]]:
        """Reconstruct the delays applied before ``attempt_number``.

        Returns one ``{"attempt": i, "delay": ms}`` entry for each attempt
        ``1 .. attempt_number - 1``.
        """
        return [{"attempt": i, "delay": self.delay_ms(i)} for i in range(1, int(attempt_number))]


JOB_RETRY_BACKOFF = BackoffCalculator(base_ms=60_000, multiplier=5, cap_ms=4 * 60 * 60 * 1000)
RECONNECT_BACKOFF = BackoffCalculator(base_ms=1_000, multiplier=2, cap_ms=30_000)
