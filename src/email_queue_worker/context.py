# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-process mutable worker state.

``WorkerContext`` bundles everything the job bodies of one process share:
the in-flight guard, the delivery tracker, the connection state, lifecycle
logging, dead-letter records and metrics. The worker builds one instance at
startup and hands it to every component; tests build as many independent
contexts as they need.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .dead_letter import DeadLetterLogger
from .monitoring import LifecycleLogger
from .prometheus import WorkerMetrics
from .resilience import ResilienceState
from .tracking import DEFAULT_TTL_SECONDS, DeliveryTracker, InFlightGuard


@dataclass
class WorkerContext:
    in_flight: InFlightGuard = field(default_factory=InFlightGuard)
    deliveries: DeliveryTracker = field(default_factory=DeliveryTracker)
    resilience: ResilienceState = field(default_factory=ResilienceState)
    lifecycle: LifecycleLogger = field(default_factory=LifecycleLogger)
    dead_letters: DeadLetterLogger = field(default_factory=DeadLetterLogger)
    metrics: WorkerMetrics = field(default_factory=WorkerMetrics)

    @classmethod
    def create(cls, *, delivery_ttl_seconds: float = DEFAULT_TTL_SECONDS, **overrides) -> WorkerContext:
        """Build a context with a custom delivery TTL."""
        overrides.setdefault("deliveries", DeliveryTracker(ttl_seconds=delivery_ttl_seconds))
        return cls(**overrides)

    @property
    def is_shutting_down(self) -> bool:
        return self.resilience.is_shutting_down

    def begin_shutdown(self) -> bool:
        """Flag shutdown; return False if it was already flagged."""
        if self.resilience.is_shutting_down:
            return False
        self.resilience.is_shutting_down = True
        return True
