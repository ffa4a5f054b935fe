# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the email worker.

All metrics use the ``eqw_`` prefix (email-queue-worker).

Metrics exposed:
    - ``eqw_jobs_completed_total``: Counter of delivered emails per event type.
    - ``eqw_jobs_retried_total``: Counter of transient failures handed back
      to the broker for redelivery.
    - ``eqw_jobs_dead_lettered_total``: Counter of dead-lettered jobs.
    - ``eqw_jobs_skipped_total``: Counter of duplicate dispatches and
      already-delivered events, labeled by reason as well.
    - ``eqw_jobs_in_flight``: Gauge of jobs currently executing.
    - ``eqw_reconnect_attempts``: Gauge of the current broker reconnect streak.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class WorkerMetrics:
    """Prometheus metrics collector for the email worker.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        completed: Counter of successful deliveries.
        retried: Counter of transient failures.
        dead_lettered: Counter of abandoned jobs.
        skipped: Counter of skipped dispatches.
        in_flight: Gauge of executing jobs.
        reconnect_attempts: Gauge of consecutive reconnect attempts.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private one is
                created when omitted, so that several workers (or tests) can
                coexist in one process.
        """
        self.registry = registry or CollectorRegistry()
        self.completed = Counter(
            "eqw_jobs_completed_total",
            "Total delivered emails",
            ["event_type"],
            registry=self.registry,
        )
        self.retried = Counter(
            "eqw_jobs_retried_total",
            "Total jobs returned to the broker for retry",
            ["event_type"],
            registry=self.registry,
        )
        self.dead_lettered = Counter(
            "eqw_jobs_dead_lettered_total",
            "Total jobs recorded as dead letters",
            ["event_type"],
            registry=self.registry,
        )
        self.skipped = Counter(
            "eqw_jobs_skipped_total",
            "Total skipped job dispatches",
            ["event_type", "reason"],
            registry=self.registry,
        )
        self.in_flight = Gauge(
            "eqw_jobs_in_flight",
            "Jobs currently being processed",
            registry=self.registry,
        )
        self.reconnect_attempts = Gauge(
            "eqw_reconnect_attempts",
            "Consecutive broker reconnect attempts",
            registry=self.registry,
        )

    def inc_completed(self, event_type: str) -> None:
        self.completed.labels(event_type=event_type or "unknown").inc()

    def inc_retried(self, event_type: str) -> None:
        self.retried.labels(event_type=event_type or "unknown").inc()

    def inc_dead_lettered(self, event_type: str) -> None:
        self.dead_lettered.labels(event_type=event_type or "unknown").inc()

    def inc_skipped(self, event_type: str, reason: str) -> None:
        self.skipped.labels(event_type=event_type or "unknown", reason=reason).inc()

    def set_in_flight(self, value: int) -> None:
        self.in_flight.set(value)

    def set_reconnect_attempts(self, value: int) -> None:
        self.reconnect_attempts.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
