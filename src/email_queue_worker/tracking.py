# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""In-process delivery deduplication and single-flight job execution.

Two structures shared by all job bodies running in one worker process:

- ``DeliveryTracker`` remembers which notifications were delivered recently,
  keyed by a semantic delivery key, so that a redelivered or republished
  event does not produce a second email within the TTL window.
- ``InFlightGuard`` holds the ids of the jobs currently executing, so that
  a job redelivered by the broker while still running is skipped.

Neither survives a restart nor coordinates across processes.

Example:
    Guarding a job body::

        async with guard.claim(job.id) as entered:
            if not entered:
                return Skipped("in_flight")
            if not await tracker.reserve(event):
                return Skipped("already_delivered")
            try:
                ...
                await tracker.mark_delivered(event, message_id)
            finally:
                await tracker.release(event)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from .logger import get_logger
from .models import (
    AdminCancellationNotificationEvent,
    AdminOrderNotificationEvent,
    ContactFormEvent,
    DeliveryRecord,
    EmailEvent,
    OrderCancellationEvent,
    OrderConfirmationEvent,
    OrderConfirmationResendEvent,
    OrderStatusUpdateEvent,
    PasswordResetEvent,
    PaymentStatusUpdateEvent,
    ShippingNotificationEvent,
    WelcomeEmailEvent,
)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
RECENT_DELIVERIES_LIMIT = 10


def iso_utc(value: datetime | float) -> str:
    """Format a datetime or epoch seconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    else:
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def delivery_key(event: EmailEvent) -> str:
    """Build the deduplication key: type, locale and the stable business ids."""
    parts: list[str] = [event.type, event.locale.value]
    match event:
        case OrderConfirmationEvent() | OrderConfirmationResendEvent():
            parts += [event.order_id, event.customer_email]
        case AdminOrderNotificationEvent():
            parts += [event.order_id, "admin"]
        case ShippingNotificationEvent():
            parts += [event.order_id, event.tracking_number or "no-tracking"]
        case OrderStatusUpdateEvent():
            parts += [event.order_id, event.new_status or "status-update"]
        case OrderCancellationEvent():
            parts += [event.order_id, event.customer_email, "cancellation"]
        case AdminCancellationNotificationEvent():
            parts += [event.order_id, "admin", "cancellation"]
        case PaymentStatusUpdateEvent():
            parts += [event.order_id, event.customer_email, event.payment_status]
        case WelcomeEmailEvent():
            parts += [event.user_id, event.user_email]
        case PasswordResetEvent():
            parts += [event.user_id, event.user_email, event.reset_token]
        case ContactFormEvent():
            parts += [event.sender_email, event.sender_name, iso_utc(event.timestamp)]
        case _:
            raise TypeError(f"Unsupported event: {type(event).__name__}")
    return "|".join(parts)


class DeliveryTracker:
    """TTL map from delivery key to the record of a successful send.

    Attributes:
        ttl_seconds: Lifetime of a record.
        logger: Logger used for suppression and bookkeeping messages.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self.logger = logger or get_logger("DeliveryTracker")
        self._records: dict[str, DeliveryRecord] = {}
        self._pending: set[str] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def _expired(self, record: DeliveryRecord, now: float) -> bool:
        return (now - record.timestamp) > self.ttl_seconds

    def _sweep(self, now: float) -> int:
        expired = [key for key, record in self._records.items() if self._expired(record, now)]
        for key in expired:
            del self._records[key]
        return len(expired)

    def _live_record(self, key: str) -> DeliveryRecord | None:
        # Caller holds self._lock
        record = self._records.get(key)
        if record is not None and self._expired(record, self._clock()):
            del self._records[key]
            return None
        return record

    def _log_suppressed(self, key: str, record: DeliveryRecord) -> None:
        self.logger.warning(
            "Email delivery prevented - already delivered within TTL | Key: %s | Delivered: %s | TTL: %ss",
            key,
            iso_utc(record.timestamp),
            int(self.ttl_seconds),
        )

    async def has_been_delivered(self, event: EmailEvent) -> bool:
        """Return True when ``event`` was delivered within the TTL window.

        An expired record is evicted on lookup.
        """
        key = delivery_key(event)
        async with self._lock:
            record = self._live_record(key)
        if record is None:
            return False
        self._log_suppressed(key, record)
        return True

    async def reserve(self, event: EmailEvent) -> bool:
        """Claim the delivery key of ``event`` before sending.

        Returns False when the key was delivered within the TTL window or
        another job body holds it. A True result must be followed by
        ``mark_delivered`` or ``release``.
        """
        key = delivery_key(event)
        async with self._lock:
            in_progress = key in self._pending
            record = None if in_progress else self._live_record(key)
            if not in_progress and record is None:
                self._pending.add(key)
                return True
        if in_progress:
            self.logger.warning("Email delivery prevented - send already in progress | Key: %s", key)
        else:
            self._log_suppressed(key, record)
        return False

    async def release(self, event: EmailEvent) -> None:
        """Drop a reservation; a no-op once the send was recorded."""
        async with self._lock:
            self._pending.discard(delivery_key(event))

    async def mark_delivered(self, event: EmailEvent, message_id: str | None = None) -> DeliveryRecord:
        """Record a successful send and sweep expired records."""
        key = delivery_key(event)
        async with self._lock:
            now = self._clock()
            record = DeliveryRecord(delivery_key=key, timestamp=now, transport_message_id=message_id)
            self._records[key] = record
            self._pending.discard(key)
            cleaned = self._sweep(now)
        self.logger.info(
            "Email marked as delivered | Key: %s | MessageId: %s | Timestamp: %s",
            key,
            message_id or "none",
            iso_utc(now),
        )
        if cleaned:
            self.logger.debug("Cleaned up %d expired delivery records", cleaned)
        return record

    async def cleanup_expired(self) -> int:
        """Drop all expired records and return how many were removed."""
        async with self._lock:
            cleaned = self._sweep(self._clock())
        if cleaned:
            self.logger.debug("Cleaned up %d expired delivery records", cleaned)
        return cleaned

    async def verify(self, event: EmailEvent) -> dict[str, Any]:
        """Report whether ``event`` is recorded as delivered (expiry is not applied)."""
        key = delivery_key(event)
        async with self._lock:
            record = self._records.get(key)
            now = self._clock()
        if record is None:
            return {"was_delivered": False, "delivery_key": key}
        return {
            "was_delivered": True,
            "delivery_timestamp": iso_utc(record.timestamp),
            "message_id": record.transport_message_id,
            "delivery_key": key,
            "time_since_delivery_ms": int((now - record.timestamp) * 1000),
        }

    async def status(self) -> dict[str, Any]:
        """Summary for operators: size, the newest records and the time span."""
        async with self._lock:
            records = list(self._records.values())
            now = self._clock()
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return {
            "total_tracked_deliveries": len(records),
            "recent_deliveries": [
                {
                    "key": record.delivery_key,
                    "timestamp": iso_utc(record.timestamp),
                    "message_id": record.transport_message_id,
                    "age_ms": int((now - record.timestamp) * 1000),
                }
                for record in records[:RECENT_DELIVERIES_LIMIT]
            ],
            "oldest_delivery": iso_utc(records[-1].timestamp) if records else None,
            "newest_delivery": iso_utc(records[0].timestamp) if records else None,
            "ttl_hours": self.ttl_seconds / 3600,
        }

    async def clear(self) -> None:
        async with self._lock:
            self._records.clear()
            self._pending.clear()


class InFlightGuard:
    """Set of job ids currently inside the processing critical section.

    ``try_enter`` and ``leave`` never await, so a check-and-insert cannot
    interleave with another task on the same event loop.
    """

    def __init__(self, logger=None):
        self.logger = logger or get_logger("InFlightGuard")
        self._job_ids: set[str] = set()

    def __len__(self) -> int:
        return len(self._job_ids)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._job_ids

    def try_enter(self, job_id: str) -> bool:
        """Insert ``job_id``; return False if it is already executing."""
        if job_id in self._job_ids:
            self.logger.warning("[%s] Job already in flight, skipping duplicate dispatch", job_id)
            return False
        self._job_ids.add(job_id)
        return True

    def leave(self, job_id: str) -> None:
        self._job_ids.discard(job_id)

    def snapshot(self) -> list[str]:
        return sorted(self._job_ids)

    def clear(self) -> None:
        self._job_ids.clear()

    @asynccontextmanager
    async def claim(self, job_id: str) -> AsyncIterator[bool]:
        """Enter the guard for the block; yields whether the claim succeeded.

        The id is released on every exit path, but only by the invocation
        that inserted it.
        """
        entered = self.try_enter(job_id)
        try:
            yield entered
        finally:
            if entered:
                self.leave(job_id)

    async def wait_until_empty(self, timeout: float, poll_interval: float = 1.0) -> bool:
        """Poll until no job is in flight.

        Returns:
            True if the set drained, False if ``timeout`` seconds elapsed first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        while self._job_ids:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            self.logger.info("Waiting for %d active jobs to complete...", len(self._job_ids))
            await asyncio.sleep(min(poll_interval, remaining))
        return True
