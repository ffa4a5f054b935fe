# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-job processing: guards, dispatch by event type and failure handling.

``EventProcessor.process`` is the single decision point for a job. It never
raises for job failures; it returns an ``Outcome`` that the worker
translates into broker calls:

- ``Completed``: the email was sent and recorded as delivered.
- ``Skipped("in_flight")``: the same job id is already executing here.
- ``Skipped("already_delivered")``: an equivalent email went out within the
  delivery TTL.
- ``RetryableFailure``: transient error; the broker redelivers after
  ``delay_ms``. With ``remaining_attempts == 0`` the failure was already
  dead-lettered and the broker finalizes it.
- ``PermanentFailure``: the error will never succeed; dead-lettered and
  tagged ``PERMANENT_ERROR:`` so the broker stops retrying.

Jobs received after shutdown started are rejected as transient so that the
broker redelivers them after restart.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from .backoff import JOB_RETRY_BACKOFF, BackoffCalculator
from .classifier import ErrorClassification, classify_error
from .context import WorkerContext
from .errors import PermanentJobError, WorkerShuttingDownError
from .logger import get_logger
from .models import (
    AdminCancellationNotificationEvent,
    AdminOrderNotificationEvent,
    Completed,
    ContactFormEvent,
    EmailEvent,
    Job,
    OrderCancellationEvent,
    OrderConfirmationEvent,
    OrderConfirmationResendEvent,
    OrderStatusUpdateEvent,
    Outcome,
    PasswordResetEvent,
    PaymentStatusUpdateEvent,
    PermanentFailure,
    RetryableFailure,
    ShippingNotificationEvent,
    Skipped,
    WelcomeEmailEvent,
    parse_event,
)
from .senders import EmailSenders
from .tracking import delivery_key


class EventProcessor:
    """Run one job through validation, deduplication and its send routine.

    Attributes:
        context: Shared per-process worker state.
        senders: Send routines for every event type.
        backoff: Job retry backoff used for the next delay.
    """

    def __init__(
        self,
        context: WorkerContext,
        senders: EmailSenders,
        *,
        backoff: BackoffCalculator = JOB_RETRY_BACKOFF,
        clock: Callable[[], float] = time.monotonic,
        logger=None,
    ):
        self.context = context
        self.senders = senders
        self.backoff = backoff
        self._clock = clock
        self.logger = logger or get_logger("EventProcessor")

    async def process(self, job: Job) -> Outcome:
        ctx = self.context
        if ctx.is_shutting_down:
            self.logger.warning("[%s] Rejecting job during shutdown - will be retried after restart", job.id)
            return RetryableFailure(
                error=WorkerShuttingDownError(),
                delay_ms=self.backoff.delay_ms(job.attempt_number),
                remaining_attempts=job.remaining_attempts,
            )

        async with ctx.in_flight.claim(job.id) as entered:
            if not entered:
                self.logger.warning(
                    "[%s] Job already being processed - skipping duplicate dispatch | In flight: %s",
                    job.id,
                    ctx.in_flight.snapshot(),
                )
                ctx.metrics.inc_skipped(job.event_type, "in_flight")
                return Skipped("in_flight")
            ctx.metrics.set_in_flight(len(ctx.in_flight))
            outcome = await self._process_claimed(job)
        ctx.metrics.set_in_flight(len(ctx.in_flight))
        return outcome

    async def _process_claimed(self, job: Job) -> Outcome:
        ctx = self.context
        attempt = job.attempt_number
        self.logger.info(
            "[%s] Processing email event: %s | Attempt: %d/%d | Locale: %s",
            job.id,
            job.event_type,
            attempt,
            job.max_attempts,
            job.locale,
        )
        ctx.lifecycle.log(
            "processing",
            job_id=job.id,
            event_type=job.event_type,
            locale=job.locale,
            attempt_number=attempt,
            metadata={"max_attempts": job.max_attempts, "event_timestamp": job.data.get("timestamp")},
        )
        started = self._clock()
        try:
            event = parse_event(job.data)
            if not await ctx.deliveries.reserve(event):
                self.logger.warning(
                    "[%s] Email already delivered recently - skipping duplicate delivery | Event: %s | Key: %s",
                    job.id,
                    event.type,
                    delivery_key(event),
                )
                ctx.metrics.inc_skipped(job.event_type, "already_delivered")
                return Skipped("already_delivered")
            try:
                message_id = await self.dispatch(event)
            finally:
                await ctx.deliveries.release(event)
        except Exception as exc:
            return self._handle_failure(job, exc, self._elapsed_ms(started))

        elapsed = self._elapsed_ms(started)
        self.logger.info(
            "[%s] Email sent successfully: %s | Processing time: %dms | Attempt: %d/%d",
            job.id,
            job.event_type,
            elapsed,
            attempt,
            job.max_attempts,
        )
        ctx.lifecycle.log(
            "completed",
            job_id=job.id,
            event_type=job.event_type,
            locale=job.locale,
            attempt_number=attempt,
            processing_time_ms=elapsed,
            metadata={"message_id": message_id},
        )
        ctx.metrics.inc_completed(job.event_type)
        return Completed(processing_time_ms=elapsed, transport_message_id=message_id)

    async def dispatch(self, event: EmailEvent) -> str | None:
        """Run the send routine for ``event``; returns the transport message id."""
        s = self.senders
        match event:
            case OrderConfirmationEvent():
                return await s.send_order_confirmation(event)
            case OrderConfirmationResendEvent():
                return await s.send_order_confirmation_resend(event)
            case AdminOrderNotificationEvent():
                return await s.send_admin_order_notification(event)
            case ShippingNotificationEvent():
                return await s.send_shipping_notification(event)
            case OrderStatusUpdateEvent():
                return await s.send_order_status_update(event)
            case OrderCancellationEvent():
                return await s.send_order_cancellation(event)
            case AdminCancellationNotificationEvent():
                return await s.send_admin_cancellation_notification(event)
            case PaymentStatusUpdateEvent():
                return await s.send_payment_status_update(event)
            case WelcomeEmailEvent():
                return await s.send_welcome_email(event)
            case PasswordResetEvent():
                return await s.send_password_reset(event)
            case ContactFormEvent():
                return await s.send_contact_form(event)
            case _:
                raise TypeError(f"Unknown email event type: {type(event).__name__}")

    def _handle_failure(self, job: Job, exc: Exception, elapsed: int) -> Outcome:
        ctx = self.context
        attempt = job.attempt_number
        remaining = job.remaining_attempts
        classification = classify_error(exc)
        self.logger.error(
            "[%s] Email processing failed: %s | Error: %s | Attempt: %d/%d | Processing time: %dms | "
            "Permanent: %s (%s)",
            job.id,
            job.event_type,
            exc,
            attempt,
            job.max_attempts,
            elapsed,
            classification.is_permanent,
            classification.rule,
        )
        ctx.lifecycle.log(
            "failed",
            job_id=job.id,
            event_type=job.event_type,
            locale=job.locale,
            attempt_number=attempt,
            processing_time_ms=elapsed,
            error=exc,
            metadata=classification.as_dict(),
        )

        if classification.is_permanent:
            self.logger.error("[%s] PERMANENT ERROR - Moving to Dead Letter Queue | Event: %s", job.id, job.event_type)
            self._dead_letter(job, exc, classification, "permanent_error")
            tagged = PermanentJobError(exc)
            return PermanentFailure(error=tagged, reason=tagged.message)

        if remaining > 0:
            delay = self.backoff.delay_ms(attempt)
            self.logger.warning(
                "[%s] TEMPORARY ERROR - Will retry | Event: %s | Next retry in: %ds | Remaining attempts: %d",
                job.id,
                job.event_type,
                round(delay / 1000),
                remaining,
            )
            ctx.lifecycle.log(
                "retry",
                job_id=job.id,
                event_type=job.event_type,
                locale=job.locale,
                attempt_number=attempt,
                error=exc,
                metadata={
                    "next_retry_delay": delay,
                    "remaining_attempts": remaining,
                    "processing_time_ms": elapsed,
                },
            )
            ctx.metrics.inc_retried(job.event_type)
            return RetryableFailure(error=exc, delay_ms=delay, remaining_attempts=remaining)

        self.logger.error(
            "[%s] MAX RETRIES EXCEEDED - Moving to Dead Letter Queue | Event: %s | Final error: %s",
            job.id,
            job.event_type,
            exc,
        )
        self._dead_letter(job, exc, classification, "max_attempts_exceeded")
        return RetryableFailure(error=exc, delay_ms=0, remaining_attempts=0)

    def _dead_letter(self, job: Job, exc: Exception, classification: ErrorClassification, reason: str) -> None:
        ctx = self.context
        ctx.lifecycle.log(
            "dead_letter",
            job_id=job.id,
            event_type=job.event_type,
            locale=job.locale,
            attempt_number=job.attempt_number,
            error=exc,
            metadata={"reason": reason, "max_attempts": job.max_attempts},
        )
        ctx.dead_letters.record(job, exc, job.attempt_number, classification)
        ctx.metrics.inc_dead_lettered(job.event_type)

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)
