# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception types raised across the email queue worker.

Send routines and collaborators raise these (or any other exception); the
event processor is the only place deciding whether a failure is retried or
abandoned. Exceptions may carry an optional ``code`` and ``status`` that the
error classifier inspects.
"""

from __future__ import annotations

PERMANENT_ERROR_PREFIX = "PERMANENT_ERROR:"


class EmailWorkerError(Exception):
    """Base class for worker errors carrying optional code and status."""

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class EventValidationError(EmailWorkerError):
    """Raised when a job payload is not a valid email event."""

    def __init__(self, message: str):
        super().__init__(message, code="invalid_event")


class RecordNotFoundError(EmailWorkerError):
    """Raised when a referenced order or user does not exist."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} not found: {record_id}", code="not_found", status=404)
        self.kind = kind
        self.record_id = record_id


class TransportError(EmailWorkerError):
    """Raised when the mail transport reports a failed send."""


class PermanentJobError(EmailWorkerError):
    """Failure tagged so that the broker does not retry the job again."""

    def __init__(self, original: BaseException):
        text = str(original) or original.__class__.__name__
        super().__init__(
            f"{PERMANENT_ERROR_PREFIX} {text}",
            code=getattr(original, "code", None),
            status=getattr(original, "status", None),
        )
        self.original = original


class WorkerShuttingDownError(EmailWorkerError):
    """Raised for jobs received after shutdown started; they are redelivered later."""

    def __init__(self, message: str = "Worker shutting down - job will be retried"):
        super().__init__(message, code="shutting_down")


class BrokerConnectionError(EmailWorkerError):
    """Raised when the job broker connection is unavailable."""

    def __init__(self, message: str = "Broker connection unavailable"):
        super().__init__(message, code="broker_connection")
