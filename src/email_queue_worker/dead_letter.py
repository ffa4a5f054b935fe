# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dead-letter records for abandoned email jobs.

A job becomes a dead letter when its failure is permanent or when its last
attempt fails. The record is written to the log as
``DEAD_LETTER_QUEUE_ENTRY: <json>`` together with a one-line category
summary; the most recent records are also kept in memory for the operator
API. Records are not persisted.
"""

from __future__ import annotations

import json
import os
import platform
import sys
import traceback
from collections import deque
from datetime import datetime, timezone
from typing import Any

from .backoff import JOB_RETRY_BACKOFF, BackoffCalculator
from .classifier import ErrorClassification, classify_error
from .logger import get_logger
from .models import Job

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = frozenset({"reset_token", "resettoken", "token", "password"})

CATEGORY_LINES = {
    "email_service": "EMAIL_SERVICE_FAILURE: {event_type} failed due to email service issue: {message}",
    "database": "DATABASE_FAILURE: {event_type} failed due to database issue: {message}",
    "validation": "VALIDATION_FAILURE: {event_type} failed validation: {message}",
}


def sanitize_event_data(data: dict[str, Any]) -> dict[str, Any]:
    """Copy ``data`` with secrets such as reset tokens redacted."""
    clean: dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in SENSITIVE_KEYS:
            clean[key] = REDACTED
        elif isinstance(value, dict):
            clean[key] = sanitize_event_data(value)
        else:
            clean[key] = value
    return clean


class DeadLetterLogger:
    """Build, log and retain dead-letter records.

    Attributes:
        backoff: Calculator used to reconstruct the retry history.
        max_recent: How many records ``recent()`` keeps.
    """

    def __init__(
        self,
        *,
        backoff: BackoffCalculator = JOB_RETRY_BACKOFF,
        max_recent: int = 100,
        logger=None,
    ):
        self.backoff = backoff
        self.logger = logger or get_logger("DeadLetterQueue")
        self._recent: deque[dict[str, Any]] = deque(maxlen=max(1, int(max_recent)))

    def build_record(
        self,
        job: Job,
        error: BaseException,
        attempt_number: int,
        classification: ErrorClassification | None = None,
    ) -> dict[str, Any]:
        classification = classification or classify_error(error)
        status = getattr(error, "status", None)
        if status is None:
            status = getattr(error, "status_code", None)
        stack = None
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return {
            "job_id": job.id or "unknown",
            "event_type": job.event_type,
            "event_data": sanitize_event_data(job.data),
            "error": {
                "message": str(error) or error.__class__.__name__,
                "stack": stack,
                "code": getattr(error, "code", None),
                "status": status,
                "name": error.__class__.__name__,
                "category": classification.category,
                "severity": classification.severity,
                "retryable": classification.retryable,
                "action_required": classification.action_required,
            },
            "failure_timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "attempt_number": attempt_number,
            "is_permanent_error": classification.is_permanent,
            "retry_history": self.backoff.history(attempt_number),
            "system_info": {
                "python_version": platform.python_version(),
                "platform": sys.platform,
                "pid": os.getpid(),
            },
        }

    def record(
        self,
        job: Job,
        error: BaseException,
        attempt_number: int,
        classification: ErrorClassification | None = None,
    ) -> dict[str, Any] | None:
        """Log the dead-letter record for ``job``.

        Returns the record, or None if it could not be built. Never raises:
        a logging failure must not change the job outcome.
        """
        try:
            entry = self.build_record(job, error, attempt_number, classification)
            self.logger.error("DEAD_LETTER_QUEUE_ENTRY: %s", json.dumps(entry, indent=2, default=str))
            template = CATEGORY_LINES.get(entry["error"]["category"])
            if template:
                self.logger.error(template.format(event_type=entry["event_type"], message=entry["error"]["message"]))
            self._recent.append(entry)
            return entry
        except Exception:
            self.logger.exception("Failed to log dead letter entry for job %s", job.id)
            return None

    def recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Newest records first."""
        items = list(reversed(self._recent))
        return items if limit is None else items[: max(0, limit)]

    def __len__(self) -> int:
        return len(self._recent)
