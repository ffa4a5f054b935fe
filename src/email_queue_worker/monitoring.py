# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Structured lifecycle logging for email jobs.

Every job phase is written as one line ``EMAIL_EVENT_<PHASE>: <json>`` so
that log pipelines can follow a job from enqueue to completion or dead
letter without parsing free text.
"""

from __future__ import annotations

import json
import os
import platform
from datetime import datetime, timezone
from typing import Any, Literal

from .logger import get_logger

Phase = Literal["created", "processing", "completed", "failed", "retry", "dead_letter"]

PHASES: tuple[str, ...] = ("created", "processing", "completed", "failed", "retry", "dead_letter")

_ERROR_PHASES = {"failed", "dead_letter"}


def describe_error(error: BaseException | str | None) -> dict[str, Any] | None:
    """Reduce an exception to the sanitized fields logged for it."""
    if error is None:
        return None
    if isinstance(error, str):
        return {"message": error, "type": "str", "code": None, "status": None}
    status = getattr(error, "status", None)
    if status is None:
        status = getattr(error, "status_code", None)
    return {
        "message": str(error) or error.__class__.__name__,
        "type": error.__class__.__name__,
        "code": getattr(error, "code", None),
        "status": status,
    }


class LifecycleLogger:
    """Emit one structured line per job phase.

    Attributes:
        logger: Destination logger; ``failed`` and ``dead_letter`` go to
            ERROR, ``retry`` to WARNING, the rest to INFO.
    """

    def __init__(self, logger=None):
        self.logger = logger or get_logger("EmailLifecycle")

    def log(
        self,
        phase: Phase,
        *,
        event_type: str,
        job_id: str | None = None,
        locale: str | None = None,
        attempt_number: int | None = None,
        processing_time_ms: int | None = None,
        error: BaseException | str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Write the entry for ``phase`` and return it."""
        if phase not in PHASES:
            raise ValueError(f"Unknown lifecycle phase: {phase}")
        entry: dict[str, Any] = {
            "phase": phase,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "job_id": job_id or "unknown",
            "event_type": event_type,
            "locale": locale or "unknown",
            "attempt_number": attempt_number or 1,
            "processing_time_ms": processing_time_ms,
            "error": describe_error(error),
            "metadata": metadata or {},
            "system": {"python_version": platform.python_version(), "pid": os.getpid()},
        }
        line = f"EMAIL_EVENT_{phase.upper()}: {json.dumps(entry, default=str)}"
        if phase in _ERROR_PHASES:
            self.logger.error(line)
        elif phase == "retry":
            self.logger.warning(line)
        else:
            self.logger.info(line)
        return entry
