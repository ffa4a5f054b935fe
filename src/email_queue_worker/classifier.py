# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Classification of delivery failures as permanent or transient.

The event processor asks :func:`classify_error` whether a failed job should
be retried. Rules are evaluated in order and the first match wins:

1. permanent data/validation message patterns
2. permanent mail transport message patterns
3. permanent HTTP-like status codes
4. permanent enhanced SMTP status codes in the message
5. transient message patterns (network, rate limits, 5xx, broker/database)
6. anything else is transient

Unknown errors default to transient: retrying a deliverable email costs less
than abandoning it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

PERMANENT_DATA_PATTERNS = (
    "order not found",
    "user not found",
    "invalid email address",
    "invalid event type",
    "invalid locale",
    "missing event timestamp",
    "require valid",
    "validation failed",
    "does not exist",
    "not found",
    "invalid format",
    "malformed",
    "unauthorized",
    "forbidden",
    "bad request",
)

PERMANENT_TRANSPORT_PATTERNS = (
    "invalid recipient",
    "recipient rejected",
    "mailbox unavailable",
    "user unknown",
    "domain not found",
    "permanent failure",
    "blacklisted",
    "spam detected",
    "message too large",
    "quota exceeded",
)

PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 410, 422, 451})

PERMANENT_SMTP_CODES = (
    "5.0.0",  # Permanent failure
    "5.1.0",  # Bad destination mailbox address
    "5.1.1",  # Bad destination mailbox address
    "5.1.2",  # Bad destination system address
    "5.1.3",  # Bad destination mailbox address syntax
    "5.2.1",  # Mailbox disabled
    "5.2.2",  # Mailbox full
    "5.3.0",  # Other or undefined mail system status
    "5.4.1",  # No answer from host
    "5.5.0",  # Protocol error
    "5.7.1",  # Delivery not authorized
)

TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "network error",
    "dns error",
    "temporary failure",
    "service unavailable",
    "rate limit",
    "too many requests",
    "server error",
    "internal error",
    "redis",
    "database connection",
    "econnreset",
    "econnrefused",
    "enotfound",
    "etimedout",
)

TRANSIENT_EXCEPTION_TYPES = (asyncio.TimeoutError, TimeoutError, ConnectionError)


@dataclass(frozen=True)
class ErrorClassification:
    """Outcome of classifying one failure.

    Attributes:
        is_permanent: True when the job must not be retried.
        rule: Name of the rule that decided (``data``, ``transport``,
            ``status``, ``smtp_code``, ``transient``, ``default``).
        category: Diagnostic category (database, email_service, validation,
            network, system, unknown).
        severity: low, medium or high.
        retryable: Inverse of ``is_permanent`` for the category.
        action_required: Operator hint for dead-letter inspection.
    """

    is_permanent: bool
    rule: str
    category: str
    severity: str
    retryable: bool
    action_required: str

    def as_dict(self) -> dict[str, object]:
        return {
            "is_permanent": self.is_permanent,
            "rule": self.rule,
            "category": self.category,
            "severity": self.severity,
            "retryable": self.retryable,
            "action_required": self.action_required,
        }


def error_message(exc: BaseException | str) -> str:
    """Return the text used for pattern matching."""
    if isinstance(exc, str):
        return exc
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or exc.__class__.__name__


def error_status(exc: BaseException | str) -> int | None:
    """Extract an HTTP-like status from ``status`` or ``status_code``."""
    if isinstance(exc, str):
        return None
    for attr in ("status", "status_code"):
        value = getattr(exc, attr, None)
        if value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def error_code(exc: BaseException | str) -> str | None:
    if isinstance(exc, str):
        return None
    code = getattr(exc, "code", None)
    if code is None:
        code = getattr(exc, "smtp_code", None)
    return None if code is None else str(code)


def _matches(text: str, patterns: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(pattern in lowered for pattern in patterns)


def permanence_rule(exc: BaseException | str) -> tuple[bool, str]:
    """Apply the ordered rule set.

    Returns:
        Tuple ``(is_permanent, rule_name)``.
    """
    message = error_message(exc)
    if _matches(message, PERMANENT_DATA_PATTERNS):
        return True, "data"
    if _matches(message, PERMANENT_TRANSPORT_PATTERNS):
        return True, "transport"
    status = error_status(exc)
    if status is not None and status in PERMANENT_STATUS_CODES:
        return True, "status"
    if any(code in message for code in PERMANENT_SMTP_CODES):
        return True, "smtp_code"
    if isinstance(exc, TRANSIENT_EXCEPTION_TYPES) or _matches(message, TRANSIENT_PATTERNS):
        return False, "transient"
    return False, "default"


def is_permanent_error(exc: BaseException | str) -> bool:
    """Return True when ``exc`` should not be retried."""
    return permanence_rule(exc)[0]


def classify_error(exc: BaseException | str) -> ErrorClassification:
    """Classify a failure for the retry/dead-letter decision and for logging."""
    is_permanent, rule = permanence_rule(exc)
    message = error_message(exc)
    lowered = message.lower()
    code = error_code(exc)

    if "not found" in lowered or "does not exist" in lowered:
        return ErrorClassification(
            is_permanent=is_permanent,
            rule=rule,
            category="database",
            severity="high",
            retryable=False,
            action_required="Check data integrity and business logic",
        )
    if "email service returned false" in lowered or "smtp" in lowered or "mail" in lowered:
        return ErrorClassification(
            is_permanent=is_permanent,
            rule=rule,
            category="email_service",
            severity="medium",
            retryable=not is_permanent,
            action_required=(
                "Check email configuration and recipient validity"
                if is_permanent
                else "Monitor email service health"
            ),
        )
    if "validation" in lowered or "invalid" in lowered or "require valid" in lowered:
        return ErrorClassification(
            is_permanent=is_permanent,
            rule=rule,
            category="validation",
            severity="high",
            retryable=not is_permanent,
            action_required="Fix data validation logic or input sanitization",
        )
    if (
        isinstance(exc, TRANSIENT_EXCEPTION_TYPES)
        or "timeout" in lowered
        or "connection" in lowered
        or "network" in lowered
    ):
        return ErrorClassification(
            is_permanent=is_permanent,
            rule=rule,
            category="network",
            severity="low",
            retryable=True,
            action_required="Monitor network connectivity and service health",
        )
    if "memory" in lowered or "resource" in lowered or code == "EMFILE" or isinstance(exc, MemoryError):
        return ErrorClassification(
            is_permanent=is_permanent,
            rule=rule,
            category="system",
            severity="high",
            retryable=True,
            action_required="Check system resources and scaling",
        )
    return ErrorClassification(
        is_permanent=is_permanent,
        rule=rule,
        category="unknown",
        severity="medium",
        retryable=not is_permanent,
        action_required="Investigate error pattern and add specific handling",
    )
