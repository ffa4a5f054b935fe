# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Interfaces of the shop services the send routines depend on.

The worker does not own the shop's database, templates or PDF rendering; it
reaches them through the protocols below. Implementations are supplied by
the application (see ``[worker] collaborators`` in the configuration).

Lookups return ``None`` when a record does not exist; the send routines turn
that into a permanent ``RecordNotFoundError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class RenderedTemplate:
    subject: str
    html: str


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


@dataclass(frozen=True)
class OutgoingEmail:
    """One message handed to the mail transport."""

    to: str
    subject: str
    html: str
    locale: str
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SendResult:
    """Normalized result of a transport send."""

    success: bool
    message_id: str | None = None
    error: str | None = None

    @classmethod
    def coerce(cls, value: Any) -> SendResult:
        """Accept either a bare boolean or a ``SendResult``-like object."""
        if isinstance(value, SendResult):
            return value
        if isinstance(value, bool):
            return cls(success=value)
        if isinstance(value, dict):
            return cls(
                success=bool(value.get("success")),
                message_id=value.get("message_id") or value.get("messageId"),
                error=value.get("error"),
            )
        return cls(
            success=bool(getattr(value, "success", False)),
            message_id=getattr(value, "message_id", None),
            error=getattr(value, "error", None),
        )


@runtime_checkable
class OrderRepository(Protocol):
    async def get_order(self, order_id: str) -> dict[str, Any] | None: ...


@runtime_checkable
class UserRepository(Protocol):
    async def get_user(self, user_id: str) -> dict[str, Any] | None: ...


@runtime_checkable
class SettingsProvider(Protocol):
    async def get_admin_email(self) -> str | None: ...


@runtime_checkable
class TemplateRenderer(Protocol):
    async def render(self, template: str, data: dict[str, Any], locale: str) -> RenderedTemplate: ...


@runtime_checkable
class AttachmentGenerator(Protocol):
    async def order_pdf(self, order: dict[str, Any], locale: str) -> Attachment: ...


@runtime_checkable
class MailTransport(Protocol):
    async def send(self, message: OutgoingEmail) -> SendResult | bool: ...


@dataclass
class Collaborators:
    """Bundle of the services a worker needs to deliver emails."""

    orders: OrderRepository
    users: UserRepository
    settings: SettingsProvider
    templates: TemplateRenderer
    transport: MailTransport
    attachments: AttachmentGenerator | None = None
