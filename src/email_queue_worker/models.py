# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for email events, jobs and processing outcomes.

Models:
    - EventType / Locale: closed enums of the wire values
    - One frozen model per email event type, joined in the ``EmailEvent``
      discriminated union on ``type``
    - Job: broker-side attempt wrapper around a raw event payload
    - DeliveryRecord: entry of the delivery deduplication cache
    - Completed / Skipped / RetryableFailure / PermanentFailure: results of
      processing one job

Wire payloads produced by the shop's publisher use camelCase keys
(``orderId``, ``customerEmail``); both camelCase and snake_case are accepted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .errors import EventValidationError


class EventType(str, Enum):
    """Email event types understood by the worker."""

    ORDER_CONFIRMATION = "ORDER_CONFIRMATION"
    ORDER_CONFIRMATION_RESEND = "ORDER_CONFIRMATION_RESEND"
    ADMIN_ORDER_NOTIFICATION = "ADMIN_ORDER_NOTIFICATION"
    SHIPPING_NOTIFICATION = "SHIPPING_NOTIFICATION"
    ORDER_STATUS_UPDATE = "ORDER_STATUS_UPDATE"
    ORDER_CANCELLATION = "ORDER_CANCELLATION"
    ADMIN_CANCELLATION_NOTIFICATION = "ADMIN_CANCELLATION_NOTIFICATION"
    PAYMENT_STATUS_UPDATE = "PAYMENT_STATUS_UPDATE"
    WELCOME_EMAIL = "WELCOME_EMAIL"
    PASSWORD_RESET = "PASSWORD_RESET"
    CONTACT_FORM = "CONTACT_FORM"


class Locale(str, Enum):
    """Supported email locales."""

    EN = "en"
    VI = "vi"


EVENT_TYPES = frozenset(item.value for item in EventType)
LOCALES = frozenset(item.value for item in Locale)

# Broker priority per type (1 = highest)
EVENT_PRIORITIES: dict[str, int] = {
    EventType.PASSWORD_RESET.value: 1,
    EventType.ORDER_CONFIRMATION.value: 2,
    EventType.ORDER_CONFIRMATION_RESEND.value: 2,
    EventType.ADMIN_ORDER_NOTIFICATION.value: 2,
    EventType.ORDER_CANCELLATION.value: 3,
    EventType.ADMIN_CANCELLATION_NOTIFICATION.value: 3,
    EventType.PAYMENT_STATUS_UPDATE.value: 4,
    EventType.SHIPPING_NOTIFICATION.value: 4,
    EventType.ORDER_STATUS_UPDATE.value: 5,
    EventType.WELCOME_EMAIL.value: 6,
    EventType.CONTACT_FORM.value: 7,
}
DEFAULT_PRIORITY = 5


class _EventBase(BaseModel):
    """Fields shared by every email event."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    locale: Annotated[Locale, Field(description="Rendering locale")]
    timestamp: Annotated[datetime, Field(description="When the upstream event happened")]

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON payload stored in the job queue."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class _OrderCustomerEvent(_EventBase):
    order_id: Annotated[str, Field(min_length=1)]
    order_number: Annotated[str, Field(min_length=1)]
    customer_email: Annotated[str, Field(min_length=3)]
    customer_name: Annotated[str, Field(default="")]


class OrderConfirmationEvent(_OrderCustomerEvent):
    type: Literal["ORDER_CONFIRMATION"] = "ORDER_CONFIRMATION"


class OrderConfirmationResendEvent(_OrderCustomerEvent):
    type: Literal["ORDER_CONFIRMATION_RESEND"] = "ORDER_CONFIRMATION_RESEND"
    reason: str | None = None


class AdminOrderNotificationEvent(_EventBase):
    type: Literal["ADMIN_ORDER_NOTIFICATION"] = "ADMIN_ORDER_NOTIFICATION"
    order_id: Annotated[str, Field(min_length=1)]
    order_number: Annotated[str, Field(min_length=1)]


class ShippingNotificationEvent(_OrderCustomerEvent):
    type: Literal["SHIPPING_NOTIFICATION"] = "SHIPPING_NOTIFICATION"
    tracking_number: str | None = None
    carrier: str | None = None
    estimated_delivery: str | None = None


class OrderStatusUpdateEvent(_OrderCustomerEvent):
    type: Literal["ORDER_STATUS_UPDATE"] = "ORDER_STATUS_UPDATE"
    new_status: Annotated[str, Field(min_length=1)]
    status_message: str | None = None


class OrderCancellationEvent(_OrderCustomerEvent):
    type: Literal["ORDER_CANCELLATION"] = "ORDER_CANCELLATION"
    cancellation_reason: str | None = None


class AdminCancellationNotificationEvent(_OrderCustomerEvent):
    type: Literal["ADMIN_CANCELLATION_NOTIFICATION"] = "ADMIN_CANCELLATION_NOTIFICATION"
    cancellation_reason: str | None = None


class PaymentStatusUpdateEvent(_OrderCustomerEvent):
    type: Literal["PAYMENT_STATUS_UPDATE"] = "PAYMENT_STATUS_UPDATE"
    payment_status: Annotated[str, Field(min_length=1)]
    status_message: str | None = None


class WelcomeEmailEvent(_EventBase):
    type: Literal["WELCOME_EMAIL"] = "WELCOME_EMAIL"
    user_id: Annotated[str, Field(min_length=1)]
    user_email: Annotated[str, Field(min_length=3)]
    user_name: Annotated[str, Field(default="")]


class PasswordResetEvent(_EventBase):
    type: Literal["PASSWORD_RESET"] = "PASSWORD_RESET"
    user_id: Annotated[str, Field(min_length=1)]
    user_email: Annotated[str, Field(min_length=3)]
    reset_token: Annotated[str, Field(min_length=1)]


class ContactFormEvent(_EventBase):
    type: Literal["CONTACT_FORM"] = "CONTACT_FORM"
    sender_name: Annotated[str, Field(min_length=1)]
    sender_email: Annotated[str, Field(min_length=3)]
    message: Annotated[str, Field(min_length=1)]


EmailEvent = Annotated[
    Union[
        OrderConfirmationEvent,
        OrderConfirmationResendEvent,
        AdminOrderNotificationEvent,
        ShippingNotificationEvent,
        OrderStatusUpdateEvent,
        OrderCancellationEvent,
        AdminCancellationNotificationEvent,
        PaymentStatusUpdateEvent,
        WelcomeEmailEvent,
        PasswordResetEvent,
        ContactFormEvent,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[EmailEvent] = TypeAdapter(EmailEvent)


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    err = errors[0]
    # First loc element is the union tag
    location = ".".join(str(part) for part in err.get("loc", ())[1:])
    return f"{location}: {err.get('msg')}" if location else str(err.get("msg"))


def parse_event(data: Any) -> EmailEvent:
    """Run the validation gate and build the typed event.

    Checks the event type, locale and timestamp first so that the error
    messages match the classifier's permanent patterns, then validates the
    type-specific fields.

    Raises:
        EventValidationError: If the payload is not a valid email event.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    if not isinstance(data, dict):
        raise EventValidationError(f"Invalid event type: payload is {type(data).__name__}")
    event_type = data.get("type")
    if event_type not in EVENT_TYPES:
        raise EventValidationError(f"Invalid event type: {event_type}")
    locale = data.get("locale")
    if locale not in LOCALES:
        raise EventValidationError(f"Invalid locale: {locale}")
    if not data.get("timestamp"):
        raise EventValidationError("Missing event timestamp")
    try:
        return _EVENT_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise EventValidationError(f"Event validation failed: {_first_error(exc)}") from exc


class Job(BaseModel):
    """A broker job carrying one raw event payload.

    Attributes:
        id: Broker-unique job identifier.
        data: Raw event payload as stored in the queue.
        attempts_made: Attempts already consumed before this one.
        max_attempts: Attempts allowed by the broker.
        enqueued_at: When the job was first enqueued.
        priority: Broker priority (1 = highest).
    """

    model_config = ConfigDict(frozen=True)

    id: Annotated[str, Field(min_length=1)]
    data: dict[str, Any]
    attempts_made: Annotated[int, Field(default=0, ge=0)]
    max_attempts: Annotated[int, Field(default=5, ge=1)]
    enqueued_at: Annotated[datetime, Field(default_factory=lambda: datetime.now(timezone.utc))]
    priority: Annotated[int, Field(default=DEFAULT_PRIORITY)]

    @property
    def attempt_number(self) -> int:
        return self.attempts_made + 1

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.attempt_number)

    @property
    def event_type(self) -> str:
        value = self.data.get("type")
        return str(value) if value else "unknown"

    @property
    def locale(self) -> str | None:
        value = self.data.get("locale")
        return str(value) if value else None


class EnqueueRequest(BaseModel):
    """Payload accepted by ``POST /jobs``."""

    model_config = ConfigDict(extra="forbid")

    event: dict[str, Any]
    job_id: str | None = None
    max_attempts: Annotated[int | None, Field(default=None, ge=1, le=25)]
    priority: Annotated[int | None, Field(default=None, ge=1)]


class VerifyDeliveryRequest(BaseModel):
    """Payload accepted by ``POST /delivery-tracking/verify``."""

    event: dict[str, Any]


@dataclass(frozen=True)
class DeliveryRecord:
    delivery_key: str
    timestamp: float
    transport_message_id: str | None = None


@dataclass(frozen=True)
class Completed:
    processing_time_ms: int
    transport_message_id: str | None = None


@dataclass(frozen=True)
class Skipped:
    reason: Literal["in_flight", "already_delivered"]


@dataclass(frozen=True)
class RetryableFailure:
    """Transient failure; the broker redelivers after ``delay_ms``.

    ``remaining_attempts == 0`` means the broker finalizes the job as failed.
    """

    error: BaseException
    delay_ms: int
    remaining_attempts: int


@dataclass(frozen=True)
class PermanentFailure:
    """Failure that must not be retried; ``reason`` carries the permanent tag."""

    error: BaseException
    reason: str


Outcome = Union[Completed, Skipped, RetryableFailure, PermanentFailure]
