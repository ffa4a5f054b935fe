# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Send routines, one per email event type.

Each routine fetches what it needs from the shop collaborators, renders the
template, sends through the mail transport and records the delivery in the
``DeliveryTracker``. Routines never decide about retries: lookups that find
nothing raise ``RecordNotFoundError`` and failed sends raise
``TransportError``; the event processor classifies whatever propagates.

Admin-addressed routines go to the shop's admin contact address and return
without sending when it is not configured.
"""

from __future__ import annotations

import html
from datetime import datetime, timedelta, timezone
from typing import Any

from .collaborators import Attachment, Collaborators, OutgoingEmail, SendResult
from .errors import RecordNotFoundError, TransportError
from .logger import get_logger
from .models import (
    AdminCancellationNotificationEvent,
    AdminOrderNotificationEvent,
    ContactFormEvent,
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
from .tracking import DeliveryTracker

ADMIN_LOCALE = "vi"
REFUND_ESTIMATE_DAYS = 5

PAYMENT_STATUS_MESSAGES = {
    "PENDING": {"en": "Your payment is being processed.", "vi": "Thanh toán của bạn đang được xử lý."},
    "PAID": {"en": "Your payment has been received.", "vi": "Chúng tôi đã nhận được thanh toán của bạn."},
    "FAILED": {"en": "Your payment could not be processed.", "vi": "Thanh toán của bạn không thành công."},
    "REFUNDED": {"en": "Your payment has been refunded.", "vi": "Khoản thanh toán của bạn đã được hoàn lại."},
}

ORDER_STATUS_MESSAGES = {
    "PENDING": {"en": "Your order has been received.", "vi": "Đơn hàng của bạn đã được tiếp nhận."},
    "PROCESSING": {"en": "Your order is being prepared.", "vi": "Đơn hàng của bạn đang được chuẩn bị."},
    "SHIPPED": {"en": "Your order is on its way.", "vi": "Đơn hàng của bạn đang được giao."},
    "DELIVERED": {"en": "Your order has been delivered.", "vi": "Đơn hàng của bạn đã được giao."},
    "CANCELLED": {"en": "Your order has been cancelled.", "vi": "Đơn hàng của bạn đã bị hủy."},
}


def status_message(table: dict[str, dict[str, str]], status: str | None, locale: str) -> str:
    if not status:
        return ""
    entry = table.get(status.upper())
    return entry.get(locale, entry["en"]) if entry else status


def _iso(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    return None if value is None else str(value)


def _full_name(record: dict[str, Any]) -> str:
    parts = [record.get("first_name"), record.get("last_name")]
    name = " ".join(str(part) for part in parts if part)
    return name or str(record.get("name") or record.get("email") or "")


def order_email_data(order: dict[str, Any], locale: str) -> dict[str, Any]:
    """Template data shared by the customer order emails."""
    user = order.get("user") or {}
    return {
        "order_id": order.get("id"),
        "order_number": order.get("order_number"),
        "order_date": _iso(order.get("created_at")),
        "customer_name": user.get("first_name") or order.get("email"),
        "customer_email": order.get("email"),
        "items": order.get("items") or [],
        "subtotal": order.get("subtotal"),
        "shipping_cost": order.get("shipping_cost"),
        "tax_amount": order.get("tax_amount"),
        "discount_amount": order.get("discount_amount"),
        "total": order.get("total"),
        "shipping_address": order.get("shipping_address"),
        "status": order.get("status"),
        "payment_status": order.get("payment_status"),
        "status_message": status_message(ORDER_STATUS_MESSAGES, order.get("status"), locale),
    }


def cancellation_data(order: dict[str, Any], *, customer_name: str, customer_email: str,
                      reason: str | None) -> dict[str, Any]:
    shipping = order.get("shipping_address") or {}
    billing = order.get("billing_address") or {}
    paid = str(order.get("payment_status") or "").upper() == "PAID"
    total = order.get("total") or 0
    return {
        "order_id": order.get("id"),
        "order_number": order.get("order_number"),
        "customer_name": customer_name,
        "customer_email": customer_email,
        "customer_phone": shipping.get("phone") or billing.get("phone"),
        "order_date": _iso(order.get("created_at")),
        "cancelled_at": _iso(order.get("cancelled_at")) or datetime.now(timezone.utc).isoformat(),
        "cancellation_reason": reason,
        "items": order.get("items") or [],
        "order_total": total,
        "refund_required": paid,
        "refund_amount": total if paid else 0,
        "refund_method": "Bank Transfer" if order.get("payment_method") == "bank_transfer" else "Original Payment Method",
        "estimated_refund_date": (datetime.now(timezone.utc) + timedelta(days=REFUND_ESTIMATE_DAYS)).isoformat(),
        "payment_status": order.get("payment_status"),
    }


class EmailSenders:
    """Send routines bound to one set of collaborators.

    Attributes:
        collaborators: Shop services used by the routines.
        deliveries: Tracker receiving ``mark_delivered`` after each send.
        frontend_url: Base URL of the storefront, used for reset links.
    """

    def __init__(
        self,
        collaborators: Collaborators,
        deliveries: DeliveryTracker,
        *,
        frontend_url: str = "http://localhost:3000",
        logger=None,
    ):
        self.collaborators = collaborators
        self.deliveries = deliveries
        self.frontend_url = frontend_url.rstrip("/")
        self.logger = logger or get_logger("EmailSenders")

    # ----------------------------------------------------------------- helpers
    async def _order(self, order_id: str) -> dict[str, Any]:
        order = await self.collaborators.orders.get_order(order_id)
        if not order:
            self.logger.error("Order not found: %s", order_id)
            raise RecordNotFoundError("Order", order_id)
        return order

    async def _user(self, user_id: str) -> dict[str, Any]:
        user = await self.collaborators.users.get_user(user_id)
        if not user:
            raise RecordNotFoundError("User", user_id)
        return user

    async def _admin_email(self, label: str) -> str | None:
        admin_email = await self.collaborators.settings.get_admin_email()
        if not admin_email:
            self.logger.warning("Admin email not configured, skipping %s", label)
        return admin_email

    async def _deliver(self, event: EmailEvent, message: OutgoingEmail, label: str) -> str | None:
        result = SendResult.coerce(await self.collaborators.transport.send(message))
        if not result.success:
            if result.error:
                raise TransportError(f"Failed to send {label}: {result.error}")
            raise TransportError("Email service returned false")
        await self.deliveries.mark_delivered(event, result.message_id)
        return result.message_id

    async def _send_with_order_pdf(
        self, event: OrderConfirmationEvent | OrderConfirmationResendEvent, label: str
    ) -> str | None:
        locale = event.locale.value
        order = await self._order(event.order_id)
        self.logger.info("[%s] Order found: %s, email: %s", label, order.get("order_number"), order.get("email"))
        template = await self.collaborators.templates.render(
            "order_confirmation", order_email_data(order, locale), locale
        )
        attachments: tuple[Attachment, ...] = ()
        if self.collaborators.attachments is not None:
            attachments = (await self.collaborators.attachments.order_pdf(order, locale),)
        message = OutgoingEmail(
            to=order.get("email") or event.customer_email,
            subject=template.subject,
            html=template.html,
            locale=locale,
            attachments=attachments,
        )
        message_id = await self._deliver(event, message, label)
        self.logger.info(
            "[%s] Completed successfully for order: %s | MessageId: %s", label, event.order_id, message_id or "none"
        )
        return message_id

    # ---------------------------------------------------------------- routines
    async def send_order_confirmation(self, event: OrderConfirmationEvent) -> str | None:
        return await self._send_with_order_pdf(event, "order confirmation")

    async def send_order_confirmation_resend(self, event: OrderConfirmationResendEvent) -> str | None:
        return await self._send_with_order_pdf(event, "order confirmation resend")

    async def send_admin_order_notification(self, event: AdminOrderNotificationEvent) -> str | None:
        admin_email = await self._admin_email("admin order notification")
        if not admin_email:
            return None
        order = await self._order(event.order_id)
        data = order_email_data(order, ADMIN_LOCALE)
        data.update(
            billing_address=order.get("billing_address"),
            payment_method=order.get("payment_method"),
            notes=order.get("notes"),
        )
        template = await self.collaborators.templates.render("admin_order_notification", data, ADMIN_LOCALE)
        message = OutgoingEmail(to=admin_email, subject=template.subject, html=template.html, locale=ADMIN_LOCALE)
        return await self._deliver(event, message, "admin order notification")

    async def send_shipping_notification(self, event: ShippingNotificationEvent) -> str | None:
        locale = event.locale.value
        order = await self._order(event.order_id)
        data = order_email_data(order, locale)
        data.update(
            tracking_number=event.tracking_number,
            carrier=event.carrier,
            estimated_delivery=event.estimated_delivery,
        )
        template = await self.collaborators.templates.render("shipping_notification", data, locale)
        message = OutgoingEmail(to=order.get("email") or event.customer_email,
                                subject=template.subject, html=template.html, locale=locale)
        return await self._deliver(event, message, "shipping notification")

    async def send_order_status_update(self, event: OrderStatusUpdateEvent) -> str | None:
        locale = event.locale.value
        order = await self._order(event.order_id)
        data = order_email_data(order, locale)
        data["status"] = event.new_status
        data["status_message"] = event.status_message or status_message(
            ORDER_STATUS_MESSAGES, event.new_status, locale
        )
        template = await self.collaborators.templates.render("order_status_update", data, locale)
        message = OutgoingEmail(to=order.get("email") or event.customer_email,
                                subject=template.subject, html=template.html, locale=locale)
        return await self._deliver(event, message, "order status update")

    async def send_order_cancellation(self, event: OrderCancellationEvent) -> str | None:
        locale = event.locale.value
        order = await self._order(event.order_id)
        data = cancellation_data(
            order,
            customer_name=event.customer_name,
            customer_email=event.customer_email,
            reason=event.cancellation_reason,
        )
        template = await self.collaborators.templates.render("order_cancellation", data, locale)
        message = OutgoingEmail(to=event.customer_email, subject=template.subject, html=template.html, locale=locale)
        return await self._deliver(event, message, "order cancellation")

    async def send_admin_cancellation_notification(self, event: AdminCancellationNotificationEvent) -> str | None:
        admin_email = await self._admin_email("admin cancellation notification")
        if not admin_email:
            return None
        locale = event.locale.value
        order = await self._order(event.order_id)
        shipping = order.get("shipping_address") or {}
        billing = order.get("billing_address") or {}
        data = cancellation_data(
            order,
            customer_name=shipping.get("full_name") or billing.get("full_name") or order.get("email") or "Customer",
            customer_email=order.get("email") or event.customer_email,
            reason=event.cancellation_reason,
        )
        template = await self.collaborators.templates.render("admin_order_cancellation", data, locale)
        message = OutgoingEmail(to=admin_email, subject=template.subject, html=template.html, locale=locale)
        return await self._deliver(event, message, "admin cancellation notification")

    async def send_payment_status_update(self, event: PaymentStatusUpdateEvent) -> str | None:
        locale = event.locale.value
        order = await self._order(event.order_id)
        data = {
            "order_id": order.get("id"),
            "order_number": order.get("order_number"),
            "customer_name": event.customer_name,
            "order_date": _iso(order.get("created_at")),
            "order_total": order.get("total"),
            "payment_status": event.payment_status,
            "status_message": event.status_message
            or status_message(PAYMENT_STATUS_MESSAGES, event.payment_status, locale),
        }
        template = await self.collaborators.templates.render("payment_status_update", data, locale)
        message = OutgoingEmail(to=event.customer_email, subject=template.subject, html=template.html, locale=locale)
        return await self._deliver(event, message, "payment status update")

    async def send_welcome_email(self, event: WelcomeEmailEvent) -> str | None:
        locale = event.locale.value
        user = await self._user(event.user_id)
        template = await self.collaborators.templates.render(
            "welcome_email", {"name": _full_name(user), "email": user.get("email")}, locale
        )
        message = OutgoingEmail(to=user.get("email") or event.user_email,
                                subject=template.subject, html=template.html, locale=locale)
        return await self._deliver(event, message, "welcome email")

    async def send_password_reset(self, event: PasswordResetEvent) -> str | None:
        locale = event.locale.value
        user = await self._user(event.user_id)
        data = {
            "name": _full_name(user),
            "email": user.get("email"),
            "reset_token": event.reset_token,
            "reset_url": f"{self.frontend_url}/{locale}/reset-password?token={event.reset_token}",
        }
        template = await self.collaborators.templates.render("password_reset", data, locale)
        message = OutgoingEmail(to=user.get("email") or event.user_email,
                                subject=template.subject, html=template.html, locale=locale)
        return await self._deliver(event, message, "password reset")

    async def send_contact_form(self, event: ContactFormEvent) -> str | None:
        admin_email = await self._admin_email("contact form notification")
        if not admin_email:
            return None
        locale = event.locale.value
        vi = locale == "vi"
        name = html.escape(event.sender_name)
        subject = f"Liên hệ mới từ {event.sender_name}" if vi else f"New Contact Form Submission from {event.sender_name}"
        body = (
            f"<h2>{'Liên hệ mới' if vi else 'New Contact Form Submission'}</h2>"
            f"<p><strong>{'Tên' if vi else 'Name'}:</strong> {name}</p>"
            f"<p><strong>Email:</strong> {html.escape(event.sender_email)}</p>"
            f"<p><strong>{'Tin nhắn' if vi else 'Message'}:</strong></p>"
            f"<p>{html.escape(event.message)}</p>"
        )
        message = OutgoingEmail(to=admin_email, subject=subject, html=body, locale=locale)
        return await self._deliver(event, message, "contact form notification")
