import asyncio

import pytest

from email_queue_worker.collaborators import Attachment, Collaborators, RenderedTemplate, SendResult
from email_queue_worker.context import WorkerContext
from email_queue_worker.models import Job

BASE_TIMESTAMP = "2025-01-15T10:30:00.000Z"

EVENT_FIELDS = {
    "ORDER_CONFIRMATION": {
        "orderId": "ord-1", "orderNumber": "ORD-0001", "customerEmail": "ann@example.com", "customerName": "Ann",
    },
    "ORDER_CONFIRMATION_RESEND": {
        "orderId": "ord-1", "orderNumber": "ORD-0001", "customerEmail": "ann@example.com", "customerName": "Ann",
        "reason": "customer request",
    },
    "ADMIN_ORDER_NOTIFICATION": {"orderId": "ord-1", "orderNumber": "ORD-0001"},
    "SHIPPING_NOTIFICATION": {
        "orderId": "ord-1", "orderNumber": "ORD-0001", "customerEmail": "ann@example.com", "customerName": "Ann",
        "trackingNumber": "TRK-1", "carrier": "DHL",
    },
    "ORDER_STATUS_UPDATE": {
        "orderId": "ord-1", "orderNumber": "ORD-0001", "customerEmail": "ann@example.com", "customerName": "Ann",
        "newStatus": "SHIPPED",
    },
    "ORDER_CANCELLATION": {
        "orderId": "ord-1", "orderNumber": "ORD-0001", "customerEmail": "ann@example.com", "customerName": "Ann",
        "cancellationReason": "out of stock",
    },
    "ADMIN_CANCELLATION_NOTIFICATION": {
        "orderId": "ord-1", "orderNumber": "ORD-0001", "customerEmail": "ann@example.com", "customerName": "Ann",
    },
    "PAYMENT_STATUS_UPDATE": {
        "orderId": "ord-1", "orderNumber": "ORD-0001", "customerEmail": "ann@example.com", "customerName": "Ann",
        "paymentStatus": "PAID",
    },
    "WELCOME_EMAIL": {"userId": "usr-1", "userEmail": "bob@example.com", "userName": "Bob"},
    "PASSWORD_RESET": {"userId": "usr-1", "userEmail": "bob@example.com", "resetToken": "tok-abcdef123456"},
    "CONTACT_FORM": {"senderName": "Carol", "senderEmail": "carol@example.com", "message": "Hello <there>"},
}


class DummyOrders:
    def __init__(self, orders=None):
        self.orders = orders if orders is not None else {
            "ord-1": {
                "id": "ord-1",
                "order_number": "ORD-0001",
                "email": "ann@example.com",
                "status": "PENDING",
                "payment_status": "PAID",
                "payment_method": "card",
                "total": 120,
                "items": [{"name": "Tea", "quantity": 2}],
                "user": {"first_name": "Ann"},
                "shipping_address": {"full_name": "Ann Smith", "phone": "123"},
            }
        }

    async def get_order(self, order_id):
        return self.orders.get(order_id)


class DummyUsers:
    def __init__(self):
        self.users = {"usr-1": {"id": "usr-1", "email": "bob@example.com", "first_name": "Bob", "last_name": "Lee"}}

    async def get_user(self, user_id):
        return self.users.get(user_id)


class DummySettings:
    def __init__(self, admin_email="admin@shop.example"):
        self.admin_email = admin_email

    async def get_admin_email(self):
        return self.admin_email


class DummyTemplates:
    def __init__(self):
        self.calls = []

    async def render(self, template, data, locale):
        self.calls.append((template, data, locale))
        return RenderedTemplate(subject=f"{template}:{locale}", html=f"<p>{template}</p>")


class DummyAttachments:
    async def order_pdf(self, order, locale):
        return Attachment(filename=f"order-{order['order_number']}.pdf", content=b"%PDF-1.4")


class DummyTransport:
    """Records messages; ``results`` holds queued return values or exceptions."""

    def __init__(self):
        self.sent = []
        self.results = []
        self.delay = 0.0

    async def send(self, message):
        self.sent.append(message)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return SendResult(success=True, message_id=f"<msg-{len(self.sent)}@test>")


@pytest.fixture
def make_event():
    def _make(event_type="ORDER_CONFIRMATION", **overrides):
        data = {"type": event_type, "locale": "en", "timestamp": BASE_TIMESTAMP, **EVENT_FIELDS[event_type]}
        data.update(overrides)
        return data

    return _make


@pytest.fixture
def make_job(make_event):
    def _make(data=None, *, job_id="job-1", attempts_made=0, max_attempts=5):
        return Job(
            id=job_id,
            data=data if data is not None else make_event(),
            attempts_made=attempts_made,
            max_attempts=max_attempts,
        )

    return _make


@pytest.fixture
def collaborators():
    return Collaborators(
        orders=DummyOrders(),
        users=DummyUsers(),
        settings=DummySettings(),
        templates=DummyTemplates(),
        transport=DummyTransport(),
        attachments=DummyAttachments(),
    )


@pytest.fixture
def context():
    return WorkerContext()
