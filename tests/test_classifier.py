import asyncio

import pytest

from email_queue_worker.classifier import classify_error, is_permanent_error, permanence_rule
from email_queue_worker.errors import RecordNotFoundError, TransportError


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.parametrize(
    "message",
    [
        "Order not found: ord-9",
        "Invalid event type: FOO",
        "Invalid locale: fr",
        "Missing event timestamp",
        "Malformed payload",
        "Invalid recipient address",
        "Mailbox unavailable",
        "550 5.1.1 <nobody@example.com>: Recipient address rejected",
    ],
)
def test_permanent_messages(message):
    assert is_permanent_error(Exception(message))


@pytest.mark.parametrize(
    "message",
    ["ECONNRESET", "Connection refused", "Service Unavailable", "Too many requests", "something odd happened"],
)
def test_transient_messages(message):
    assert not is_permanent_error(Exception(message))


def test_rules_are_evaluated_in_order():
    assert permanence_rule(Exception("user unknown"))[1] == "transport"
    assert permanence_rule(Exception("not found and timeout"))[1] == "data"
    assert permanence_rule(StatusError("gone", 410)) == (True, "status")
    assert permanence_rule(Exception("421 4.7.0 try later")) == (False, "default")
    assert permanence_rule(Exception("connection reset by peer")) == (False, "transient")


def test_status_codes_outside_the_permanent_set_are_transient():
    assert not is_permanent_error(StatusError("upstream", 503))
    assert not is_permanent_error(StatusError("odd", 418))


def test_exception_types_map_to_transient_network():
    result = classify_error(asyncio.TimeoutError())
    assert result.is_permanent is False
    assert result.rule == "transient"
    assert result.category == "network"
    assert result.retryable is True


def test_not_found_is_a_database_category():
    result = classify_error(RecordNotFoundError("Order", "ord-9"))
    assert result.is_permanent is True
    assert result.category == "database"
    assert result.severity == "high"
    assert result.retryable is False


def test_email_service_returned_false_is_transient():
    result = classify_error(TransportError("Email service returned false"))
    assert result.is_permanent is False
    assert result.category == "email_service"
    assert result.action_required == "Monitor email service health"


def test_invalid_recipient_is_permanent_validation():
    result = classify_error(Exception("Invalid recipient address"))
    assert result.is_permanent is True
    assert result.category == "validation"
    assert result.retryable is False


def test_transient_validation_category_stays_retryable():
    result = classify_error(Exception("invalid token, connection timeout"))
    assert result.is_permanent is False
    assert result.rule == "transient"
    assert result.category == "validation"
    assert result.retryable is True


def test_memory_errors_are_system_category():
    result = classify_error(MemoryError("out of memory"))
    assert result.category == "system"
    assert result.is_permanent is False


def test_as_dict_contains_every_field():
    data = classify_error("whatever").as_dict()
    assert set(data) == {"is_permanent", "rule", "category", "severity", "retryable", "action_required"}
    assert data["category"] == "unknown"
