import json
import logging

from email_queue_worker.dead_letter import REDACTED, DeadLetterLogger, sanitize_event_data
from email_queue_worker.errors import TransportError


def test_sanitize_redacts_secrets_recursively():
    data = {"resetToken": "abc", "user": {"password": "pw", "email": "a@b.c"}, "token": "t"}
    clean = sanitize_event_data(data)
    assert clean == {"resetToken": REDACTED, "user": {"password": REDACTED, "email": "a@b.c"}, "token": REDACTED}
    assert data["resetToken"] == "abc"


def test_record_contents(make_event, make_job):
    job = make_job(make_event("PASSWORD_RESET"), attempts_made=2)
    dead_letters = DeadLetterLogger()
    error = TransportError("Invalid recipient address", code="EENVELOPE", status=550)

    entry = dead_letters.record(job, error, job.attempt_number)

    assert entry["job_id"] == "job-1"
    assert entry["event_type"] == "PASSWORD_RESET"
    assert entry["event_data"]["resetToken"] == REDACTED
    assert entry["error"]["name"] == "TransportError"
    assert entry["error"]["code"] == "EENVELOPE"
    assert entry["error"]["status"] == 550
    assert entry["error"]["category"] == "validation"
    assert entry["is_permanent_error"] is True
    assert entry["attempt_number"] == 3
    assert entry["retry_history"] == [{"attempt": 1, "delay": 60_000}, {"attempt": 2, "delay": 300_000}]
    assert set(entry["system_info"]) == {"python_version", "platform", "pid"}


def test_record_is_logged_with_category_line(make_job, caplog):
    dead_letters = DeadLetterLogger()
    with caplog.at_level(logging.ERROR):
        dead_letters.record(make_job(), TransportError("Email service returned false"), 5)

    messages = [record.getMessage() for record in caplog.records]
    entry_line = next(m for m in messages if m.startswith("DEAD_LETTER_QUEUE_ENTRY: "))
    payload = json.loads(entry_line.split(": ", 1)[1])
    assert payload["error"]["category"] == "email_service"
    assert any(m.startswith("EMAIL_SERVICE_FAILURE: ORDER_CONFIRMATION") for m in messages)


def test_recent_keeps_newest_first(make_job):
    dead_letters = DeadLetterLogger(max_recent=2)
    for job_id in ("a", "b", "c"):
        dead_letters.record(make_job(job_id=job_id), RuntimeError("boom"), 1)
    assert [entry["job_id"] for entry in dead_letters.recent()] == ["c", "b"]
    assert [entry["job_id"] for entry in dead_letters.recent(1)] == ["c"]
    assert len(dead_letters) == 2


def test_record_never_raises(make_job, caplog):
    class Broken(DeadLetterLogger):
        def build_record(self, *args, **kwargs):
            raise ValueError("cannot serialize")

    with caplog.at_level(logging.ERROR):
        assert Broken().record(make_job(), RuntimeError("boom"), 1) is None
    assert "Failed to log dead letter entry for job job-1" in caplog.text
