import time
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from email_queue_worker.broker import STALLED_REASON, SqliteJobBroker, dedup_window_seconds, generate_job_id
from email_queue_worker.errors import BrokerConnectionError, EventValidationError
from email_queue_worker.models import parse_event


@pytest_asyncio.fixture
async def broker(tmp_path):
    b = SqliteJobBroker(str(tmp_path / "jobs.db"))
    await b.connect()
    yield b
    await b.close()


class RecordingLifecycle:
    def __init__(self):
        self.entries = []

    def log(self, phase, **fields):
        self.entries.append((phase, fields))


def test_dedup_windows_per_type():
    assert dedup_window_seconds("ORDER_CONFIRMATION_RESEND") == 900
    assert dedup_window_seconds("ORDER_CONFIRMATION") == 300
    assert dedup_window_seconds("ADMIN_ORDER_NOTIFICATION") == 180
    assert dedup_window_seconds("WELCOME_EMAIL") == 120


def test_job_id_is_type_hash_and_window(make_event):
    event = parse_event(make_event())
    job_id = generate_job_id(event)

    kind, digest, window = job_id.rsplit("-", 2)
    assert kind == "ORDER_CONFIRMATION"
    assert len(digest) == 12
    ts = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc).timestamp()
    assert int(window) == int(ts // 300)


def test_job_id_ignores_seconds_within_the_minute(make_event):
    first = generate_job_id(parse_event(make_event(timestamp="2025-01-15T10:30:05Z")))
    second = generate_job_id(parse_event(make_event(timestamp="2025-01-15T10:30:40Z")))
    other = generate_job_id(parse_event(make_event(orderId="ord-2")))

    assert first == second
    assert first != other


@pytest.mark.asyncio
async def test_enqueue_twice_yields_one_job(broker, make_event):
    first = await broker.enqueue(make_event())
    second = await broker.enqueue(make_event())

    assert first["duplicate"] is False
    assert second["duplicate"] is True
    assert first["id"] == second["id"]
    assert first["priority"] == 2
    assert (await broker.counts())["total"] == 1


@pytest.mark.asyncio
async def test_enqueue_rejects_invalid_event(broker, make_event):
    with pytest.raises(EventValidationError):
        await broker.enqueue(make_event(customerEmail=""))
    with pytest.raises(EventValidationError):
        await broker.enqueue({"type": "NOPE"})


@pytest.mark.asyncio
async def test_enqueue_logs_created_lifecycle_event(tmp_path, make_event):
    lifecycle = RecordingLifecycle()
    b = SqliteJobBroker(str(tmp_path / "jobs.db"), lifecycle=lifecycle)
    await b.connect()
    try:
        await b.enqueue(make_event("WELCOME_EMAIL"))
    finally:
        await b.close()

    phase, seen = lifecycle.entries[0]
    assert phase == "created"
    assert seen["event_type"] == "WELCOME_EMAIL"
    assert seen["metadata"]["deduplication_window_s"] == 120
    assert seen["metadata"]["is_duplicate"] is False


@pytest.mark.asyncio
async def test_claim_orders_by_priority(broker, make_event):
    await broker.enqueue(make_event("CONTACT_FORM"))
    await broker.enqueue(make_event("WELCOME_EMAIL"))
    await broker.enqueue(make_event("PASSWORD_RESET"))

    jobs = await broker.claim(2, "w1")

    assert [job.event_type for job in jobs] == ["PASSWORD_RESET", "WELCOME_EMAIL"]
    assert jobs[0].priority == 1
    counts = await broker.counts()
    assert counts["active"] == 2
    assert counts["waiting"] == 1


@pytest.mark.asyncio
async def test_claim_skips_delayed_jobs(broker, make_event):
    await broker.enqueue(make_event(), delay_ms=60_000)

    assert await broker.claim(5, "w1") == []
    assert (await broker.counts())["delayed"] == 1


@pytest.mark.asyncio
async def test_retry_schedules_then_fails_when_attempts_exhausted(broker, make_event):
    queued = await broker.enqueue(make_event(), max_attempts=2)
    await broker.claim(1, "w1")

    assert await broker.retry(queued["id"], 60_000, "ECONNRESET") == "waiting"
    job = await broker.get_job(queued["id"])
    assert job["attempts_made"] == 1
    assert job["available_at"] > time.time() + 50
    assert job["last_error"] == "ECONNRESET"

    assert await broker.retry(queued["id"], 60_000, "ECONNRESET") == "failed"
    assert (await broker.get_job(queued["id"]))["status"] == "failed"
    assert await broker.retry("missing", 0, "x") == "missing"


@pytest.mark.asyncio
async def test_ack_and_fail(broker, make_event):
    done = await broker.enqueue(make_event())
    lost = await broker.enqueue(make_event("WELCOME_EMAIL"))
    await broker.claim(2, "w1")

    await broker.ack(done["id"])
    await broker.fail(lost["id"], "PERMANENT_ERROR: 550 no such user")

    assert (await broker.get_job(done["id"]))["status"] == "completed"
    failed = await broker.get_job(lost["id"])
    assert failed["status"] == "failed"
    assert failed["attempts_made"] == 1
    assert failed["last_error"].startswith("PERMANENT_ERROR:")
    assert [row["id"] for row in await broker.list_jobs("failed")] == [lost["id"]]


@pytest.mark.asyncio
async def test_requeue_stalled_then_fail(broker, make_event):
    queued = await broker.enqueue(make_event())
    await broker.claim(1, "w1")
    now = time.time()

    first = await broker.requeue_stalled(30, 1, now=now + 100)
    assert first == {"requeued": [queued["id"]], "failed": []}

    await broker.claim(1, "w2", now=now + 200)
    second = await broker.requeue_stalled(30, 1, now=now + 300)
    assert second == {"requeued": [], "failed": [queued["id"]]}
    job = await broker.get_job(queued["id"])
    assert job["status"] == "failed"
    assert job["last_error"] == STALLED_REASON


@pytest.mark.asyncio
async def test_requeue_stalled_leaves_excluded_jobs(broker, make_event):
    queued = await broker.enqueue(make_event())
    await broker.claim(1, "w1")

    result = await broker.requeue_stalled(30, 1, exclude=[queued["id"]], now=time.time() + 100)

    assert result == {"requeued": [], "failed": []}
    assert (await broker.get_job(queued["id"]))["status"] == "active"


@pytest.mark.asyncio
async def test_retry_failed_messages(broker, make_event):
    queued = await broker.enqueue(make_event())
    assert await broker.retry_failed("nope") == {"success": False, "message": "Job nope not found"}
    assert (await broker.retry_failed(queued["id"]))["message"] == f"Job {queued['id']} is waiting, not failed"

    await broker.claim(1, "w1")
    await broker.fail(queued["id"], "boom")
    result = await broker.retry_failed(queued["id"])

    assert result == {"success": True, "message": f"Job {queued['id']} has been queued for retry"}
    job = await broker.get_job(queued["id"])
    assert job["status"] == "waiting"
    assert job["attempts_made"] == 0

    await broker.claim(1, "w1")
    await broker.ack(queued["id"])
    done = await broker.retry_failed(queued["id"])
    assert done["message"] == f"Job {queued['id']} is already completed successfully"


@pytest.mark.asyncio
async def test_remove_and_clean(broker, make_event):
    keep = await broker.enqueue(make_event())
    gone = await broker.enqueue(make_event("WELCOME_EMAIL"))
    await broker.claim(2, "w1")
    await broker.ack(keep["id"])

    assert await broker.remove(gone["id"]) is True
    assert await broker.remove(gone["id"]) is False
    assert await broker.clean("completed", 3600) == 0
    time.sleep(0.01)
    assert await broker.clean("completed", 0) == 1
    with pytest.raises(ValueError):
        await broker.clean("waiting", 0)


@pytest.mark.asyncio
async def test_list_jobs_rejects_unknown_status(broker):
    with pytest.raises(ValueError):
        await broker.list_jobs("paused")


@pytest.mark.asyncio
async def test_operations_after_close_raise(tmp_path, make_event):
    b = SqliteJobBroker(str(tmp_path / "jobs.db"))
    await b.connect()
    assert (await b.counts())["total"] == 0
    await b.close()

    assert b.is_connected is False
    with pytest.raises(BrokerConnectionError):
        await b.counts()
    with pytest.raises(BrokerConnectionError):
        await b.enqueue(make_event())

    await b.reconnect()
    assert b.is_connected is True
    await b.close()


@pytest.mark.asyncio
async def test_jobs_survive_reconnect(tmp_path, make_event):
    path = str(tmp_path / "jobs.db")
    b = SqliteJobBroker(path)
    await b.connect()
    queued = await b.enqueue(make_event())
    await b.close()

    again = SqliteJobBroker(path)
    await again.connect()
    try:
        jobs = await again.claim(1, "w1")
    finally:
        await again.close()

    assert [job.id for job in jobs] == [queued["id"]]
    assert jobs[0].data["orderId"] == "ord-1"
