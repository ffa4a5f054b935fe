import asyncio

import pytest

from email_queue_worker.prometheus import WorkerMetrics
from email_queue_worker.resilience import ConnectionResilienceManager, ResilienceState


class FlakyConnect:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionRefusedError("ECONNREFUSED")


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_reconnects_with_exponential_backoff():
    connect = FlakyConnect(failures=2)
    sleep = RecordingSleep()
    manager = ConnectionResilienceManager(connect, sleep=sleep)

    assert await manager.handle_connection_lost(ConnectionResetError("ECONNRESET")) is True

    assert sleep.delays == [1.0, 2.0, 4.0]
    assert connect.calls == 3
    assert manager.state.connected is True
    assert manager.state.reconnect_attempts == 0
    assert manager.status()["status"] == "connected"


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    connect = FlakyConnect(failures=100)
    sleep = RecordingSleep()
    metrics = WorkerMetrics()
    manager = ConnectionResilienceManager(connect, max_reconnect_attempts=3, sleep=sleep, metrics=metrics)

    assert await manager.handle_connection_lost(RuntimeError("redis down")) is False

    assert connect.calls == 2
    assert manager.state.exhausted is True
    assert manager.state.status == "exhausted"
    assert manager.state.last_error == "ECONNREFUSED"
    assert "eqw_reconnect_attempts 3.0" in metrics.generate_latest().decode()


@pytest.mark.asyncio
async def test_concurrent_losses_share_one_loop():
    connect = FlakyConnect(failures=1)
    manager = ConnectionResilienceManager(connect, sleep=RecordingSleep())

    results = await asyncio.gather(manager.handle_connection_lost(), manager.handle_connection_lost())

    assert results == [True, True]
    assert connect.calls == 2


@pytest.mark.asyncio
async def test_no_reconnect_during_shutdown():
    connect = FlakyConnect(failures=0)
    manager = ConnectionResilienceManager(connect, sleep=RecordingSleep())
    manager.begin_shutdown()

    assert await manager.handle_connection_lost(RuntimeError("closed")) is False
    assert connect.calls == 0
    assert await manager.trigger_reconnection() == {
        "success": False,
        "message": "Cannot reconnect during shutdown",
    }


@pytest.mark.asyncio
async def test_manual_reconnection_resets_the_counter():
    connect = FlakyConnect(failures=100)
    manager = ConnectionResilienceManager(connect, max_reconnect_attempts=2, sleep=RecordingSleep())
    await manager.handle_connection_lost()
    assert manager.state.exhausted

    failed = await manager.trigger_reconnection()
    assert failed == {"success": False, "message": "ECONNREFUSED"}

    connect.failures = 0
    assert await manager.trigger_reconnection() == {"success": True, "message": "Reconnection successful"}
    assert manager.state.reconnect_attempts == 0
    assert manager.state.connected is True


@pytest.mark.asyncio
async def test_close_cancels_a_pending_loop():
    async def never_ready():
        raise ConnectionRefusedError("ECONNREFUSED")

    manager = ConnectionResilienceManager(never_ready)
    task = asyncio.create_task(manager.handle_connection_lost())
    await asyncio.sleep(0.01)
    assert manager.state.reconnecting is True

    await manager.close()

    assert manager.state.is_shutting_down is True
    with pytest.raises(asyncio.CancelledError):
        await task


def test_state_status_values():
    state = ResilienceState()
    assert state.status == "disconnected"
    state.last_error = "boom"
    assert state.status == "error"
    state.reconnecting = True
    assert state.status == "reconnecting"
    state.connected = True
    assert state.status == "connected"
    state.is_shutting_down = True
    assert state.status == "shutting_down"
