import pytest

from email_queue_worker.rate_limit import JobRateLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_rate_limiter_defer():
    clock = FakeClock()
    limiter = JobRateLimiter(2, 1000, clock=clock)
    assert limiter.check_and_plan() == 0
    limiter.log_start()
    limiter.log_start()
    assert limiter.check_and_plan() == pytest.approx(1.0)
    assert limiter.used == 2


def test_rate_limiter_window_slides():
    clock = FakeClock()
    limiter = JobRateLimiter(2, 1000, clock=clock)
    limiter.log_start()
    clock.now += 0.6
    limiter.log_start()

    clock.now += 0.5
    assert limiter.check_and_plan() == 0
    assert limiter.used == 1


def test_rate_limiter_ignores_zero_limit():
    limiter = JobRateLimiter(0, 1000)
    for _ in range(100):
        limiter.log_start()
    assert limiter.check_and_plan() == 0
    assert limiter.used == 0


def test_planned_delay_shrinks_with_time():
    clock = FakeClock()
    limiter = JobRateLimiter(1, 500, clock=clock)
    limiter.log_start()

    clock.now += 0.2
    assert limiter.check_and_plan() == pytest.approx(0.3)
    clock.now += 0.3
    assert limiter.check_and_plan() == 0
    assert limiter.used == 0
