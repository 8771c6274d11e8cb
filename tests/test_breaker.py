from __future__ import annotations

from hybrid_tryon.app.breaker import CircuitBreaker


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_breaker_stays_closed_below_threshold():
    clock = FakeClock()
    breaker = CircuitBreaker(threshold=3, cooldown_seconds=60, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    assert breaker.should_skip() is False


def test_breaker_opens_at_threshold_and_closes_after_cooldown():
    clock = FakeClock()
    breaker = CircuitBreaker(threshold=3, cooldown_seconds=60, clock=clock)
    for _ in range(3):
        breaker.record_failure()
    assert breaker.should_skip() is True

    clock.now += 59
    assert breaker.should_skip() is True
    clock.now += 1
    assert breaker.should_skip() is False


def test_success_resets_failure_count():
    clock = FakeClock()
    breaker = CircuitBreaker(threshold=2, cooldown_seconds=60, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    assert breaker.consecutive_failures == 0
    assert breaker.should_skip() is False


def test_failure_after_cooldown_reopens_immediately():
    clock = FakeClock()
    breaker = CircuitBreaker(threshold=2, cooldown_seconds=60, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    clock.now += 120
    assert breaker.should_skip() is False
    breaker.record_failure()
    assert breaker.should_skip() is True


def test_snapshot_reports_state():
    clock = FakeClock(5.0)
    breaker = CircuitBreaker(threshold=1, cooldown_seconds=10, clock=clock)
    breaker.record_failure()
    state = breaker.snapshot()
    assert state.consecutive_failures == 1
    assert state.last_attempt_at == 5.0
    assert state.open is True
