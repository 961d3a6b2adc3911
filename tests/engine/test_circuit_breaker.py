"""Tests for the dispatch CircuitBreaker (session_guard.engine.circuit_breaker)."""

from __future__ import annotations

import time

from structlog.testing import capture_logs

from session_guard.engine import CircuitBreaker


def make_breaker(threshold: int = 3, cooldown: float = 60.0) -> CircuitBreaker:
    return CircuitBreaker(threshold=threshold, cooldown_seconds=cooldown)


def trip(cb: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        cb.record_failure()


class TestClosedBreaker:
    def test_fresh_breaker_is_closed(self):
        cb = make_breaker()
        assert cb.is_open is False
        assert cb.consecutive_failures == 0
        assert cb.open_at is None

    def test_failures_below_threshold_keep_it_closed(self):
        cb = make_breaker(threshold=3)
        trip(cb, 2)
        assert cb.is_open is False
        assert cb.consecutive_failures == 2

    def test_success_restarts_the_count(self):
        cb = make_breaker(threshold=3)
        trip(cb, 2)
        cb.record_success()
        cb.record_failure()
        assert cb.is_open is False
        assert cb.consecutive_failures == 1


class TestOpenBreaker:
    def test_opens_at_threshold(self):
        cb = make_breaker(threshold=3)
        trip(cb, 3)
        assert cb.is_open is True
        assert cb.open_at is not None

    def test_further_failures_keep_first_open_timestamp(self):
        cb = make_breaker(threshold=2)
        trip(cb, 2)
        opened = cb.open_at
        cb.record_failure()
        assert cb.open_at == opened
        assert cb.consecutive_failures == 3

    def test_success_while_open_does_not_close(self):
        cb = make_breaker(threshold=1)
        cb.record_failure()
        cb.record_success()
        assert cb.consecutive_failures == 0
        assert cb.is_open is True

    def test_opening_is_logged_once(self):
        cb = make_breaker(threshold=2, cooldown=30.0)
        with capture_logs() as logs:
            trip(cb, 4)
        opened = [e for e in logs if e["event"] == "Circuit breaker opened"]
        assert len(opened) == 1
        assert opened[0]["log_level"] == "error"
        assert opened[0]["consecutive_failures"] == 2
        assert opened[0]["cooldown_seconds"] == 30.0


class TestCooldown:
    def test_zero_cooldown_closes_on_next_check(self):
        cb = make_breaker(threshold=1, cooldown=0.0)
        cb.record_failure()
        assert cb.is_open is False
        assert cb.open_at is None
        assert cb.consecutive_failures == 0

    def test_closes_once_cooldown_has_elapsed(self):
        cb = make_breaker(threshold=1, cooldown=60.0)
        cb.record_failure()
        cb._open_at = time.time() - 61
        with capture_logs() as logs:
            assert cb.is_open is False
        assert any(e["event"] == "Circuit breaker reset, resuming dispatch" for e in logs)

    def test_can_trip_again_after_reset(self):
        cb = make_breaker(threshold=1, cooldown=60.0)
        cb.record_failure()
        cb._open_at = time.time() - 61
        assert cb.is_open is False
        cb.record_failure()
        assert cb.is_open is True
