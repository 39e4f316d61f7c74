from __future__ import annotations

import pytest

from common.rate_limiter import FixedWindowRateLimiter


class FakeClock:
    def __init__(self, t: float = 1_000.0) -> None:
        self.t = t

    def __call__(self) -> float:  # acts like time.time
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


def test_first_check_opens_window():
    clock = FakeClock()
    rl = FixedWindowRateLimiter(max_requests=3, window_seconds=3600.0, clock=clock)

    d = rl.check("249912345678")
    assert d.allowed is True
    assert d.remaining == 2
    assert d.reset_at == 1_000.0 + 3600.0


def test_cap_plus_one_is_rejected_with_unchanged_reset():
    clock = FakeClock()
    rl = FixedWindowRateLimiter(max_requests=3, window_seconds=3600.0, clock=clock)

    decisions = []
    for _ in range(3):
        decisions.append(rl.check("a"))
        clock.advance(10.0)
    assert [d.allowed for d in decisions] == [True, True, True]
    assert [d.remaining for d in decisions] == [2, 1, 0]
    first_reset = decisions[0].reset_at
    assert all(d.reset_at == first_reset for d in decisions)

    denied = rl.check("a")
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.reset_at == first_reset

    # Still denied right up to the boundary
    clock.t = first_reset
    assert rl.check("a").allowed is False


def test_window_resets_after_reset_at():
    clock = FakeClock()
    rl = FixedWindowRateLimiter(max_requests=2, window_seconds=60.0, clock=clock)

    rl.check("a")
    rl.check("a")
    assert rl.check("a").allowed is False

    clock.advance(60.5)
    again = rl.check("a")
    assert again.allowed is True
    assert again.remaining == 1  # count restarted at 1
    assert again.reset_at == clock.t + 60.0


def test_keys_are_independent():
    clock = FakeClock()
    rl = FixedWindowRateLimiter(max_requests=1, window_seconds=60.0, clock=clock)

    assert rl.check("a").allowed is True
    assert rl.check("a").allowed is False
    assert rl.check("b").allowed is True


def test_sweep_drops_expired_windows():
    clock = FakeClock()
    rl = FixedWindowRateLimiter(max_requests=3, window_seconds=60.0, clock=clock)

    rl.check("a")
    clock.advance(30.0)
    rl.check("b")
    assert len(rl) == 2

    clock.advance(31.0)  # "a" expired, "b" still active
    assert rl.sweep() == 1
    assert len(rl) == 1
    assert rl.peek("b") is not None
    assert rl.peek("a") is None


def test_periodic_sweep_runs_on_check():
    clock = FakeClock()
    rl = FixedWindowRateLimiter(max_requests=3, window_seconds=60.0, clock=clock)

    for key in ("a", "b", "c"):
        rl.check(key)
    clock.advance(61.0)
    rl.check("d")  # a sweep is due; expired windows go away
    assert len(rl) == 1


def test_peek_does_not_count():
    clock = FakeClock()
    rl = FixedWindowRateLimiter(max_requests=2, window_seconds=60.0, clock=clock)

    rl.check("a")
    for _ in range(5):
        p = rl.peek("a")
        assert p is not None and p.remaining == 1
    assert rl.check("a").allowed is True


@pytest.mark.parametrize("kwargs", [{"max_requests": 0}, {"window_seconds": 0}])
def test_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(**kwargs)
