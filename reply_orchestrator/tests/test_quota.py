"""Quota controller: daily ceiling, sliding window, pacing delays."""

from __future__ import annotations

import random
import threading

import pytest

from conftest import MONDAY_NOON, TZ_NAME, FakeClock
from reply_orchestrator.services.quota import QuotaController


def _controller(clock: FakeClock, **kwargs) -> QuotaController:
    kwargs.setdefault("daily_limit", 200)
    kwargs.setdefault("per_minute_limit", 15)
    return QuotaController(clock=clock, tz=TZ_NAME, rng=random.Random(7), **kwargs)


class TestTryAcquire:

    def test_per_minute_ceiling(self, clock: FakeClock) -> None:
        quota = _controller(clock, per_minute_limit=3)
        assert all(quota.try_acquire().allowed for _ in range(3))
        denied = quota.try_acquire()
        assert not denied.allowed
        assert denied.reason == "Rate limit (3/min)"

    def test_window_slides(self, clock: FakeClock) -> None:
        quota = _controller(clock, per_minute_limit=2)
        quota.try_acquire()
        clock.advance(30)
        quota.try_acquire()
        assert not quota.try_acquire().allowed
        clock.advance(31)  # first acquisition is now outside the window
        assert quota.try_acquire().allowed

    def test_daily_ceiling(self, clock: FakeClock) -> None:
        quota = _controller(clock, daily_limit=2, per_minute_limit=100)
        quota.try_acquire()
        quota.try_acquire()
        denied = quota.try_acquire()
        assert not denied.allowed
        assert denied.reason == "Daily limit (2)"
        assert quota.snapshot()["daily_count"] == 2

    def test_daily_count_resets_on_new_local_day(self, clock: FakeClock) -> None:
        quota = _controller(clock, daily_limit=1)
        assert quota.try_acquire().allowed
        assert not quota.try_acquire().allowed
        clock.advance(12 * 3600 + 60)  # just past owner-local midnight
        assert quota.try_acquire().allowed
        assert quota.snapshot()["daily_count"] == 1

    def test_denied_acquisition_is_not_counted(self, clock: FakeClock) -> None:
        quota = _controller(clock, per_minute_limit=1)
        quota.try_acquire()
        quota.try_acquire()
        assert quota.snapshot()["daily_count"] == 1

    def test_concurrent_arrivals_never_over_admit(self, clock: FakeClock) -> None:
        quota = _controller(clock, per_minute_limit=5, daily_limit=1000)
        results: list[bool] = []
        lock = threading.Lock()

        def worker() -> None:
            for _ in range(10):
                ok = quota.try_acquire().allowed
                with lock:
                    results.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 5

    @pytest.mark.parametrize("seed", range(25))
    def test_window_never_exceeds_ceiling_for_random_arrivals(self, seed: int) -> None:
        rng = random.Random(seed)
        clock = FakeClock(MONDAY_NOON.timestamp())
        limit = rng.randint(1, 10)
        quota = _controller(clock, per_minute_limit=limit, daily_limit=10_000)

        admitted: list[float] = []
        for _ in range(300):
            clock.advance(rng.expovariate(1 / 4.0))
            if quota.try_acquire().allowed:
                admitted.append(clock.now)

        for i, start in enumerate(admitted):
            in_window = [t for t in admitted[i:] if t < start + 60]
            assert len(in_window) <= limit


class TestComputeDelay:

    @pytest.mark.parametrize("seed", range(10))
    def test_full_delay_bounds(self, seed: int, clock: FakeClock) -> None:
        quota = QuotaController(clock=clock, tz=TZ_NAME, rng=random.Random(seed), min_delay=15, max_delay=180)
        for length in (0, 20, 400, 5000):
            delay = quota.compute_delay(length)
            assert 15 <= delay <= 180

    def test_long_reply_is_capped(self, clock: FakeClock) -> None:
        quota = QuotaController(clock=clock, tz=TZ_NAME, rng=random.Random(1), min_delay=15, max_delay=180)
        assert quota.compute_delay(100_000) == 180

    def test_typing_time_adds_to_base(self, clock: FakeClock) -> None:
        quota = QuotaController(
            clock=clock,
            tz=TZ_NAME,
            rng=random.Random(3),
            min_delay=10,
            max_delay=10_000,
            typing_seconds_per_char=1.0,
        )
        # 100 chars at >= 0.5 s/char on top of a base of at least 10 s
        assert quota.compute_delay(100) >= 60

    @pytest.mark.parametrize("seed", range(10))
    def test_ack_delay_is_short(self, seed: int, clock: FakeClock) -> None:
        quota = QuotaController(clock=clock, tz=TZ_NAME, rng=random.Random(seed), ack_delay_range=(3, 8))
        assert 3 <= quota.compute_delay(2, ack=True) <= 8


def test_snapshot_reports_counts(clock: FakeClock) -> None:
    quota = _controller(clock)
    quota.try_acquire()
    snap = quota.snapshot()
    assert snap["daily_count"] == 1
    assert snap["recent_requests"] == 1
    assert snap["per_minute_limit"] == 15
