from __future__ import annotations

import pytest

from destaker.services.rate_limit import RateLimitPolicy


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_one_call_at_a_time() -> None:
    assert RateLimitPolicy().max_concurrent == 1


@pytest.mark.asyncio
async def test_first_acquire_does_not_wait(sleeper) -> None:
    policy = RateLimitPolicy(min_interval=1.0, sleep=sleeper, clock=FakeClock())
    await policy.acquire()
    assert sleeper.calls == []


@pytest.mark.asyncio
async def test_acquire_waits_out_the_remaining_interval(sleeper) -> None:
    clock = FakeClock()
    policy = RateLimitPolicy(min_interval=1.0, sleep=sleeper, clock=clock)

    await policy.acquire()
    clock.now += 0.25
    await policy.acquire()

    assert sleeper.calls == [pytest.approx(0.75)]


@pytest.mark.asyncio
async def test_no_wait_once_interval_has_passed(sleeper) -> None:
    clock = FakeClock()
    policy = RateLimitPolicy(min_interval=1.0, sleep=sleeper, clock=clock)

    await policy.acquire()
    clock.now += 3
    await policy.acquire()

    assert sleeper.calls == []


@pytest.mark.asyncio
async def test_backoff_grows_and_is_capped(sleeper) -> None:
    policy = RateLimitPolicy(backoff=5, multiplier=2, max_backoff=30, sleep=sleeper)

    delays = [await policy.record_rate_limited() for _ in range(4)]

    assert delays == [5, 10, 20, 30]
    assert sleeper.calls == [5, 10, 20, 30]


@pytest.mark.asyncio
async def test_success_resets_backoff(sleeper) -> None:
    policy = RateLimitPolicy(backoff=5, multiplier=2, sleep=sleeper)

    await policy.record_rate_limited()
    await policy.record_rate_limited()
    policy.record_success()

    assert policy.next_backoff() == 5


@pytest.mark.asyncio
async def test_zero_backoff_never_sleeps(sleeper) -> None:
    policy = RateLimitPolicy(min_interval=0, backoff=0, sleep=sleeper)
    assert await policy.record_rate_limited() == 0
    assert sleeper.calls == []
