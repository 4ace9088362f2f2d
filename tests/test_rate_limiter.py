from __future__ import annotations

import asyncio

import pytest

from contacthub.services.rate_limiter import RateLimitRule, SendOrder, SlidingWindowLimiter, TokenBucket


@pytest.mark.anyio("asyncio")
async def test_token_bucket_paces_sends_at_one_per_second(timer) -> None:
    bucket = TokenBucket(1.0, 1, clock=timer.monotonic, sleep=timer.sleep)
    dispatched: list[float] = []

    async def send() -> None:
        await bucket.acquire()
        dispatched.append(timer.now)

    await asyncio.gather(*(send() for _ in range(100)))

    assert len(dispatched) == 100
    assert dispatched[-1] - dispatched[0] >= 99 - 1e-6
    for start in dispatched:
        window = [moment for moment in dispatched if start <= moment < start + 10]
        assert len(window) <= 10


@pytest.mark.anyio("asyncio")
async def test_token_bucket_serves_waiters_in_arrival_order(timer) -> None:
    bucket = TokenBucket(1.0, 1, clock=timer.monotonic, sleep=timer.sleep)
    order: list[int] = []

    async def send(position: int) -> None:
        await bucket.acquire()
        order.append(position)

    await asyncio.gather(*(send(position) for position in range(20)))

    assert order == list(range(20))


@pytest.mark.anyio("asyncio")
async def test_send_order_admits_late_arrivals_in_submission_order(timer) -> None:
    bucket = TokenBucket(1.0, 1, clock=timer.monotonic, sleep=timer.sleep)
    gate = SendOrder(range(6))
    sent: list[tuple[int, float]] = []

    async def send(index: int) -> None:
        # Later items reach the gate first.
        for _ in range(12 - 2 * index):
            await asyncio.sleep(0)
        if index == 2:
            gate.release(index)
            return
        async with gate.turn(index):
            await bucket.acquire()
        sent.append((index, timer.now))

    await asyncio.gather(*(send(index) for index in range(6)))

    assert [index for index, _ in sent] == [0, 1, 3, 4, 5]
    assert [moment for _, moment in sent] == [0.0, 1.0, 2.0, 3.0, 4.0]


@pytest.mark.anyio("asyncio")
async def test_send_order_ignores_unknown_and_repeated_releases() -> None:
    gate = SendOrder([3, 1])
    gate.release(1)
    gate.release(1)
    gate.release(7)

    await asyncio.wait_for(gate.wait_turn(3), timeout=1)
    await asyncio.wait_for(gate.wait_turn(7), timeout=1)


@pytest.mark.anyio("asyncio")
async def test_token_bucket_does_not_wait_when_tokens_are_available(timer) -> None:
    bucket = TokenBucket(1.0, 3, clock=timer.monotonic, sleep=timer.sleep)

    waits = [await bucket.acquire() for _ in range(3)]

    assert waits == [0.0, 0.0, 0.0]
    assert timer.sleeps == []
    assert await bucket.acquire() == pytest.approx(1.0)


def test_token_bucket_rejects_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        TokenBucket(0)
    with pytest.raises(ValueError):
        TokenBucket(1.0, 0)


def test_sliding_window_rejects_with_retry_after() -> None:
    now = [0.0]
    limiter = SlidingWindowLimiter(clock=lambda: now[0])
    rule = RateLimitRule("bulk", limit=2, window_seconds=60)

    assert limiter.check(rule, "owner").allowed
    now[0] = 10.0
    assert limiter.check(rule, "owner").remaining == 0
    rejected = limiter.check(rule, "owner")
    assert not rejected.allowed
    assert rejected.retry_after == 50
    assert limiter.check(rule, "someone-else").allowed

    now[0] = 60.5
    assert limiter.check(rule, "owner").allowed
