"""Rate limiting primitives.

``TokenBucket`` paces outbound SMS to the carrier compliance rate. Callers
that find the bucket empty wait their turn in arrival order; nobody is
dropped. ``SendOrder`` keeps bulk runs entering that queue in
submission order. ``SlidingWindowLimiter`` enforces per-owner request
quotas at the HTTP boundary and rejects callers over quota with a retry-after hint.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

# Float slack when comparing refilled tokens against a whole token.
_EPSILON = 1e-9


class TokenBucket:
    """Token bucket with FIFO waiting.

    Consumption and refill both happen while holding one ``asyncio.Lock``;
    a caller that must wait for a token sleeps while still holding it, so
    later callers queue behind it in arrival order.
    """

    def __init__(
        self,
        rate: float,
        capacity: int = 1,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._updated = now

    async def acquire(self) -> float:
        """Take one token, waiting as long as needed. Returns seconds waited."""

        async with self._lock:
            started = self._clock()
            self._refill()
            while self._tokens < 1.0 - _EPSILON:
                await self._sleep((1.0 - self._tokens) / self.rate)
                self._refill()
            self._tokens = max(0.0, self._tokens - 1.0)
            waited = self._clock() - started
        if waited > 0:
            logger.debug("Rate limiter delayed send", extra={"waited_seconds": round(waited, 3)})
        return waited


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class SlidingWindowLimiter:
    """In-process sliding-window counter keyed by ``(rule, key)``.

    Each accepted request is recorded with its timestamp; entries older than
    the rule's window are discarded before counting.
    """

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._hits: dict[tuple[str, str], deque[float]] = {}

    def check(self, rule: RateLimitRule, key: str) -> RateLimitDecision:
        now = self._clock()
        hits = self._hits.setdefault((rule.name, key), deque())
        window_start = now - rule.window_seconds
        while hits and hits[0] <= window_start:
            hits.popleft()

        if len(hits) >= rule.limit:
            retry_after = max(1, math.ceil(hits[0] + rule.window_seconds - now))
            return RateLimitDecision(False, rule.limit, 0, retry_after)

        hits.append(now)
        return RateLimitDecision(True, rule.limit, rule.limit - len(hits))

    def reset(self) -> None:
        self._hits.clear()


class SendOrder:
    """Admits bulk items to the SMS bucket in submission order.

    Every participating index waits for its turn before taking its first
    token and releases the turn once the token is granted. Released indices
    are skipped, so an item that never sends must still call ``release``.
    """

    def __init__(self, indices: Iterable[int]) -> None:
        self._order = deque(sorted(set(indices)))
        self._ready = {index: asyncio.Event() for index in self._order}
        self._released: set[int] = set()
        self._advance()

    def _advance(self) -> None:
        while self._order and self._order[0] in self._released:
            self._order.popleft()
        if self._order:
            self._ready[self._order[0]].set()

    async def wait_turn(self, index: int) -> None:
        ready = self._ready.get(index)
        if ready is not None and index not in self._released:
            await ready.wait()

    def release(self, index: int) -> None:
        if index not in self._ready or index in self._released:
            return
        self._released.add(index)
        self._advance()

    @asynccontextmanager
    async def turn(self, index: int) -> AsyncIterator[None]:
        await self.wait_turn(index)
        try:
            yield
        finally:
            self.release(index)
