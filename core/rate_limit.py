from __future__ import annotations

import asyncio
import sys
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Optional


@dataclass
class WindowPolicy:
    max_requests: int
    window_seconds: float = 60.0


class SlidingWindowRateLimiter:
    """Admits at most ``max_requests`` acquisitions in any rolling window.

    Acquisitions are serialized behind one lock: the caller holding the lock
    evicts expired reservations, reserves a slot if one is free, and otherwise
    sleeps until the oldest reservation leaves the window before re-checking.
    """

    def __init__(
        self,
        policy: WindowPolicy,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        label: str = "",
    ) -> None:
        if policy.max_requests < 1:
            raise ValueError(f"max_requests must be >= 1 (got {policy.max_requests})")
        if policy.window_seconds <= 0:
            raise ValueError(f"window_seconds must be > 0 (got {policy.window_seconds})")
        self.policy = policy
        self.label = label
        self._clock = clock
        self._sleep = sleep
        self._reservations: Deque[float] = deque()
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def _loop_lock(self) -> asyncio.Lock:
        # asyncio.Lock binds to the loop it first waits on; each asyncio.run gets its own.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _evict(self, now: float) -> None:
        horizon = now - self.policy.window_seconds
        while self._reservations and self._reservations[0] <= horizon:
            self._reservations.popleft()

    def in_window(self) -> int:
        self._evict(self._clock())
        return len(self._reservations)

    async def acquire(self) -> float:
        async with self._loop_lock():
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._reservations) < self.policy.max_requests:
                    self._reservations.append(now)
                    return now
                wait_seconds = self._reservations[0] + self.policy.window_seconds - now
                print(
                    f"[rate-limit] {self.label or 'limiter'}: sleeping {wait_seconds:.1f}s "
                    f"(~{self.policy.max_requests} req / {self.policy.window_seconds:.0f}s)",
                    file=sys.stderr,
                )
                await self._sleep(wait_seconds)


class RateLimiterRegistry:
    def __init__(self) -> None:
        self._limits: Dict[str, WindowPolicy] = {}
        self._limiters: Dict[str, SlidingWindowRateLimiter] = {}

    def register(self, name: str, max_requests: int, window_seconds: float = 60.0) -> None:
        policy = WindowPolicy(max_requests=max_requests, window_seconds=window_seconds)
        if self._limits.get(name) != policy:
            self._limiters.pop(name, None)
        self._limits[name] = policy

    def get(self, name: str) -> Optional[SlidingWindowRateLimiter]:
        limit = self._limits.get(name)
        if not limit:
            return None
        limiter = self._limiters.get(name)
        if not limiter:
            limiter = SlidingWindowRateLimiter(limit, label=name)
            self._limiters[name] = limiter
        return limiter


rate_limiter_registry = RateLimiterRegistry()
