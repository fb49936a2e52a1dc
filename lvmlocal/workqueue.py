"""Rate limiters and a de-duplicating, rate-limited work queue for controllers."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Delay of base_delay * 2**failures per item, capped at max_delay (seconds)."""

    def __init__(self, base_delay: float, max_delay: float) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        try:
            backoff = self.base_delay * 2**exponent
        except OverflowError:
            return self.max_delay
        return min(backoff, self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class ItemFastSlowRateLimiter:
    """Retry quickly for a number of attempts, then slowly."""

    def __init__(self, fast_delay: float, slow_delay: float, max_fast_attempts: int) -> None:
        self.fast_delay = fast_delay
        self.slow_delay = slow_delay
        self.max_fast_attempts = max_fast_attempts
        self._attempts: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            attempts = self._attempts.get(item, 0) + 1
            self._attempts[item] = attempts
        return self.fast_delay if attempts <= self.max_fast_attempts else self.slow_delay

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._attempts.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._attempts.get(item, 0)


class _BucketRateLimiter:
    """Overall token bucket: qps tokens per second, holding at most burst."""

    def __init__(
        self, qps: float, burst: int, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        pass

    def num_requeues(self, item: Hashable) -> int:
        return 0


class _MaxOfRateLimiter:
    """Uses the longest delay of several limiters."""

    def __init__(self, *limiters: RateLimiter) -> None:
        self._limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self._limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self._limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self._limiters)


def default_controller_rate_limiter() -> RateLimiter:
    """Per-item exponential backoff combined with an overall token bucket."""
    return _MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(0.005, 1000.0),
        _BucketRateLimiter(10.0, 100),
    )


class ShutDown(Exception):
    """Raised by RateLimitingQueue.get once the queue is shut down and drained."""


class RateLimitingQueue:
    """Work queue that never hands out an item twice at the same time.

    An item added while it is being processed is queued again once done()
    is called for it.
    """

    def __init__(self, rate_limiter: RateLimiter | None = None, name: str = "") -> None:
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self.name = name
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._cond = threading.Condition()
        self._shutting_down = False
        self._timers: set[threading.Timer] = set()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> Hashable:
        """Return the next item; raise ShutDown, or TimeoutError after timeout."""
        with self._cond:
            ready = self._cond.wait_for(
                lambda: bool(self._queue) or self._shutting_down, timeout
            )
            if not ready:
                raise TimeoutError(f"no item in queue {self.name!r} within {timeout}s")
            if not self._queue:
                raise ShutDown(self.name)
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def add_after(self, item: Hashable, delay: float) -> None:
        with self._cond:
            if self._shutting_down:
                return
        if delay <= 0:
            self.add(item)
            return

        def _fire() -> None:
            with self._cond:
                self._timers.discard(timer)
            self.add(item)

        timer = threading.Timer(delay, _fire)
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return
            self._timers.add(timer)
        timer.start()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a 'namespace/name' key; a key without '/' has no namespace."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")