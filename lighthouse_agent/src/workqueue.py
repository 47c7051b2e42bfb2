from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

from lighthouse_agent.src.metrics import METRICS


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay < 0 or max_delay < 0:
            raise ValueError("rate limiter delays must be >= 0")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # 2**63 seconds of backoff is already far beyond any sane cap.
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Token bucket shared by all items; bounds the overall retry rate.

    ``when`` reserves one token and returns how long the caller must wait for
    it, so bursts beyond ``burst`` are spread out at ``qps``.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        return None

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters, returning the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter() -> MaxOfRateLimiter:
    """Per-item exponential backoff (5ms to 1000s) bounded by a 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class RateLimitingQueue:
    """De-duplicating work queue with delayed and rate-limited adds.

    Semantics follow the Kubernetes controller work queue:

    * A key added several times before it is handed out is queued once
      (``_dirty`` tracks keys waiting to be processed).
    * A key handed out by :meth:`get` stays in ``_processing`` until
      :meth:`done` is called.  Adds that arrive meanwhile only mark it dirty;
      ``done`` re-queues it.  No two callers of ``get`` ever hold the same key
      at the same time, however many worker threads there are.
    * :meth:`add_after` parks keys in a heap drained by a background thread;
      a key already waiting keeps the earlier of its ready times.
    * After :meth:`shut_down`, ``get`` keeps returning queued keys and reports
      shutdown once the queue is empty.  New adds are ignored.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "",
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False
        self._cond = threading.Condition()

        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_ready_at: dict[Hashable, float] = {}
        self._waiting_stopped = False
        self._waiting_cond = threading.Condition()
        self._sequence = itertools.count()
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop,
            name=f"workqueue-{name or 'anonymous'}-delay",
            daemon=True,
        )
        self._waiting_thread.start()

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            METRICS.queue_adds_total.labels(name=self.name).inc()
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            METRICS.queue_depth.labels(name=self.name).set(len(self._queue))
            self._cond.notify()

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until a key is available; returns ``(key, shutting_down)``."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True

            item = self._queue.popleft()
            METRICS.queue_depth.labels(name=self.name).set(len(self._queue))
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                METRICS.queue_depth.labels(name=self.name).set(len(self._queue))
                self._cond.notify()

    def len(self) -> int:
        with self._cond:
            return len(self._queue)

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._waiting_cond:
            self._waiting_stopped = True
            self._waiting_cond.notify_all()

    def add_after(self, item: Hashable, delay_seconds: float) -> None:
        if self.shutting_down():
            return
        if delay_seconds <= 0:
            self.add(item)
            return

        ready_at = time.monotonic() + delay_seconds
        with self._waiting_cond:
            existing = self._waiting_ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._waiting_cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        METRICS.queue_retries_total.labels(name=self.name).inc()
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def waiting_len(self) -> int:
        """Number of keys parked for a delayed add."""
        with self._waiting_cond:
            return len(self._waiting_ready_at)

    def _waiting_loop(self) -> None:
        while True:
            with self._waiting_cond:
                while True:
                    if self._waiting_stopped:
                        return
                    now = time.monotonic()
                    ready: list[Hashable] = []
                    while self._waiting and self._waiting[0][0] <= now:
                        ready_at, _, item = heapq.heappop(self._waiting)
                        # Superseded entries left behind by an earlier ready time.
                        if self._waiting_ready_at.get(item) == ready_at:
                            del self._waiting_ready_at[item]
                            ready.append(item)
                    if ready:
                        break
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._waiting_cond.wait(timeout=timeout)

            for item in ready:
                self.add(item)
