"""De-duplicating, rate-limited, delayable work queue.

Holds ``namespace/name`` keys awaiting reconciliation.  Guarantees:

- a key is queued at most once, however often it is added while pending
- a key handed out by ``get()`` is *in flight* until ``done()``; adding it
  again meanwhile marks it dirty and it is re-queued on ``done()``, so two
  workers never process the same key at the same time
- distinct keys are handed out in FIFO order to any number of workers

Delayed adds (``add_after``/``add_rate_limited``) sit in a heap and are
promoted by ``get()`` once due.  All state is guarded by one condition
variable.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from ndb_operator.workqueue.ratelimit import RateLimiter, default_controller_rate_limiter

logger = logging.getLogger(__name__)


class WorkQueue:
    """Rate-limiting delaying queue of resource keys."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "",
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._name = name
        self._clock = _clock or time.monotonic
        self._rate_limiter = rate_limiter or default_controller_rate_limiter(_clock=self._clock)
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: dict[str, float] = {}
        self._heap: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._shutting_down = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        """Number of keys ready to be handed out (excludes delayed keys)."""
        with self._cond:
            return len(self._queue)

    def waiting_count(self) -> int:
        """Number of keys scheduled for a delayed add."""
        with self._cond:
            return len(self._waiting)

    def add(self, key: str) -> None:
        """Queue *key* unless it is already pending."""
        with self._cond:
            self._add_locked(key)

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available.

        Returns ``(key, False)``, or ``(None, True)`` once the queue is shut
        down and empty.  The key stays in flight until ``done(key)``.
        """
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._queue:
                    break
                if self._shutting_down:
                    return None, True
                self._cond.wait(timeout=self._next_wait_locked())

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key, False

    def done(self, key: str) -> None:
        """Release the in-flight mark; re-queue if *key* was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def forget(self, key: str) -> None:
        """Clear backoff state for *key* after a successful pass."""
        self._rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self._rate_limiter.num_requeues(key)

    def add_rate_limited(self, key: str) -> None:
        """Re-queue *key* after its backoff delay (call after a failed pass)."""
        self.add_after(key, self._rate_limiter.when(key))

    def add_after(self, key: str, delay: float) -> None:
        """Queue *key* once *delay* seconds have passed.

        An earlier pending schedule for the same key wins over a later one.
        """
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(key)
                return

            ready_at = self._clock() + delay
            existing = self._waiting.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._waiting[key] = ready_at
            heapq.heappush(self._heap, (ready_at, next(self._seq), key))
            # Wake a blocked get() so it recomputes its wait timeout.
            self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting keys and release every blocked ``get()``."""
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._heap.clear()
            self._cond.notify_all()
        logger.info("Work queue %r shut down", self._name)

    # --- Private ---

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_due_locked(self) -> None:
        if self._shutting_down:
            return
        now = self._clock()
        while self._heap and self._heap[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._heap)
            # Superseded by an earlier schedule for the same key.
            if self._waiting.get(key) != ready_at:
                continue
            del self._waiting[key]
            self._add_locked(key)

    def _next_wait_locked(self) -> float | None:
        if not self._heap:
            return None
        return max(0.0, self._heap[0][0] - self._clock())
