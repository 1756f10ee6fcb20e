from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from codeserver.src.metrics import METRICS
from codeserver.src.models import ReconcileRequest


class WorkQueue:
    """Per-key deduplicating work queue for reconcile requests.

    A key is in at most one of three places at any instant:

    ``_queue``
        Ready to be handed to a worker.
    ``_processing``
        Owned by exactly one worker until :meth:`done` is called.
    ``_waiting``
        Scheduled for a delayed add (requeue-after or backoff).

    ``_pending`` holds the merged request for every key that is queued or that
    received new events while in flight. Events for an in-flight key are
    coalesced into that single pending entry and re-queued by :meth:`done`, so
    two workers never hold the same key and no key is queued twice.

    Failed keys are re-added with bounded exponential backoff via
    :meth:`add_rate_limited`; :meth:`forget` resets the attempt counter.
    """

    def __init__(
        self,
        base_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._pending: dict[str, ReconcileRequest] = {}
        self._processing: set[str] = set()
        self._waiting: dict[str, tuple[float, ReconcileRequest]] = {}
        self._waiting_heap: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._failures: dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, request: ReconcileRequest) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(request)

    def _absorb_waiting_locked(self, key: str) -> None:
        """Fold a delayed add for *key* into its pending request.

        The delayed request is older, so only its probe count can survive,
        and only when the pending request carries none.
        """
        entry = self._waiting.pop(key, None)
        if entry is not None:
            self._pending[key] = entry[1].merge(self._pending[key])

    def _add_locked(self, request: ReconcileRequest) -> None:
        key = request.key
        existing = self._pending.get(key)
        self._pending[key] = existing.merge(request) if existing is not None else request
        if existing is not None or key in self._processing:
            return
        # An immediate add supersedes any delayed add for the same key.
        self._absorb_waiting_locked(key)
        self._queue.append(key)
        METRICS.workqueue_depth.set(len(self._queue))
        self._cond.notify()

    def add_after(self, request: ReconcileRequest, delay_seconds: float) -> None:
        """Add *request* once *delay_seconds* have elapsed.

        When the key is already waiting, the earlier due time is kept.
        """
        if delay_seconds <= 0:
            self.add(request)
            return
        with self._cond:
            if self._shutting_down:
                return
            key = request.key
            due_at = self._clock() + delay_seconds
            existing = self._waiting.get(key)
            if existing is not None:
                existing_due, existing_request = existing
                merged = existing_request.merge(request)
                if existing_due <= due_at:
                    self._waiting[key] = (existing_due, merged)
                    return
                request = merged
            self._waiting[key] = (due_at, request)
            heapq.heappush(self._waiting_heap, (due_at, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, request: ReconcileRequest) -> float:
        """Re-add *request* after an exponential backoff and return the delay used."""
        with self._cond:
            attempt = self._failures.get(request.key, 0) + 1
            self._failures[request.key] = attempt
        delay = min(
            self.max_backoff_seconds,
            self.base_backoff_seconds * float(2 ** (attempt - 1)),
        )
        METRICS.workqueue_retries_total.inc()
        self.add_after(request, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed adds into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting_heap:
            due_at, _, key = self._waiting_heap[0]
            entry = self._waiting.get(key)
            if entry is None or entry[0] != due_at:
                heapq.heappop(self._waiting_heap)
                continue
            if due_at > now:
                return due_at - now
            heapq.heappop(self._waiting_heap)
            del self._waiting[key]
            self._add_locked(entry[1])
        return None

    def get(self, timeout: float | None = None) -> ReconcileRequest | None:
        """Block until a key is ready and hand it to the caller exclusively.

        Returns ``None`` on timeout or once the queue is shutting down; no new
        work is handed out after :meth:`shut_down` even if keys remain queued.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    METRICS.workqueue_depth.set(len(self._queue))
                    return self._pending.pop(key)

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: str) -> None:
        """Release *key*; re-queue it if events arrived while it was in flight."""
        with self._cond:
            self._processing.discard(key)
            if key in self._pending and not self._shutting_down:
                self._absorb_waiting_locked(key)
                self._queue.append(key)
                METRICS.workqueue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def in_flight(self) -> frozenset[str]:
        with self._cond:
            return frozenset(self._processing)
