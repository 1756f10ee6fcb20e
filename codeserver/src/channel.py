from __future__ import annotations

import logging
import queue
import threading

from codeserver.src.metrics import METRICS
from codeserver.src.models import ReconcileRequest
from codeserver.src.workqueue import WorkQueue

REQUEST_CHANNEL_SIZE = 10

LOGGER = logging.getLogger(__name__)


class RequestChannel:
    """Bounded hand-off between the watcher and the dispatcher.

    Sends never block: when the channel is full the request is dropped and the
    caller is told so. The watcher re-derives its signals on every tick, so a
    dropped request delays convergence by at most one probe interval.
    """

    def __init__(self, capacity: int = REQUEST_CHANNEL_SIZE) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._queue: queue.Queue[ReconcileRequest] = queue.Queue(maxsize=capacity)

    def try_send(self, request: ReconcileRequest) -> bool:
        try:
            self._queue.put_nowait(request)
        except queue.Full:
            METRICS.requests_dropped_total.labels(reason=request.reason.value).inc()
            return False
        METRICS.requests_emitted_total.labels(reason=request.reason.value).inc()
        return True

    def receive(self, timeout: float | None = None) -> ReconcileRequest | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()


class Dispatcher:
    """Drain a :class:`RequestChannel` into the reconcile work queue.

    This is the only path by which watcher signals reach reconciliation.
    """

    def __init__(
        self,
        channel: RequestChannel,
        work_queue: WorkQueue,
        poll_seconds: float = 0.5,
        logger: logging.Logger | None = None,
    ) -> None:
        self.channel = channel
        self.work_queue = work_queue
        self.poll_seconds = poll_seconds
        self.logger = logger or LOGGER

    def run(self, stop_event: threading.Event) -> None:
        self.logger.info("Dispatcher started")
        while not stop_event.is_set():
            request = self.channel.receive(timeout=self.poll_seconds)
            if request is None:
                continue
            self.logger.debug("Dispatching %s for %s", request.reason.value, request.key)
            self.work_queue.add(request)
        self.logger.info("Dispatcher stopped")
