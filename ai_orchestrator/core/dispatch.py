"""
Bounded dispatch queue drained by a fixed pool of worker threads.

The worker count bounds the number of simultaneous outbound provider calls.
Items are dequeued in arrival order; completion order across distinct
fingerprints is not guaranteed.
"""

import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from .cache import Flight
from .exceptions import Backpressure
from .logging import get_logger
from .request import Fingerprint, Request

logger = get_logger(__name__)

_STOP = object()


class OverflowPolicy(Enum):
    """What enqueue does when the queue is full."""
    REJECT = "reject"  # raise Backpressure immediately
    BLOCK = "block"    # wait up to enqueue_timeout, then raise Backpressure


@dataclass
class QueueItem:
    """Unit of work owned by the queue until a worker claims it."""
    request: Request
    fingerprint: Fingerprint
    resolved_provider_id: str
    flight: Flight
    reservation: Any = None
    enqueued_at: float = field(default_factory=time.monotonic)


class DispatchQueue:
    """Bounded FIFO queue with a fixed worker pool."""

    def __init__(
        self,
        handler: Callable[[QueueItem], None],
        capacity: int = 64,
        workers: int = 4,
        overflow: OverflowPolicy = OverflowPolicy.REJECT,
        enqueue_timeout: float = 1.0,
        name: str = "dispatch",
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if workers <= 0:
            raise ValueError("workers must be > 0")
        if enqueue_timeout < 0:
            raise ValueError("enqueue_timeout cannot be negative")

        self.capacity = capacity
        self.worker_count = workers
        self.overflow = overflow
        self.enqueue_timeout = enqueue_timeout
        self.name = name
        self._handler = handler
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._accepting = False
        self._running = 0

    @property
    def pending(self) -> int:
        """Items waiting for a worker."""
        return self._queue.qsize()

    @property
    def running(self) -> int:
        """Items currently being handled."""
        with self._lock:
            return self._running

    @property
    def started(self) -> bool:
        with self._lock:
            return bool(self._threads)

    def start(self) -> None:
        """Start the worker threads. Calling start twice is an error."""
        with self._lock:
            if self._threads:
                raise RuntimeError(f"{self.name} queue already started")
            self._accepting = True
            for index in range(self.worker_count):
                thread = threading.Thread(
                    target=self._worker_loop,
                    name=f"{self.name}-worker-{index}",
                    daemon=True,
                )
                self._threads.append(thread)
            threads = list(self._threads)
        for thread in threads:
            thread.start()
        logger.info("dispatch_started", queue=self.name, workers=self.worker_count, capacity=self.capacity)

    def enqueue(self, item: QueueItem) -> None:
        """Add an item to the queue.

        Raises:
            Backpressure: If the queue is full (after waiting, under BLOCK)
            RuntimeError: If the queue is not accepting work
        """
        with self._lock:
            if not self._accepting:
                raise RuntimeError(f"{self.name} queue is not running")

        try:
            if self.overflow == OverflowPolicy.BLOCK:
                self._queue.put(item, timeout=self.enqueue_timeout)
            else:
                self._queue.put_nowait(item)
        except queue.Full:
            logger.warning(
                "dispatch_backpressure",
                queue=self.name,
                capacity=self.capacity,
                policy=self.overflow.value,
            )
            raise Backpressure(f"Dispatch queue full ({self.capacity} items); retry later")

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> List[QueueItem]:
        """Stop accepting work and shut the workers down.

        Args:
            drain: If True, workers finish every queued item first. If False,
                queued items are removed and returned unprocessed.
            timeout: Maximum seconds to wait for each worker to exit

        Returns:
            Items removed from the queue without being processed
        """
        with self._lock:
            self._accepting = False
            threads = list(self._threads)

        dropped: List[QueueItem] = []
        if not drain:
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                self._queue.task_done()
                if item is not _STOP:
                    dropped.append(item)

        for _ in threads:
            self._queue.put(_STOP)
        for thread in threads:
            thread.join(timeout)

        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
        logger.info("dispatch_stopped", queue=self.name, drained=drain, dropped=len(dropped))
        return dropped

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                with self._lock:
                    self._running += 1
                try:
                    self._handler(item)
                except Exception:
                    logger.exception(
                        "dispatch_handler_failed",
                        queue=self.name,
                        request_id=item.request.id,
                    )
                finally:
                    with self._lock:
                        self._running -= 1
            finally:
                self._queue.task_done()
