"""Deduplicating, rate-limited work queues and their worker threads."""

import collections
import threading
import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Set, Tuple

from oslo_log import log as logging

from ..exceptions import FipControllerException

LOG = logging.getLogger(__name__)


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base * 2**failures`` capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        # Avoid float overflow for items that failed very often
        if exp > 62:
            return self.max_delay
        return min(self.base_delay * (2 ** exp), self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class RateLimitingQueue:
    """FIFO queue of hashable items.

    An item added while already pending is collapsed into the pending copy.
    An item added while a worker processes it is re-queued once the worker
    calls ``done``. Items are therefore never processed concurrently.
    """

    def __init__(self, name: str, rate_limiter: Optional[ItemExponentialFailureRateLimiter] = None):
        self.name = name
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self._queue: collections.deque = collections.deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._cond = threading.Condition()
        self._shutting_down = False
        self._timers: Set[threading.Timer] = set()

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def get(self, timeout: Optional[float] = None) -> Tuple[Any, bool]:
        """Block until an item is available.

        Returns:
            ``(item, shutdown)``; ``shutdown`` is True once the queue is shut
            down and drained, ``item`` is then None.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                if not self._cond.wait(timeout) and timeout is not None:
                    return None, False
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return

            def fire():
                with self._cond:
                    self._timers.discard(timer)
                self.add(item)

            timer = threading.Timer(delay, fire)
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def shut_down(self) -> None:
        """Stop accepting items and wake every blocked ``get``.

        Items already pending are still handed out so workers can drain them.
        """
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()


def process_next_item(
    action: str,
    queue: RateLimitingQueue,
    handle: Callable[[Any], None],
    max_retries: int = 0,
) -> bool:
    """Take one item off ``queue`` and run ``handle`` on it.

    Returns:
        False once the queue has shut down, True otherwise
    """
    item, shutdown = queue.get()
    if shutdown:
        return False

    start = time.monotonic()
    try:
        handle(item)
    except FipControllerException as e:
        if not e.retryable:
            LOG.error("%s %s failed permanently: %s", action, item, e)
            queue.forget(item)
        else:
            _requeue(action, queue, item, max_retries, e)
    except Exception as e:
        LOG.exception("%s %s failed unexpectedly", action, item)
        _requeue(action, queue, item, max_retries, e)
    else:
        queue.forget(item)
    finally:
        queue.done(item)
        LOG.debug("%s %s took %.1f ms", action, item, (time.monotonic() - start) * 1000)
    return True


def _requeue(action: str, queue: RateLimitingQueue, item: Any, max_retries: int, error: Exception) -> None:
    if max_retries and queue.num_requeues(item) >= max_retries:
        LOG.error("%s %s dropped after %d retries: %s", action, item, max_retries, error)
        queue.forget(item)
        return
    LOG.warning("%s %s failed, requeueing: %s", action, item, error)
    queue.add_rate_limited(item)


def run_worker(action: str, queue: RateLimitingQueue, handle: Callable[[Any], None], max_retries: int = 0) -> None:
    """Process items until the queue shuts down."""
    while process_next_item(action, queue, handle, max_retries):
        pass
    LOG.debug("%s worker exiting", action)


def start_workers(
    action: str,
    queue: RateLimitingQueue,
    handle: Callable[[Any], None],
    count: int,
    max_retries: int = 0,
) -> List[threading.Thread]:
    """Start ``count`` daemon worker threads on ``queue``."""
    threads = []
    for i in range(count):
        thread = threading.Thread(
            target=run_worker,
            args=(action, queue, handle, max_retries),
            name=f"{queue.name}-worker-{i}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    return threads
