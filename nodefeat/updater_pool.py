"""A pool of worker threads that update nodes from a rate-limited work queue."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable

log = logging.getLogger(__name__)

_MAX_REQUEUES = 5
_DEFAULT_BASE_DELAY = 0.005
_DEFAULT_MAX_DELAY = 1000.0


class _RateLimitingQueue:
    """A de-duplicating work queue with per-item exponential retry delays."""

    def __init__(self, base_delay: float, max_delay: float):
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: set[threading.Timer] = set()
        self._shutting_down = False

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, item: str) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self) -> tuple[str | None, bool]:
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: str) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def num_requeues(self, item: str) -> int:
        with self._cond:
            return self._failures.get(item, 0)

    def forget(self, item: str) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def add_rate_limited(self, item: str) -> None:
        with self._cond:
            if self._shutting_down:
                return
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
            delay = min(self._base_delay * 2**failures, self._max_delay)
            timer = threading.Timer(delay, self._fire, (item,))
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def _fire(self, item: str) -> None:
        with self._cond:
            self._timers = {t for t in self._timers if t.is_alive() and t is not threading.current_thread()}
        self.add(item)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()


class NodeUpdaterPool:
    """Runs update_node for queued node names on a number of worker threads.

    A failed update is retried with a growing delay up to five times.
    """

    def __init__(
        self,
        update_node: Callable[[str], None],
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
    ):
        self._update_node = update_node
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._lock = threading.Lock()
        self._queue: _RateLimitingQueue | None = None
        self._workers: list[threading.Thread] = []

    def _process_one(self, work: _RateLimitingQueue) -> bool:
        node_name, quit_ = work.get()
        if quit_ or node_name is None:
            return False
        try:
            try:
                self._update_node(node_name)
            except Exception as exc:  # noqa: BLE001 - any failure is retried
                if work.num_requeues(node_name) < _MAX_REQUEUES:
                    log.info("retrying labeling request for node %s", node_name)
                    work.add_rate_limited(node_name)
                    return True
                log.error("error labeling node %s: %s", node_name, exc)
            work.forget(node_name)
            return True
        finally:
            work.done(node_name)

    def _run_worker(self, work: _RateLimitingQueue) -> None:
        while self._process_one(work):
            pass

    def start(self, parallelism: int) -> None:
        """Start parallelism workers unless the pool is already running."""
        with self._lock:
            if self._queue is not None and not self._queue.shutting_down:
                log.info("the NFD master node updater pool is already running.")
                return
            log.info("starting the NFD master node updater pool, parallelism=%d", parallelism)
            work = _RateLimitingQueue(self._base_delay, self._max_delay)
            self._queue = work
            self._workers = [
                threading.Thread(target=self._run_worker, args=(work,), daemon=True)
                for _ in range(parallelism)
            ]
            for worker in self._workers:
                worker.start()

    def stop(self) -> None:
        """Shut the queue down and wait for the workers to finish the queued work."""
        with self._lock:
            if self._queue is None or self._queue.shutting_down:
                log.info("the NFD master node updater pool is not running.")
                return
            log.info("stopping the NFD master node updater pool")
            self._queue.shut_down()
            for worker in self._workers:
                worker.join()
            self._workers = []

    def add(self, node_name: str) -> None:
        """Queue an update of node_name; ignored while the pool shuts down."""
        work = self._queue
        if work is None:
            raise RuntimeError("node updater pool has not been started")
        work.add(node_name)

    def is_running(self) -> bool:
        """Tell whether the pool accepts work."""
        with self._lock:
            return self._queue is not None and not self._queue.shutting_down