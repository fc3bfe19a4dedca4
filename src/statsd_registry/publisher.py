"""Line Publisher.

Provides the asynchronous publish path:
- Non-blocking offer from any thread
- Dedicated drain thread forwarding lines to a sink
- Sink failures contained at the publisher boundary
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

LineSink = Callable[[str], None]

_CLOSE = object()


def logging_sink(line: str) -> None:
    """Default sink: log each line at DEBUG."""
    logger.debug(line)


class PublisherState(Enum):
    """Publisher lifecycle states."""
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"


@dataclass
class PublisherStats:
    """Publisher statistics."""
    lines_offered: int = 0
    lines_published: int = 0
    lines_dropped: int = 0
    sink_errors: int = 0


class LinePublisher:
    """Queue-backed line stream drained into a sink by a daemon thread."""

    def __init__(
        self,
        sink: LineSink,
        max_queue_size: int = 0,
        name: str = "statsd-publisher",
    ):
        self._sink = sink
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_queue_size)
        self._state = PublisherState.RUNNING
        self._stats = PublisherStats()
        self._stats_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._abandon = threading.Event()
        self._thread = threading.Thread(target=self._drain_loop, name=name, daemon=True)
        self._thread.start()

    @property
    def state(self) -> PublisherState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is PublisherState.RUNNING

    @property
    def stats(self) -> PublisherStats:
        with self._stats_lock:
            return PublisherStats(**vars(self._stats))

    def offer(self, line: str) -> bool:
        """Enqueue a line without blocking. Returns False if it was dropped."""
        with self._stats_lock:
            self._stats.lines_offered += 1
        with self._state_lock:
            if self._state is not PublisherState.RUNNING:
                accepted = False
            else:
                try:
                    self._queue.put_nowait(line)
                    accepted = True
                except queue.Full:
                    accepted = False
                    logger.debug("Line queue full, dropping line")
        if not accepted:
            self._count_drop()
        return accepted

    def complete(self) -> None:
        """Signal end of stream; later offers are silently dropped."""
        with self._state_lock:
            if self._state is PublisherState.RUNNING:
                self._state = PublisherState.COMPLETED
                logger.debug("Line publisher completed")

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued line has been handed to the sink."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Close the queue and stop the drain thread. Safe to call twice.

        Queued lines are delivered first. If the queue is still full after
        ``timeout`` seconds the remaining lines are dropped.
        """
        with self._state_lock:
            if self._state is PublisherState.STOPPED:
                return
            self._state = PublisherState.STOPPED
        deadline = time.monotonic() + timeout
        try:
            self._queue.put(_CLOSE, timeout=timeout)
        except queue.Full:
            # sink is stuck on a full queue; discard what is left
            self._abandon.set()
            logger.warning(
                f"Line queue still full after {timeout}s, abandoning queued lines"
            )
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=max(0.0, deadline - time.monotonic()))
        stats = self.stats
        logger.info(
            "Line publisher stopped",
            extra={
                "lines": stats.lines_published,
                "dropped": stats.lines_dropped,
                "sink_errors": stats.sink_errors,
            },
        )

    def _count_drop(self) -> None:
        with self._stats_lock:
            self._stats.lines_dropped += 1

    def _drain_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _CLOSE:
                    return
                if self._abandon.is_set():
                    self._count_drop()
                else:
                    self._publish(item)  # type: ignore[arg-type]
            finally:
                self._queue.task_done()
            if self._abandon.is_set() and self._queue.empty():
                return

    def _publish(self, line: str) -> None:
        try:
            self._sink(line)
        except Exception:
            with self._stats_lock:
                self._stats.sink_errors += 1
            logger.warning("Line sink failed, dropping line", exc_info=True)
            return
        with self._stats_lock:
            self._stats.lines_published += 1
