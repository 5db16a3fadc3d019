"""Background turn runner with a bounded, ordered event channel.

A chat turn runs on a producer thread from a bounded ThreadPoolExecutor and
pushes events into an ``EventChannel``; the HTTP response generator drains
the channel in order.  The queue bound applies back-pressure to the producer
when the client reads slowly.

If the consumer goes away (client disconnect), the channel is detached:
pending and future events are dropped, but the producer keeps running so
the turn is still persisted.

    for event in worker.stream(lambda emit: run_turn(turn, emit)):
        ...
"""

from __future__ import annotations

import atexit
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterator

from settings import settings

logger = logging.getLogger(__name__)

# Bounded pool prevents unbounded thread growth under load.
_pool = ThreadPoolExecutor(max_workers=settings.STREAM_WORKERS, thread_name_prefix="turn-worker")

_CLOSED = object()
_PUT_POLL_SECONDS = 0.1


class EventChannel:
    """Single-producer, single-consumer bounded queue."""

    def __init__(self, maxsize: int = 64):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._detached = threading.Event()

    @property
    def detached(self) -> bool:
        return self._detached.is_set()

    def put(self, item: Any) -> bool:
        """Block until *item* is queued.  Returns False once detached."""
        while not self._detached.is_set():
            try:
                self._queue.put(item, timeout=_PUT_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def close(self) -> None:
        """Mark the end of the stream."""
        self.put(_CLOSED)

    def detach(self) -> None:
        """Consumer is gone; stop accepting events and drop what is queued."""
        self._detached.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

    def __iter__(self) -> Iterator[Any]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


def stream(
    producer: Callable[[Callable[[Any], bool]], Any],
    *,
    maxsize: int = settings.STREAM_QUEUE_SIZE,
) -> Iterator[Any]:
    """Run *producer(emit)* in the pool and yield everything it emits.

    Exceptions escaping the producer are logged; the stream then ends.
    Producers that need a terminal error event must emit it themselves.
    """
    channel = EventChannel(maxsize)

    def _run():
        try:
            producer(channel.put)
        except Exception as e:
            logger.error(f"Producer error: {e}")
        finally:
            channel.close()

    _pool.submit(_run)
    try:
        yield from channel
    finally:
        channel.detach()


def shutdown(wait: bool = True) -> None:
    """Shut down the worker pool gracefully.

    Called automatically at interpreter exit.  Pass ``wait=False`` to
    cancel pending tasks immediately.
    """
    _pool.shutdown(wait=wait, cancel_futures=not wait)
    logger.info("Turn worker pool shut down")


# Ensure the pool drains on normal interpreter shutdown.
atexit.register(shutdown, wait=True)
