"""
Bounded message channel between a build job and its HTTP reader.

The job side never blocks: when the buffer is full the oldest log line is
dropped. Status and terminal messages are always kept.
"""
import asyncio
import threading
from collections import deque
from typing import AsyncIterator, Optional

from metadata_service.core.metrics import metrics
from metadata_service.schemas.build import BuildMessage, LogMessage


class MessageChannel:
    """Thread-safe single-producer, single-consumer message buffer."""

    def __init__(self, capacity: int = 1000):
        self._capacity = max(1, capacity)
        self._items: deque = deque()
        self._cond = threading.Condition()
        self._closed = False
        # Event loops with an async reader waiting, woken on every put/close
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []
        self.dropped = 0

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def put(self, message: BuildMessage) -> None:
        """Append a message. Never blocks."""
        with self._cond:
            if self._closed:
                raise RuntimeError("put on closed channel")
            if len(self._items) >= self._capacity:
                self._drop_oldest_log()
            self._items.append(message)
            self._wake()

    def _drop_oldest_log(self) -> None:
        for i, item in enumerate(self._items):
            if isinstance(item, LogMessage):
                del self._items[i]
                self.dropped += 1
                metrics.inc("log_lines_dropped_total")
                return

    def _wake(self) -> None:
        self._cond.notify_all()
        for loop, ready in self._waiters:
            try:
                loop.call_soon_threadsafe(ready.set)
            except RuntimeError:
                # Reader's loop already closed; it will never read again
                continue

    def close(self) -> None:
        """Mark end of stream. Buffered messages stay readable."""
        with self._cond:
            self._closed = True
            self._wake()

    def _pop(self) -> tuple[Optional[BuildMessage], bool]:
        """(next message or None, whether the stream has ended)."""
        with self._cond:
            if self._items:
                return self._items.popleft(), False
            return None, self._closed

    def get(self, timeout: Optional[float] = None) -> Optional[BuildMessage]:
        """
        Next message, or None once the channel is closed and drained.

        Raises:
            TimeoutError: If nothing arrives within timeout seconds
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout=timeout):
                raise TimeoutError
            if self._items:
                return self._items.popleft()
            return None

    def __iter__(self):
        while True:
            message = self.get()
            if message is None:
                return
            yield message

    async def aiter(self) -> AsyncIterator[BuildMessage]:
        """Async view for the HTTP layer; the producer thread wakes the loop directly."""
        ready = asyncio.Event()
        waiter = (asyncio.get_running_loop(), ready)
        with self._cond:
            self._waiters.append(waiter)
        try:
            while True:
                ready.clear()
                message, ended = self._pop()
                if message is not None:
                    yield message
                elif ended:
                    return
                else:
                    await ready.wait()
        finally:
            with self._cond:
                self._waiters.remove(waiter)
