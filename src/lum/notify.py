"""Notification hub: best-effort fan-out of string events.

A ``Channel`` is one notification scope (a tracked file, or the global
index feed). Each streaming client subscribes and gets a ``Sink`` with a
small bounded buffer. Publishing never blocks: when a sink's buffer is
full the message is dropped for that sink only. Live reload is a "last
write wins" signal, so a dropped message is picked up on the next one.

Publishers run on watcher and control threads; sinks are read from
async SSE handlers on the server's event loop.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading

logger = logging.getLogger(__name__)

SINK_BUFFER_SIZE = 8
RELOAD_MESSAGE = "reload"


class Sink:
    """Receive endpoint for one subscriber.

    ``offer`` is safe to call from any thread. ``receive`` must be awaited
    on the event loop that created the sink (or the loop passed in).
    """

    def __init__(
        self,
        maxsize: int = SINK_BUFFER_SIZE,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._queue: queue.Queue[str] = queue.Queue(maxsize=maxsize)
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        self._loop = loop
        self._ready = asyncio.Event() if loop is not None else None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, message: str) -> bool:
        """Try to enqueue a message without blocking.

        Returns False when the sink is closed or its buffer is full.
        """
        if self._closed:
            return False
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            return False
        self._wake()
        return True

    def get_nowait(self) -> str | None:
        """Return the next buffered message, or None if there is none."""
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    async def receive(self, timeout: float | None = None) -> str | None:
        """Wait for the next message.

        Returns None when ``timeout`` expires or the sink is closed.
        """
        if self._ready is None:
            raise RuntimeError("Sink was not created on an event loop")
        while True:
            message = self.get_nowait()
            if message is not None:
                return message
            if self._closed:
                return None
            self._ready.clear()
            # A publisher may have slipped in between the check and clear().
            message = self.get_nowait()
            if message is not None:
                return message
            try:
                await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return None

    def close(self) -> None:
        self._closed = True
        self._wake()

    def _wake(self) -> None:
        if self._loop is None or self._ready is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._ready.set)
        except RuntimeError:
            # Loop already closed; nobody is waiting any more.
            pass


class Channel:
    """Subscriber set for one scope, guarded by its own lock."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._sinks: set[Sink] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sinks)

    def __repr__(self) -> str:
        return f"Channel({self.name!r})"

    def subscribe(self, sink: Sink | None = None) -> Sink:
        sink = sink or Sink()
        with self._lock:
            self._sinks.add(sink)
        logger.debug("Subscribed to %s (%d subscribers)", self.name, len(self._sinks))
        return sink

    def unsubscribe(self, sink: Sink) -> None:
        with self._lock:
            self._sinks.discard(sink)
        sink.close()

    def publish(self, message: str) -> int:
        """Offer ``message`` to every subscriber; return how many accepted it."""
        with self._lock:
            sinks = list(self._sinks)
        delivered = 0
        for sink in sinks:
            if sink.offer(message):
                delivered += 1
        if delivered < len(sinks):
            logger.debug(
                "Dropped %r for %d slow subscriber(s) of %s",
                message,
                len(sinks) - delivered,
                self.name,
            )
        return delivered

    def close(self) -> None:
        """Close every sink and forget them."""
        with self._lock:
            sinks = list(self._sinks)
            self._sinks.clear()
        for sink in sinks:
            sink.close()


class NotificationHub:
    """Entry point for subscribe / unsubscribe / publish.

    Scopes are Channel objects: ``hub.index`` for the index page feed,
    or ``TrackedFile.subscribers`` for one file.
    """

    INDEX_SCOPE = "index"

    def __init__(self) -> None:
        self.index = Channel(self.INDEX_SCOPE)

    def subscribe(self, scope: Channel, sink: Sink | None = None) -> Sink:
        return scope.subscribe(sink)

    def unsubscribe(self, scope: Channel, sink: Sink) -> None:
        scope.unsubscribe(sink)

    def publish(self, scope: Channel, message: str) -> int:
        return scope.publish(message)
