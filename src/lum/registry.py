"""File registry: the set of Markdown files currently served.

Maps absolute paths to TrackedFile state. Four locks are involved and
never nested: the registry's structural lock, and per file a content
lock and the subscriber channel's lock (plus the hub's index channel).

``add`` is all-or-nothing. A hidden placeholder reserves the path while
the file renders and its watcher starts outside the registry lock; the
placeholder is dropped again if either step fails, and only becomes
visible to ``get`` / ``list`` once both succeeded.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from typing import Any

from lum._types import AddError, RenderResult
from lum.notify import RELOAD_MESSAGE, Channel, NotificationHub
from lum.renderer import render_file
from lum.watcher import ChangeDetector

logger = logging.getLogger(__name__)


class TrackedFile:
    """In-memory record of one served Markdown file."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.subscribers = Channel(path)
        self.watch: Any = None  # ChangeDetector once started
        self.visible = False
        self.add_error: str | None = None
        self.settled = threading.Event()
        self._content = b""
        self._content_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"TrackedFile({self.path!r})"

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def directory(self) -> str:
        return os.path.dirname(self.path)

    @property
    def content(self) -> bytes:
        with self._content_lock:
            return self._content

    def set_content(self, html: bytes) -> None:
        with self._content_lock:
            self._content = html

    def close(self) -> None:
        """Stop the watcher and drop any connected subscribers."""
        if self.watch is not None:
            self.watch.stop()
            self.watch = None
        self.subscribers.close()


class Registry:
    """Concurrent map of tracked files.

    Args:
        hub: NotificationHub whose index channel hears about new files.
        render: Renderer adapter, ``path -> RenderResult``.
        detector_factory: Builds the change detector for a TrackedFile.
            Must return an object with ``start()`` and ``stop()``.
    """

    def __init__(
        self,
        hub: NotificationHub,
        render: Callable[[str], RenderResult] = render_file,
        detector_factory: Callable[..., Any] | None = None,
    ) -> None:
        self.hub = hub
        self.render = render
        self.detector_factory = detector_factory or self._default_detector
        self._files: dict[str, TrackedFile] = {}
        self._lock = threading.Lock()

    def _default_detector(self, tracked: TrackedFile) -> ChangeDetector:
        return ChangeDetector(tracked, render=self.render)

    def __len__(self) -> int:
        return len(self.list())

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.get(path) is not None

    def add(self, path: str) -> bool:
        """Render and start tracking ``path``.

        An add of a path whose first add is still in progress waits for
        that add and shares its outcome.

        Returns:
            True if the file was newly added, False if already tracked.

        Raises:
            AddError: rendering or watch setup failed; nothing is tracked.
        """
        path = os.path.abspath(path)
        tracked = TrackedFile(path)
        with self._lock:
            existing = self._files.get(path)
            if existing is None:
                self._files[path] = tracked

        if existing is not None:
            existing.settled.wait()
            if not existing.visible:
                raise AddError(existing.add_error or f"failed to add file: {path}")
            return False

        try:
            self._start_tracking(tracked)
        except AddError as e:
            tracked.add_error = str(e)
            self._discard(tracked)
            raise
        except BaseException:
            self._discard(tracked)
            raise
        finally:
            tracked.settled.set()

        logger.info("Tracking %s", path)
        self.hub.publish(self.hub.index, RELOAD_MESSAGE)
        return True

    def _start_tracking(self, tracked: TrackedFile) -> None:
        result = self.render(tracked.path)
        if not result.ok:
            raise AddError(f"failed to render file: {result.error}")
        tracked.set_content(result.html)

        try:
            detector = self.detector_factory(tracked)
            detector.start()
        except OSError as e:
            raise AddError(f"failed to start watching file: {e}") from e
        tracked.watch = detector
        tracked.visible = True

    def _discard(self, tracked: TrackedFile) -> None:
        with self._lock:
            if self._files.get(tracked.path) is tracked:
                del self._files[tracked.path]

    def get(self, path: str) -> TrackedFile | None:
        with self._lock:
            tracked = self._files.get(os.path.abspath(path))
        if tracked is None or not tracked.visible:
            return None
        return tracked

    def list(self) -> list[str]:
        """Return a sorted snapshot of tracked paths."""
        with self._lock:
            entries = list(self._files.values())
        return sorted(t.path for t in entries if t.visible)

    def close(self) -> None:
        """Stop every watcher. Called on process shutdown."""
        with self._lock:
            entries = list(self._files.values())
            self._files.clear()
        for tracked in entries:
            tracked.close()
        logger.debug("Registry closed (%d files)", len(entries))
