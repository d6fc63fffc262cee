"""Change detector: re-render a tracked file when it changes on disk.

Each tracked file gets its own watchdog Observer on the file's parent
directory. Watching the directory rather than the file keeps working
across atomic saves (write temp file, rename over the old one), which
would orphan a watch on the replaced inode.

Per event:
    1. Ignore events for other names in the directory.
    2. Act on modified / created / moved events only.
    3. Debounce: if the last successful reload finished less than
       ``debounce`` seconds ago, defer the event. One trailing reload runs
       when the window closes, so the last write of a burst always lands.
    4. Render, retrying while the file is momentarily missing.
    5. On success store the HTML and publish "reload" to subscribers.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from lum._types import RenderResult
from lum.notify import RELOAD_MESSAGE
from lum.renderer import render_file

if TYPE_CHECKING:
    from lum.registry import TrackedFile

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.1
RENDER_ATTEMPTS = 10
RETRY_BACKOFF_SECONDS = 0.05

_HANDLED_EVENTS = frozenset({"modified", "created", "moved"})


class ChangeDetector(FileSystemEventHandler):
    """Watches one tracked file and keeps its rendered content current."""

    def __init__(
        self,
        tracked: TrackedFile,
        render: Callable[[str], RenderResult] = render_file,
        debounce: float = DEBOUNCE_SECONDS,
        attempts: int = RENDER_ATTEMPTS,
        backoff: float = RETRY_BACKOFF_SECONDS,
    ) -> None:
        super().__init__()
        self.tracked = tracked
        self.render = render
        self.debounce = debounce
        self.attempts = attempts
        self.backoff = backoff
        self.watch_dir, self.file_name = os.path.split(tracked.path)
        self.reload_count = 0
        self._last_reload: float | None = None
        self._observer: Observer | None = None
        self._trailing: threading.Timer | None = None
        self._stopped = False
        self._lock = threading.Lock()

    # --- Lifecycle ---

    def start(self) -> None:
        """Start watching the parent directory.

        Raises:
            OSError: the directory cannot be watched.
        """
        observer = Observer()
        observer.schedule(self, self.watch_dir, recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.debug("Watching %s for changes to %s", self.watch_dir, self.file_name)

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            self._stopped = True
            self._cancel_trailing()
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        if observer is not threading.current_thread():
            observer.join(timeout=timeout)
        logger.debug("Stopped watching %s", self.tracked.path)

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    # --- Event handling ---

    def _concerns_file(self, event: FileSystemEvent) -> bool:
        if os.path.basename(os.fsdecode(event.src_path)) == self.file_name:
            return True
        dest = getattr(event, "dest_path", "")
        return bool(dest) and os.path.basename(os.fsdecode(dest)) == self.file_name

    def dispatch(self, event: FileSystemEvent) -> None:
        if event.is_directory or not self._concerns_file(event):
            return
        if event.event_type not in _HANDLED_EVENTS:
            return
        logger.info("File changed: %s (event: %s)", self.tracked.path, event.event_type)
        self.handle_change()

    def handle_change(self) -> bool:
        """Run the debounce and reload steps for one raw change.

        Returns True when the change was settled and subscribers notified.
        """
        with self._lock:
            now = time.monotonic()
            if self._last_reload is not None and now - self._last_reload < self.debounce:
                self._schedule_trailing(self.debounce - (now - self._last_reload))
                logger.debug("Debounced change to %s", self.tracked.path)
                return False

            self._cancel_trailing()
            result = self._render_with_retry()
            if not result.ok:
                logger.warning("Failed to render %s: %s", self.tracked.path, result.error)
                return False

            self.tracked.set_content(result.html)
            self._last_reload = time.monotonic()
            self.reload_count += 1

        self.tracked.subscribers.publish(RELOAD_MESSAGE)
        return True

    def _schedule_trailing(self, delay: float) -> None:
        # Caller holds self._lock.
        if self._trailing is not None or self._stopped:
            return
        timer = threading.Timer(delay, self._run_trailing)
        timer.daemon = True
        timer.start()
        self._trailing = timer

    def _run_trailing(self) -> None:
        with self._lock:
            self._trailing = None
            if self._stopped:
                return
        self.handle_change()

    def _cancel_trailing(self) -> None:
        # Caller holds self._lock.
        if self._trailing is not None:
            self._trailing.cancel()
            self._trailing = None

    def _render_with_retry(self) -> RenderResult:
        result = self.render(self.tracked.path)
        attempt = 1
        while result.retryable and attempt < self.attempts:
            time.sleep(self.backoff)
            result = self.render(self.tracked.path)
            attempt += 1
        if result.retryable:
            logger.debug(
                "%s still missing after %d attempts", self.tracked.path, attempt
            )
        return result
