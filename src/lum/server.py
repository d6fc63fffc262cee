"""HTTP server: Starlette + Server-Sent Events for tracked Markdown files.

Runs uvicorn in a background thread, serving pages built from the file
registry and streaming live-reload events from the notification hub.

Endpoints:
    GET  /                      -> index page listing tracked files
    GET  /?file=PATH            -> rendered page for a tracked file
    GET  /{asset}?file=PATH     -> static asset next to a tracked file
    GET  /events?file=PATH      -> event stream for one file
    GET  /events/index          -> event stream for the index page
    GET  /api/health            -> health check

``run_primary`` wires registry, hub, control socket and HTTP server
together for the process that owns the control endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
import sys
import threading
import time
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import (
    FileResponse,
    HTMLResponse,
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)
from starlette.routing import Route

from lum._utils import file_url, is_path_within_directory, setup_logging
from lum.control import ControlServer
from lum.notify import Channel, NotificationHub, Sink
from lum.pages import render_file_page, render_index_page
from lum.registry import Registry

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6333
KEEPALIVE_SECONDS = 30.0
_HOST = "127.0.0.1"

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


async def event_stream(
    sink: Sink, keepalive: float = KEEPALIVE_SECONDS
) -> AsyncIterator[str]:
    """Yield SSE frames for messages arriving on ``sink``.

    Emits a comment frame every ``keepalive`` seconds of silence and ends
    when the sink is closed. Client disconnects cancel the consuming
    response, which closes this generator.
    """
    while True:
        message = await sink.receive(timeout=keepalive)
        if message is not None:
            yield f"data: {message}\n\n"
        elif sink.closed:
            return
        else:
            yield ": keepalive\n\n"


def resolve_asset(markdown_dir: str, asset: str) -> str | None:
    """Map a request path to a file inside ``markdown_dir``.

    Two readings are tried: relative to the Markdown file's directory, and
    as an absolute filesystem path. A reading is allowed only when it stays
    inside the directory; one that exists wins over one that does not.
    Returns None when neither reading is allowed.
    """
    relative = os.path.normpath(os.path.join(markdown_dir, asset))
    absolute = os.path.normpath("/" + asset)

    candidates = [
        p for p in (relative, absolute) if is_path_within_directory(p, markdown_dir)
    ]
    for candidate in candidates:
        if os.path.exists(candidate):
            return candidate
    return candidates[0] if candidates else None


class LumServer:
    """Starlette app plus uvicorn lifecycle for one primary instance.

    Args:
        registry: Tracked files to serve.
        hub: Notification hub backing the event streams.
        port: Port to bind to.
        host: Host to bind to (loopback only).
        keepalive: Seconds between SSE keep-alive comments.
    """

    def __init__(
        self,
        registry: Registry,
        hub: NotificationHub,
        port: int = DEFAULT_PORT,
        host: str = _HOST,
        keepalive: float = KEEPALIVE_SECONDS,
    ) -> None:
        self.registry = registry
        self.hub = hub
        self.port = port
        self.host = host
        self.keepalive = keepalive
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started_at = datetime.now(timezone.utc)

        self._app = self._build_app()

    def _build_app(self) -> Starlette:
        """Build the Starlette application with all routes."""
        routes = [
            Route("/", self._index),
            Route("/events", self._events),
            Route("/events/index", self._events_index),
            Route("/api/health", self._api_health),
            Route("/{asset:path}", self._asset),
        ]
        return Starlette(routes=routes)

    @property
    def app(self) -> Starlette:
        return self._app

    # --- HTTP Endpoints ---

    async def _index(self, request: Request) -> Response:
        """Serve a tracked file page, or the index page without ?file=."""
        file_param = request.query_params.get("file")
        if not file_param:
            return HTMLResponse(render_index_page(self.registry.list()))

        tracked = self.registry.get(file_param)
        if tracked is None:
            return PlainTextResponse("404 page not found", status_code=404)
        return HTMLResponse(render_file_page(tracked.path, tracked.content))

    async def _asset(self, request: Request) -> Response:
        """Serve a file relative to a tracked Markdown file's directory."""
        file_param = request.query_params.get("file")
        asset = request.path_params["asset"]
        if not file_param or not asset:
            return PlainTextResponse("404 page not found", status_code=404)

        tracked = self.registry.get(file_param)
        if tracked is None:
            return PlainTextResponse("404 page not found", status_code=404)

        resolved = resolve_asset(tracked.directory, asset)
        if resolved is None or not os.path.isfile(resolved):
            return PlainTextResponse("404 page not found", status_code=404)
        return FileResponse(resolved)

    async def _events(self, request: Request) -> Response:
        """SSE stream for one tracked file."""
        file_param = request.query_params.get("file")
        if not file_param:
            return PlainTextResponse("Missing file parameter", status_code=400)

        tracked = self.registry.get(file_param)
        if tracked is None:
            return PlainTextResponse("File not found", status_code=404)
        return self._stream(tracked.subscribers)

    async def _events_index(self, request: Request) -> Response:
        """SSE stream for the index page."""
        return self._stream(self.hub.index)

    def _stream(self, scope: Channel) -> StreamingResponse:
        async def frames() -> AsyncIterator[str]:
            sink = self.hub.subscribe(scope)
            try:
                async for frame in event_stream(sink, self.keepalive):
                    yield frame
            finally:
                self.hub.unsubscribe(scope, sink)
                logger.debug("Event stream for %s closed", scope.name)

        return StreamingResponse(
            frames(), media_type="text/event-stream", headers=_SSE_HEADERS
        )

    async def _api_health(self, request: Request) -> JSONResponse:
        """Health check endpoint."""
        uptime_seconds = (datetime.now(timezone.utc) - self._started_at).total_seconds()
        return JSONResponse(
            {
                "status": "ok",
                "pid": os.getpid(),
                "port": self.port,
                "files": len(self.registry),
                "uptime": round(uptime_seconds, 1),
            }
        )

    # --- Lifecycle ---

    def _check_port(self) -> None:
        """Fail early when the port is taken; uvicorn only logs it."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                s.bind((self.host, self.port))
            except OSError as e:
                raise OSError(f"port {self.port} is not available: {e}") from e

    def start(self) -> None:
        """Start the server in a background daemon thread.

        Raises:
            OSError: the port is not available or the server did not come up.
        """
        if self._thread and self._thread.is_alive():
            return

        self._check_port()

        config = uvicorn.Config(
            app=self._app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
            timeout_graceful_shutdown=1,
        )
        self._server = uvicorn.Server(config)

        def _run() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._started.set()
            self._loop.run_until_complete(self._server.serve())

        self._thread = threading.Thread(target=_run, name="lum-http", daemon=True)
        self._thread.start()
        self._started.wait(timeout=5)

        if not self._wait_for_server():
            raise OSError(f"HTTP server did not start on port {self.port}")
        logger.info("Serving on http://%s:%d", self.host, self.port)

    def _wait_for_server(self, timeout: float = 3.0) -> bool:
        """Wait for the server to accept connections."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                    s.settimeout(0.1)
                    s.connect((self.host, self.port))
                    return True
            except OSError:
                time.sleep(0.05)
        return False

    def stop(self) -> None:
        """Stop the server. Open event streams are not drained."""
        if self._server:
            self._server.should_exit = True
        if self._thread:
            self._thread.join(timeout=3)
            self._thread = None
        self._server = None
        logger.debug("HTTP server stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def file_url(self, path: str) -> str:
        return file_url(self.port, path, host=self.host)


# ---------------------------------------------------------------------------
# Primary instance
# ---------------------------------------------------------------------------


class Primary:
    """Everything a primary instance owns, with start/stop in one place."""

    def __init__(self, port: int = DEFAULT_PORT, **server_kwargs: Any) -> None:
        self.stop_event = threading.Event()
        self.hub = NotificationHub()
        self.registry = Registry(self.hub)
        self.control = ControlServer(self.registry, port, on_stop=self.stop_event.set)
        self.server = LumServer(self.registry, self.hub, port=port, **server_kwargs)

    def start(self, file_path: str) -> str:
        """Claim the control endpoint, track ``file_path`` and serve.

        Returns:
            The URL of the initial file.

        Raises:
            EndpointInUseError: another primary is running.
            AddError: the initial file could not be tracked.
            OSError: a socket could not be bound.
        """
        self.control.start()
        try:
            self.registry.add(file_path)
            self.server.start()
        except BaseException:
            self.shutdown()
            raise
        return self.server.file_url(os.path.abspath(file_path))

    def wait(self) -> None:
        self.stop_event.wait()

    def shutdown(self) -> None:
        """Stop serving, remove the control socket, then stop the watchers."""
        logger.info("Shutting down")
        self.server.stop()
        self.control.close()
        self.registry.close()
        self.hub.index.close()


def run_primary(
    file_path: str,
    port: int = DEFAULT_PORT,
    log_file: Path | None = None,
) -> None:
    """Run a primary instance in the foreground until signalled or STOPped.

    Prints the initial file URL on stdout once the server is up.
    """
    setup_logging(log_file)
    primary = Primary(port=port)

    def _shutdown(signum: int, frame: Any) -> None:
        logger.debug(f"Received signal {signum}, shutting down...")
        primary.stop_event.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    url = primary.start(file_path)
    print(url, flush=True)

    try:
        primary.wait()
    finally:
        primary.shutdown()


if __name__ == "__main__":
    import argparse

    from lum._types import LumError

    parser = argparse.ArgumentParser(description="lum primary instance")
    parser.add_argument("file", help="Markdown file to serve")
    parser.add_argument(
        "--port", type=int, default=DEFAULT_PORT, help="Port to bind to"
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Log file path")
    args = parser.parse_args()
    try:
        run_primary(args.file, port=args.port, log_file=args.log_file)
    except (LumError, OSError) as e:
        logger.error("Failed to start: %s", e)
        sys.exit(1)
