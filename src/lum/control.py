"""Local control channel between lum invocations.

The primary instance listens on a Unix domain socket in the per-user
runtime directory. A later ``lum FILE`` connects, sends one command and
reads one reply, so it can hand the file to the running server instead
of starting a second one.

Protocol (one newline-terminated line each way, one command per
connection):

    ADD <absolute-path>   -> OK <url> | ERROR <reason>
    STOP                  -> OK stopping, then the primary shuts down
    anything else         -> ERROR invalid command: ...

Paths are sent verbatim: a path may contain spaces but not newlines.
"""

from __future__ import annotations

import logging
import os
import socket
import socketserver
import threading
from collections.abc import Callable
from pathlib import Path
from typing import IO, TYPE_CHECKING

from lum._types import (
    AddError,
    ControlError,
    EndpointInUseError,
    NoInstanceError,
    ProtocolError,
)
from lum._utils import (
    control_lock_path,
    control_socket_path,
    file_url,
    lock_file,
    unlock_file,
)

if TYPE_CHECKING:
    from lum.registry import Registry

logger = logging.getLogger(__name__)

_MAX_LINE = 64 * 1024
_CONNECT_TIMEOUT = 1.0
_REPLY_TIMEOUT = 10.0

ERR_EXPECTED_ADD = "invalid command: expected 'ADD <path>'"
ERR_EXPECTED_ANY = "invalid command: expected 'ADD <path>' or 'STOP'"


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


class _ControlRequestHandler(socketserver.StreamRequestHandler):
    """Reads one command line, writes one reply line."""

    server: _ControlSocketServer

    def handle(self) -> None:
        try:
            raw = self.rfile.readline(_MAX_LINE)
        except OSError as e:
            logger.warning("Failed to read from control socket: %s", e)
            return
        if not raw:
            return

        line = raw.decode("utf-8", errors="replace").strip()
        reply, stop_requested = self.server.control.dispatch(line)
        try:
            self.wfile.write(f"{reply}\n".encode())
            self.wfile.flush()
        except OSError as e:
            logger.warning("Failed to write control reply: %s", e)

        if stop_requested:
            self.server.control.request_stop()


class _ControlSocketServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, path: str, control: ControlServer) -> None:
        self.control = control
        super().__init__(path, _ControlRequestHandler)


class ControlServer:
    """Control endpoint of the primary instance.

    Ownership of the endpoint is decided by an exclusive ``flock`` on a
    lock file next to the socket, held for the lifetime of the server.
    Only the lock holder may remove a stale socket and bind a new one, so
    two processes racing to become primary cannot both succeed.

    Args:
        registry: Registry that ``ADD`` commands are delegated to.
        port: HTTP port embedded in returned URLs.
        on_stop: Called (from a handler thread) after a ``STOP`` reply.
        socket_path: Override for the endpoint location (tests).
        lock_path: Override for the lock file location (tests).
    """

    def __init__(
        self,
        registry: Registry,
        port: int,
        on_stop: Callable[[], None] | None = None,
        socket_path: Path | None = None,
        lock_path: Path | None = None,
    ) -> None:
        self.registry = registry
        self.port = port
        self.on_stop = on_stop
        self.socket_path = socket_path or control_socket_path()
        self.lock_path = lock_path or control_lock_path()
        self._server: _ControlSocketServer | None = None
        self._thread: threading.Thread | None = None
        self._lock_fd: IO[str] | None = None
        self._stop_requested = threading.Event()

    # --- Lifecycle ---

    def start(self) -> None:
        """Claim the endpoint and start accepting connections.

        Raises:
            EndpointInUseError: another live instance owns the endpoint.
            OSError: the socket could not be created.
        """
        self._acquire_lock()
        try:
            if self.socket_path.exists():
                if instance_running(self.socket_path):
                    raise EndpointInUseError(
                        f"control socket {self.socket_path} is in use"
                    )
                logger.info("Removing stale control socket %s", self.socket_path)
                self.socket_path.unlink()

            self._server = _ControlSocketServer(str(self.socket_path), self)
            os.chmod(self.socket_path, 0o600)
        except BaseException:
            self._release_lock()
            raise

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="lum-control",
            daemon=True,
        )
        self._thread.start()
        logger.info("Control socket listening at %s", self.socket_path)

    def _acquire_lock(self) -> None:
        self.lock_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = open(self.lock_path, "w")
        try:
            lock_file(fd, exclusive=True, blocking=False)
        except OSError:
            fd.close()
            raise EndpointInUseError(
                f"another lum instance holds {self.lock_path}"
            ) from None
        self._lock_fd = fd

    def _release_lock(self) -> None:
        fd, self._lock_fd = self._lock_fd, None
        if fd is None:
            return
        try:
            unlock_file(fd)
        finally:
            fd.close()

    def close(self) -> None:
        """Stop accepting commands, remove the socket and release the lock."""
        server, self._server = self._server, None
        if server is not None:
            server.shutdown()
            server.server_close()
            try:
                self.socket_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Failed to remove control socket: %s", e)
            logger.debug("Control socket closed")
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None
        self._release_lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self) -> None:
        logger.info("STOP received on control socket")
        self._stop_requested.set()
        if self.on_stop is not None:
            self.on_stop()

    # --- Commands ---

    def dispatch(self, line: str) -> tuple[str, bool]:
        """Execute one command line.

        Returns:
            ``(reply, stop_requested)`` where reply has no trailing newline.
        """
        keyword, _, argument = line.partition(" ")
        if keyword == "STOP" and not argument:
            return "OK stopping", True
        if keyword != "ADD":
            return f"ERROR {ERR_EXPECTED_ANY}", False
        if not argument:
            return f"ERROR {ERR_EXPECTED_ADD}", False
        return self._add(argument), False

    def _add(self, argument: str) -> str:
        if not os.path.exists(argument):
            return f"ERROR file does not exist: {argument}"
        path = os.path.abspath(argument)
        try:
            self.registry.add(path)
        except AddError as e:
            logger.warning("Failed to add %s via control socket: %s", path, e)
            return f"ERROR failed to add file: {e}"
        logger.info("Added file via control socket: %s", path)
        return f"OK {file_url(self.port, path)}"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def _connect(socket_path: Path, timeout: float = _CONNECT_TIMEOUT) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(str(socket_path))
    except OSError:
        sock.close()
        raise
    return sock


def _exchange(sock: socket.socket, command: str, timeout: float) -> str:
    """Send one command line and return the reply line (may be empty)."""
    sock.settimeout(timeout)
    sock.sendall(f"{command}\n".encode())
    with sock.makefile("rb") as reader:
        raw = reader.readline(_MAX_LINE)
    return raw.decode("utf-8", errors="replace").strip()


def instance_running(socket_path: Path | None = None) -> bool:
    """Return True if a live primary answers on the control socket."""
    socket_path = socket_path or control_socket_path()
    if not socket_path.exists():
        return False
    try:
        sock = _connect(socket_path)
    except OSError:
        return False
    sock.close()
    return True


def probe_and_add(
    path: str,
    socket_path: Path | None = None,
    timeout: float = _REPLY_TIMEOUT,
) -> str:
    """Ask a running primary to track ``path``.

    Returns:
        The URL where the file is served.

    Raises:
        NoInstanceError: no socket, or nothing accepts connections on it.
        ControlError: the primary replied with ERROR.
        ProtocolError: the reply was neither OK nor ERROR.
    """
    socket_path = socket_path or control_socket_path()
    if not socket_path.exists():
        raise NoInstanceError("no existing server (socket does not exist)")
    try:
        sock = _connect(socket_path)
    except OSError as e:
        raise NoInstanceError(f"failed to connect to existing server: {e}") from e

    try:
        reply = _exchange(sock, f"ADD {path}", timeout)
    except OSError as e:
        raise ProtocolError(f"failed to talk to existing server: {e}") from e
    finally:
        sock.close()

    if reply.startswith("OK "):
        return reply[len("OK "):]
    if reply.startswith("ERROR "):
        raise ControlError(f"server error: {reply[len('ERROR '):]}")
    raise ProtocolError(f"unexpected response: {reply!r}")


def stop(socket_path: Path | None = None, timeout: float = _REPLY_TIMEOUT) -> None:
    """Ask a running primary to shut down.

    Raises:
        NoInstanceError: no primary is reachable.
    """
    socket_path = socket_path or control_socket_path()
    if not socket_path.exists():
        raise NoInstanceError("no daemon running")
    try:
        sock = _connect(socket_path)
    except OSError:
        raise NoInstanceError("no daemon running") from None

    try:
        reply = _exchange(sock, "STOP", timeout)
    except OSError as e:
        # The primary may exit before the acknowledgment arrives.
        logger.debug("No STOP acknowledgment: %s", e)
        return
    finally:
        sock.close()
    if reply and not reply.startswith("OK"):
        raise ProtocolError(f"unexpected response: {reply!r}")
