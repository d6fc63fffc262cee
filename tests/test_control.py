"""Tests for lum.control.

Tests cover:
- Command dispatch (ADD, STOP, malformed commands)
- The line protocol over a real Unix socket
- Client helpers: probe_and_add, stop, instance_running
- Endpoint ownership: stale sockets, a second primary
"""

import os
import socket
import stat
import threading

import pytest

from lum._types import (
    ControlError,
    EndpointInUseError,
    NoInstanceError,
    ProtocolError,
    RenderOutcome,
    RenderResult,
)
from lum._utils import control_socket_path
from lum.control import (
    ERR_EXPECTED_ADD,
    ERR_EXPECTED_ANY,
    ControlServer,
    instance_running,
    probe_and_add,
    stop,
)
from lum.registry import Registry


def _send_raw(path, payload: bytes) -> bytes:
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(5)
        sock.connect(str(path))
        sock.sendall(payload)
        chunks = []
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


@pytest.fixture
def stop_event():
    return threading.Event()


@pytest.fixture
def control_server(registry, stop_event):
    srv = ControlServer(registry, 6333, on_stop=stop_event.set)
    srv.start()
    yield srv
    srv.close()


class TestDispatch:
    @pytest.fixture
    def control(self, registry):
        return ControlServer(registry, 6333)

    def test_add_existing(self, control, registry, md_file):
        reply, stop_requested = control.dispatch(f"ADD {md_file}")
        assert reply == f"OK http://localhost:6333/?file={md_file}"
        assert not stop_requested
        assert registry.get(str(md_file)) is not None

    def test_add_missing(self, control):
        reply, _ = control.dispatch("ADD /does/not/exist")
        assert reply == "ERROR file does not exist: /does/not/exist"

    def test_add_without_path(self, control):
        assert control.dispatch("ADD") == (f"ERROR {ERR_EXPECTED_ADD}", False)

    def test_add_path_with_spaces(self, control, registry, tmp_path):
        path = tmp_path / "my notes.md"
        path.write_text("# Notes\n")
        reply, _ = control.dispatch(f"ADD {path}")
        assert reply.startswith("OK ")
        assert registry.get(str(path)) is not None

    def test_add_relative_path_returns_absolute_url(
        self, control, registry, md_file, monkeypatch
    ):
        monkeypatch.chdir(md_file.parent)
        reply, _ = control.dispatch("ADD doc.md")
        assert reply == f"OK http://localhost:6333/?file={md_file}"
        assert registry.get(str(md_file)) is not None

    def test_concurrent_add_of_failing_file(self, hub, md_file):
        entered = threading.Event()
        release = threading.Event()

        def slow_failing_render(path):
            entered.set()
            release.wait(5)
            return RenderResult(RenderOutcome.FAILED, error="boom")

        control = ControlServer(Registry(hub, render=slow_failing_render), 6333)
        replies = {}
        first = threading.Thread(
            target=lambda: replies.update(first=control.dispatch(f"ADD {md_file}"))
        )
        first.start()
        assert entered.wait(5)
        second = threading.Thread(
            target=lambda: replies.update(second=control.dispatch(f"ADD {md_file}"))
        )
        second.start()
        second.join(0.1)
        release.set()
        first.join(5)
        second.join(5)

        assert replies["first"][0].startswith("ERROR failed to add file: ")
        assert replies["second"][0].startswith("ERROR failed to add file: ")
        assert "boom" in replies["second"][0]
        assert control.registry.get(str(md_file)) is None

    def test_add_render_failure(self, control, tmp_path):
        reply, _ = control.dispatch(f"ADD {tmp_path}")
        assert reply.startswith("ERROR failed to add file: ")

    def test_stop(self, control):
        assert control.dispatch("STOP") == ("OK stopping", True)

    def test_stop_with_argument_rejected(self, control):
        assert control.dispatch("STOP now") == (f"ERROR {ERR_EXPECTED_ANY}", False)

    @pytest.mark.parametrize("line", ["", "HELLO", "add /tmp/x.md", "LIST"])
    def test_unknown_command(self, control, line):
        assert control.dispatch(line) == (f"ERROR {ERR_EXPECTED_ANY}", False)


class TestProtocol:
    def test_add_missing_file(self, control_server):
        reply = _send_raw(control_server.socket_path, b"ADD /does/not/exist\n")
        assert reply == b"ERROR file does not exist: /does/not/exist\n"

    def test_add_without_path(self, control_server):
        reply = _send_raw(control_server.socket_path, b"ADD\n")
        assert reply == b"ERROR invalid command: expected 'ADD <path>'\n"

    def test_unknown_command(self, control_server):
        reply = _send_raw(control_server.socket_path, b"PING\n")
        assert reply == (
            b"ERROR invalid command: expected 'ADD <path>' or 'STOP'\n"
        )

    def test_add_ok(self, control_server, md_file):
        reply = _send_raw(control_server.socket_path, f"ADD {md_file}\n".encode())
        assert reply == f"OK http://localhost:6333/?file={md_file}\n".encode()

    def test_empty_connection_ignored(self, control_server):
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.connect(str(control_server.socket_path))
        assert instance_running()

    def test_socket_is_private(self, control_server):
        mode = stat.S_IMODE(os.stat(control_server.socket_path).st_mode)
        assert mode == 0o600


class TestClient:
    def test_probe_and_add_returns_url(self, control_server, registry, md_file):
        url = probe_and_add(str(md_file))
        assert str(md_file) in url
        assert url.startswith("http://localhost:6333/")
        assert registry.get(str(md_file)) is not None

    def test_probe_and_add_twice(self, control_server, registry, md_file):
        assert probe_and_add(str(md_file)) == probe_and_add(str(md_file))
        assert len(registry) == 1

    def test_probe_and_add_server_error(self, control_server):
        with pytest.raises(ControlError, match="server error: file does not exist"):
            probe_and_add("/does/not/exist")

    def test_probe_without_socket(self):
        with pytest.raises(NoInstanceError):
            probe_and_add("/tmp/x.md")

    def test_probe_stale_socket(self):
        path = control_socket_path()
        stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        stale.bind(str(path))
        stale.close()
        assert path.exists()
        with pytest.raises(NoInstanceError):
            probe_and_add("/tmp/x.md")

    def test_probe_garbled_reply(self, tmp_path):
        path = control_socket_path()
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        listener.bind(str(path))
        listener.listen(1)

        def answer():
            conn, _ = listener.accept()
            with conn:
                conn.recv(1024)
                conn.sendall(b"WHAT\n")

        worker = threading.Thread(target=answer)
        worker.start()
        try:
            with pytest.raises(ProtocolError):
                probe_and_add("/tmp/x.md")
        finally:
            worker.join(5)
            listener.close()

    def test_instance_running(self, control_server):
        assert instance_running()

    def test_instance_not_running(self):
        assert not instance_running()

    def test_stop_without_instance(self):
        with pytest.raises(NoInstanceError, match="no daemon running"):
            stop()

    def test_stop_signals_primary(self, control_server, stop_event):
        stop()
        assert stop_event.wait(5)
        assert control_server.stop_requested


class TestEndpointOwnership:
    def test_second_server_rejected(self, control_server, registry):
        second = ControlServer(registry, 6334)
        with pytest.raises(EndpointInUseError):
            second.start()
        # The first server is unaffected.
        assert instance_running()

    def test_stale_socket_replaced(self, registry):
        path = control_socket_path()
        stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        stale.bind(str(path))
        stale.close()

        srv = ControlServer(registry, 6333)
        srv.start()
        try:
            assert srv.is_running
            assert instance_running()
        finally:
            srv.close()

    def test_close_removes_socket(self, registry):
        srv = ControlServer(registry, 6333)
        srv.start()
        assert srv.socket_path.exists()
        srv.close()
        assert not srv.socket_path.exists()
        assert not srv.is_running
        assert not instance_running()

    def test_restart_after_close(self, registry):
        first = ControlServer(registry, 6333)
        first.start()
        first.close()
        second = ControlServer(registry, 6333)
        second.start()
        try:
            assert instance_running()
        finally:
            second.close()

    def test_close_is_idempotent(self, registry):
        srv = ControlServer(registry, 6333)
        srv.start()
        srv.close()
        srv.close()
