"""Shared test fixtures for the lum test suite."""

import shutil
import socket
import tempfile
from pathlib import Path

import pytest

from lum.notify import NotificationHub
from lum.registry import Registry


class StubDetector:
    """Stands in for ChangeDetector so registry tests need no observer thread."""

    def __init__(self, tracked):
        self.tracked = tracked
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True


@pytest.fixture(autouse=True)
def runtime_dir(monkeypatch):
    """Point XDG_RUNTIME_DIR at a fresh, short temp directory.

    Unix socket paths are limited to ~100 bytes, which pytest's tmp_path
    can exceed, so this does not live under tmp_path.
    """
    base = tempfile.mkdtemp(prefix="lum")
    monkeypatch.setenv("XDG_RUNTIME_DIR", base)
    yield Path(base) / "lum"
    shutil.rmtree(base, ignore_errors=True)


@pytest.fixture
def md_file(tmp_path):
    path = tmp_path / "doc.md"
    path.write_text("# Hello\n\nSome *text*.\n")
    return path


@pytest.fixture
def hub():
    return NotificationHub()


@pytest.fixture
def registry(hub):
    reg = Registry(hub, detector_factory=StubDetector)
    yield reg
    reg.close()


@pytest.fixture
def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def stub_detector():
    return StubDetector
