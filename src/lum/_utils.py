"""Shared utilities for the lum package.

Runtime directory resolution, file locking, log setup and path
containment checks used by more than one module.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any

_CONTROL_SOCKET_NAME = "control.sock"
_CONTROL_LOCK_NAME = "control.lock"
_LOG_FILE_NAME = "lum.log"

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# ---------------------------------------------------------------------------
# Runtime directory resolution
# ---------------------------------------------------------------------------


def get_runtime_dir(create: bool = True) -> Path:
    """Resolve the per-user runtime directory.

    Resolution order:
    1. ``$XDG_RUNTIME_DIR/lum``
    2. ``<tempdir>/lum-<uid>``

    The directory is created with mode 0700 unless ``create`` is False.
    """
    xdg = os.getenv("XDG_RUNTIME_DIR")
    if xdg:
        base = Path(xdg) / "lum"
    else:
        base = Path(tempfile.gettempdir()) / f"lum-{os.getuid()}"
    if create:
        base.mkdir(mode=0o700, parents=True, exist_ok=True)
    return base


def control_socket_path() -> Path:
    """Return the control endpoint location for the current user."""
    return get_runtime_dir() / _CONTROL_SOCKET_NAME


def control_lock_path() -> Path:
    return get_runtime_dir() / _CONTROL_LOCK_NAME


def log_file_path() -> Path:
    return get_runtime_dir() / _LOG_FILE_NAME


# ---------------------------------------------------------------------------
# File locking
# ---------------------------------------------------------------------------


def lock_file(fd: Any, exclusive: bool = True, blocking: bool = True) -> None:
    """Acquire an flock on an open file object."""
    import fcntl

    op = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
    if not blocking:
        op |= fcntl.LOCK_NB
    fcntl.flock(fd, op)


def unlock_file(fd: Any) -> None:
    """Release a file lock."""
    import fcntl

    fcntl.flock(fd, fcntl.LOCK_UN)


# ---------------------------------------------------------------------------
# Subprocess detach kwargs
# ---------------------------------------------------------------------------


def detached_popen_kwargs() -> dict[str, Any]:
    """Return Popen kwargs for detaching a subprocess from the terminal."""
    return {"start_new_session": True}


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(log_file: Path | None = None, level: int = logging.INFO) -> None:
    """Configure the root logger for a primary instance.

    Logs go to ``log_file`` when given (daemon mode), stderr otherwise.
    """
    handler: logging.Handler
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)


# ---------------------------------------------------------------------------
# Path containment
# ---------------------------------------------------------------------------


def is_path_within_directory(path: Path | str, directory: Path | str) -> bool:
    """Check whether ``path`` is ``directory`` or lies below it.

    Both sides are made absolute and normalised first, so ``..``
    segments cannot escape the directory.
    """
    abs_path = Path(os.path.abspath(path))
    abs_dir = Path(os.path.abspath(directory))
    return abs_path == abs_dir or abs_dir in abs_path.parents


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------


def file_url(port: int, path: str, host: str = "localhost") -> str:
    """Return the page URL for a tracked file.

    The path goes into the query string verbatim so clients can match it
    against the path they asked for.
    """
    return f"http://{host}:{port}/?file={path}"
