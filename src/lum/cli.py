"""lum command line.

Usage:
    lum [--port PORT] [--daemon] FILE
    lum --stop

The first invocation becomes the primary instance and serves FILE. Later
invocations hand their file to the running primary over the control
socket and print its URL.
"""

from __future__ import annotations

import os
import sys
import time

import click
import typer
from rich.console import Console
from typer.core import TyperCommand

from lum import control
from lum._types import ControlError, LumError, NoInstanceError, ProtocolError
from lum._utils import detached_popen_kwargs, file_url, log_file_path
from lum.server import DEFAULT_PORT


class _LumCommand(TyperCommand):
    """Exits with status 1 on argument errors (click uses 2)."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as e:
            e.exit_code = 1
            raise


app = typer.Typer(
    name="lum",
    help="Render Markdown files in the browser with live reload.",
    add_completion=False,
)
console = Console(highlight=False, soft_wrap=True)
err_console = Console(stderr=True, highlight=False, soft_wrap=True)

_DAEMON_START_TIMEOUT = 5.0


def _info(msg: str) -> None:
    err_console.print(f"[dim]>[/dim] {msg}")


def _success(msg: str) -> None:
    err_console.print(f"[green]\u2713[/green] {msg}")


def _error(msg: str) -> None:
    err_console.print(f"[red]\u2717[/red] {msg}")


def _print_url(url: str) -> None:
    console.print(url, markup=False)


@app.command(
    cls=_LumCommand,
    context_settings={"help_option_names": ["-h", "--help"]},
)
def main(
    ctx: typer.Context,
    file: str | None = typer.Argument(None, help="Markdown file to serve."),
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", help="Port to bind to."),
    daemon: bool = typer.Option(
        False, "--daemon", "-d", help="Run the server in the background."
    ),
    stop: bool = typer.Option(
        False, "--stop", "-s", help="Stop the running background server."
    ),
) -> None:
    """Serve a Markdown file as HTML and reload the page when it changes."""
    if stop:
        _stop()
        return

    if not 1 <= port <= 65535:
        _error(f"Invalid port: {port} (must be between 1 and 65535)")
        raise typer.Exit(1)

    if not file:
        err_console.print(ctx.get_usage(), markup=False)
        _error("Missing argument 'FILE'.")
        raise typer.Exit(1)

    path = os.path.abspath(file)
    if not os.path.exists(path):
        _error(f"File does not exist: {path}")
        raise typer.Exit(1)

    try:
        url = control.probe_and_add(path)
    except NoInstanceError:
        pass
    except (ControlError, ProtocolError) as e:
        _error(str(e))
        raise typer.Exit(1)
    else:
        _print_url(url)
        return

    if daemon:
        _start_background(path, port)
    else:
        _run_foreground(path, port)


def _stop() -> None:
    try:
        control.stop()
    except NoInstanceError as e:
        _error(str(e))
        raise typer.Exit(1)
    except ProtocolError as e:
        _error(f"Failed to stop server: {e}")
        raise typer.Exit(1)
    _success("Server stopped.")


def _run_foreground(path: str, port: int) -> None:
    from lum.server import run_primary

    try:
        run_primary(path, port=port)
    except LumError as e:
        _error(str(e))
        raise typer.Exit(1)
    except OSError as e:
        _error(f"Failed to start server: {e}")
        raise typer.Exit(1)


def _port_open(port: int) -> bool:
    import socket

    try:
        with socket.create_connection(("127.0.0.1", port), timeout=0.1):
            return True
    except OSError:
        return False


def _start_background(path: str, port: int) -> None:
    """Start a primary as a detached process and wait for it to come up."""
    import subprocess

    log_file = log_file_path()
    cmd = [
        sys.executable,
        "-m",
        "lum.server",
        "--port",
        str(port),
        "--log-file",
        str(log_file),
        path,
    ]

    _info(f"Starting lum server on port {port}...")
    with open(log_file, "ab") as log:
        subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=log,
            **detached_popen_kwargs(),
        )

    deadline = time.monotonic() + _DAEMON_START_TIMEOUT
    while time.monotonic() < deadline:
        if control.instance_running() and _port_open(port):
            _print_url(file_url(port, path))
            return
        time.sleep(0.1)

    _error(
        f"Server process started but didn't answer within "
        f"{_DAEMON_START_TIMEOUT:.0f}s. See {log_file}"
    )
    raise typer.Exit(1)


if __name__ == "__main__":
    app()
