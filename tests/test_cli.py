"""Tests for lum.cli.

Tests cover:
- Help and usage errors
- Argument validation (missing file, bad port)
- Attaching to a running primary
- Becoming the primary in the foreground
- Daemon start and --stop
"""

from unittest.mock import patch

from typer.testing import CliRunner

from lum._types import (
    ControlError,
    EndpointInUseError,
    NoInstanceError,
    ProtocolError,
)
from lum.cli import app

runner = CliRunner()


class TestUsage:
    def test_help(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Usage:" in result.output

    def test_short_help(self):
        result = runner.invoke(app, ["-h"])
        assert result.exit_code == 0
        assert "--daemon" in result.output

    def test_no_file(self):
        result = runner.invoke(app, [])
        assert result.exit_code == 1
        assert "Usage:" in result.output

    def test_missing_file(self, tmp_path):
        missing = tmp_path / "nope.md"
        result = runner.invoke(app, [str(missing)])
        assert result.exit_code == 1
        assert f"File does not exist: {missing}" in result.output

    def test_invalid_port(self, md_file):
        result = runner.invoke(app, ["--port", "0", str(md_file)])
        assert result.exit_code == 1
        assert "Invalid port" in result.output

    def test_port_too_large(self, md_file):
        result = runner.invoke(app, ["-p", "70000", str(md_file)])
        assert result.exit_code == 1

    def test_non_integer_port(self, md_file):
        with patch("lum.cli.control.probe_and_add") as attach:
            result = runner.invoke(app, ["--port", "abc", str(md_file)])
        assert result.exit_code == 1
        attach.assert_not_called()

    def test_unknown_option(self, md_file):
        with patch("lum.cli.control.probe_and_add") as attach:
            result = runner.invoke(app, ["--bogus", str(md_file)])
        assert result.exit_code == 1
        assert "--bogus" in result.output
        attach.assert_not_called()

    def test_extra_argument(self, md_file):
        result = runner.invoke(app, [str(md_file), "other.md"])
        assert result.exit_code == 1


class TestAttach:
    def test_prints_url_from_primary(self, md_file):
        url = f"http://localhost:6333/?file={md_file}"
        with patch("lum.cli.control.probe_and_add", return_value=url) as attach:
            result = runner.invoke(app, [str(md_file)])
        assert result.exit_code == 0
        assert url in result.output
        attach.assert_called_once_with(str(md_file))

    def test_relative_path_made_absolute(self, md_file, monkeypatch):
        monkeypatch.chdir(md_file.parent)
        with patch("lum.cli.control.probe_and_add", return_value="u") as attach:
            runner.invoke(app, ["doc.md"])
        attach.assert_called_once_with(str(md_file))

    def test_primary_error(self, md_file):
        err = ControlError("server error: failed to add file: boom")
        with patch("lum.cli.control.probe_and_add", side_effect=err):
            result = runner.invoke(app, [str(md_file)])
        assert result.exit_code == 1
        assert "boom" in result.output

    def test_garbled_reply(self, md_file):
        err = ProtocolError("unexpected response: 'WHAT'")
        with patch("lum.cli.control.probe_and_add", side_effect=err):
            result = runner.invoke(app, [str(md_file)])
        assert result.exit_code == 1
        assert "unexpected response" in result.output


class TestForeground:
    def test_becomes_primary(self, md_file):
        with patch(
            "lum.cli.control.probe_and_add", side_effect=NoInstanceError("none")
        ), patch("lum.server.run_primary") as run:
            result = runner.invoke(app, ["--port", "7000", str(md_file)])
        assert result.exit_code == 0
        run.assert_called_once_with(str(md_file), port=7000)

    def test_lost_race(self, md_file):
        with patch(
            "lum.cli.control.probe_and_add", side_effect=NoInstanceError("none")
        ), patch(
            "lum.server.run_primary",
            side_effect=EndpointInUseError("another lum instance holds the lock"),
        ):
            result = runner.invoke(app, [str(md_file)])
        assert result.exit_code == 1
        assert "another lum instance" in result.output

    def test_port_unavailable(self, md_file):
        with patch(
            "lum.cli.control.probe_and_add", side_effect=NoInstanceError("none")
        ), patch(
            "lum.server.run_primary", side_effect=OSError("port 6333 is not available")
        ):
            result = runner.invoke(app, [str(md_file)])
        assert result.exit_code == 1
        assert "Failed to start server" in result.output


class TestDaemon:
    def test_starts_background_process(self, md_file):
        with patch(
            "lum.cli.control.probe_and_add", side_effect=NoInstanceError("none")
        ), patch("subprocess.Popen") as popen, patch(
            "lum.cli.control.instance_running", return_value=True
        ), patch("lum.cli._port_open", return_value=True):
            result = runner.invoke(app, ["--daemon", "-p", "7001", str(md_file)])
        assert result.exit_code == 0
        assert f"http://localhost:7001/?file={md_file}" in result.output

        cmd = popen.call_args[0][0]
        assert cmd[1:3] == ["-m", "lum.server"]
        assert "--log-file" in cmd
        assert cmd[-1] == str(md_file)
        assert popen.call_args[1]["start_new_session"] is True

    def test_daemon_never_comes_up(self, md_file):
        with patch(
            "lum.cli.control.probe_and_add", side_effect=NoInstanceError("none")
        ), patch("subprocess.Popen"), patch(
            "lum.cli.control.instance_running", return_value=False
        ), patch("lum.cli._DAEMON_START_TIMEOUT", 0.2):
            result = runner.invoke(app, ["-d", str(md_file)])
        assert result.exit_code == 1
        assert "didn't answer" in result.output

    def test_attaches_instead_of_spawning(self, md_file):
        with patch(
            "lum.cli.control.probe_and_add", return_value="http://localhost:6333/?file=x"
        ), patch("subprocess.Popen") as popen:
            result = runner.invoke(app, ["--daemon", str(md_file)])
        assert result.exit_code == 0
        popen.assert_not_called()


class TestStop:
    def test_stop(self):
        with patch("lum.cli.control.stop") as stop:
            result = runner.invoke(app, ["--stop"])
        assert result.exit_code == 0
        assert "stopped" in result.output.lower()
        stop.assert_called_once()

    def test_stop_no_daemon(self):
        with patch(
            "lum.cli.control.stop", side_effect=NoInstanceError("no daemon running")
        ):
            result = runner.invoke(app, ["-s"])
        assert result.exit_code == 1
        assert "no daemon running" in result.output

    def test_stop_real_socket_without_daemon(self):
        result = runner.invoke(app, ["--stop"])
        assert result.exit_code == 1
        assert "no daemon running" in result.output
