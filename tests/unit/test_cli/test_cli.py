"""Tests for the command-line interface."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from termrelay import cli
from termrelay.domain.models import ShellKind
from termrelay.shell import factory


@pytest.fixture(autouse=True)
def restore_logger():
    logger = logging.getLogger("termrelay")
    handlers = list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)


class TestParseArgs:
    def test_serve_overrides(self) -> None:
        args = cli.parse_args(["-c", "relay.yaml", "serve", "--host", "0.0.0.0", "--port", "9000"])
        assert args.command == "serve"
        assert args.config == Path("relay.yaml")
        assert (args.host, args.port) == ("0.0.0.0", 9000)

    def test_attach_defaults(self) -> None:
        args = cli.parse_args(["attach"])
        assert args.session_id is None
        assert args.after is None

    def test_attach_with_replay(self) -> None:
        args = cli.parse_args(["-v", "attach", "abc123", "--after", "42"])
        assert args.verbose
        assert (args.session_id, args.after) == ("abc123", 42)


class TestMain:
    def test_no_command_prints_help(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli.main([])
        assert exc_info.value.code == 0

    def test_shells_lists_available_kinds(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str], tmp_path
    ) -> None:
        monkeypatch.setattr(factory, "available_shell_kinds", lambda: [ShellKind.BASH, ShellKind.ZSH])
        monkeypatch.setattr(factory, "default_shell_kind", lambda preferred=None: ShellKind.BASH)
        cli.main(["-c", str(tmp_path / "none.yaml"), "shells"])
        out = capsys.readouterr().out.splitlines()
        assert out == ["bash (default)", "zsh"]

    def test_shells_when_none_installed(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str], tmp_path
    ) -> None:
        monkeypatch.setattr(factory, "available_shell_kinds", lambda: [])
        cli.main(["-c", str(tmp_path / "none.yaml"), "shells"])
        assert "No supported shells" in capsys.readouterr().out

    def test_serve_runs_uvicorn(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        calls: list[dict] = []
        monkeypatch.setattr("uvicorn.run", lambda app, **kwargs: calls.append(kwargs))
        cli.main(["-c", str(tmp_path / "none.yaml"), "serve", "--port", "9123"])
        assert calls[0]["port"] == 9123
        assert calls[0]["host"] == "127.0.0.1"
