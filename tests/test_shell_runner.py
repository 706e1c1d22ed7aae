from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from threadloom.errors import ExternalToolError, ToolNotFoundError
from threadloom.shell import (
    CommandResult,
    CommandRunner,
    FakeCommandRunner,
    export_statement,
    sanitize_environment,
)


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


def test_runner_executes_script(tmp_path: Path) -> None:
    script = write_script(tmp_path / "tool", "echo \"$@\"\n")

    runner = CommandRunner(script, name="tool")
    result = asyncio.run(runner.run("worktree", "list", cwd=tmp_path))

    assert result.ok
    assert result.stdout.strip() == "worktree list"
    assert result.args[0] == str(script)


def test_runner_reports_failure_without_raising(tmp_path: Path) -> None:
    script = write_script(tmp_path / "tool", "echo 'fatal: nope' >&2\nexit 3\n")

    result = asyncio.run(CommandRunner(script, name="tool").run("status"))

    assert not result.ok
    assert result.returncode == 3
    with pytest.raises(ExternalToolError) as info:
        result.check("status failed")
    assert info.value.returncode == 3
    assert "fatal: nope" in info.value.diagnostic


def test_runner_times_out(tmp_path: Path) -> None:
    script = write_script(tmp_path / "slow", "sleep 5\n")

    runner = CommandRunner(script, name="slow", timeout=0.2)
    with pytest.raises(ExternalToolError) as info:
        asyncio.run(runner.run())

    assert info.value.timed_out


def test_runner_timeout_is_logged_with_the_command(tmp_path: Path, caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="threadloom")
    script = write_script(tmp_path / "slow", "sleep 5\n")

    runner = CommandRunner(script, name="slow", timeout=0.2)
    with pytest.raises(ExternalToolError):
        asyncio.run(runner.run("worktree", "list"))

    record = next(record for record in caplog.records if record.getMessage() == "Command timed out")
    assert record.levelno == logging.WARNING
    assert record.command == ["worktree", "list"]
    assert record.tool == "slow"


def test_runner_not_found(tmp_path: Path) -> None:
    with pytest.raises(ToolNotFoundError):
        CommandRunner(tmp_path / "missing", name="git")


def test_runner_drops_tmux_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TMUX", "/tmp/tmux-1000/default,1,0")
    script = write_script(tmp_path / "env", "echo \"tmux=${TMUX:-unset} extra=$EXTRA\"\n")

    result = asyncio.run(CommandRunner(script, name="env").run(env={"EXTRA": "yes"}))

    assert result.stdout.strip() == "tmux=unset extra=yes"


def test_fake_runner_records_invocations() -> None:
    fake = FakeCommandRunner(
        [CommandResult(args=("status",), returncode=0, stdout="ok", stderr="")],
        responder=lambda args: CommandResult(args=args, returncode=1, stdout="", stderr="")
        if args[0] == "fail"
        else None,
    )

    first = asyncio.run(fake.run("status"))
    failed = asyncio.run(fake.run("fail"))
    default = asyncio.run(fake.run("other"))

    assert first.stdout == "ok"
    assert failed.returncode == 1
    assert default.ok
    assert fake.invocations == [("status",), ("fail",), ("other",)]


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    monkeypatch.setenv("TMUX_PANE", "%1")
    env = sanitize_environment({"KEEP": "1"})
    assert "PYTHONPATH" not in env
    assert "TMUX_PANE" not in env
    assert env["KEEP"] == "1"


def test_export_statement_quotes_values() -> None:
    assert export_statement({}) == "true"
    assert export_statement({"A": "x y", "B": "it's"}) == "export A='x y' B='it'\"'\"'s'"
