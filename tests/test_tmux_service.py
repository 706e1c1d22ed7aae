from __future__ import annotations

import asyncio

import pytest

from threadloom.errors import ConsistencyError, ExternalToolError
from threadloom.shell import CommandResult, FakeCommandRunner
from threadloom.tmux import TerminalSessionService


def ok(args, stdout: str = "") -> CommandResult:
    return CommandResult(args=args, returncode=0, stdout=stdout, stderr="")


def failed(args, stderr: str) -> CommandResult:
    return CommandResult(args=args, returncode=1, stdout="", stderr=stderr)


def test_liveness_and_targets_use_exact_match() -> None:
    runner = FakeCommandRunner(
        responder=lambda args: failed(args, "can't find session: app-x")
        if args[-1] == "=app-x"
        else None
    )
    terminal = TerminalSessionService(runner)

    assert asyncio.run(terminal.is_alive("app-acme-main")) is True
    assert asyncio.run(terminal.is_alive("app-x")) is False
    assert runner.invocations[0] == ("has-session", "-t", "=app-acme-main")


def test_list_sessions_without_server_is_empty() -> None:
    runner = FakeCommandRunner([failed(("list-sessions",), "no server running on /tmp/tmux-0/default")])

    assert asyncio.run(TerminalSessionService(runner).list_sessions()) == []


def test_list_sessions_other_failures_raise() -> None:
    runner = FakeCommandRunner([failed(("list-sessions",), "protocol version mismatch")])

    with pytest.raises(ExternalToolError):
        asyncio.run(TerminalSessionService(runner).list_sessions())


def test_create_session_passes_working_dir_and_command() -> None:
    runner = FakeCommandRunner()
    terminal = TerminalSessionService(runner)

    asyncio.run(terminal.create_session("app-acme-main", "/work/acme", "exec zsh -l"))

    assert runner.invocations == [
        ("new-session", "-d", "-s", "app-acme-main", "-c", "/work/acme", "exec zsh -l")
    ]


def test_duplicate_session_is_a_consistency_error() -> None:
    runner = FakeCommandRunner([failed(("new-session",), "duplicate session: app-acme-main")])

    with pytest.raises(ConsistencyError):
        asyncio.run(TerminalSessionService(runner).create_session("app-acme-main", "/w", "sh"))


def test_ensure_session_skips_live_session() -> None:
    runner = FakeCommandRunner()
    terminal = TerminalSessionService(runner)

    assert asyncio.run(terminal.ensure_session("app-acme-main", "/w", "sh")) is False
    assert [args[0] for args in runner.invocations] == ["has-session"]


def test_kill_reports_missing_sessions() -> None:
    runner = FakeCommandRunner(
        [
            failed(("kill-session",), "can't find session: gone"),
            failed(("kill-session",), "permission denied"),
        ]
    )
    terminal = TerminalSessionService(runner)

    assert asyncio.run(terminal.kill("gone")) is False
    with pytest.raises(ExternalToolError):
        asyncio.run(terminal.kill("stuck"))


def test_kill_all_continues_after_failures() -> None:
    runner = FakeCommandRunner(
        responder=lambda args: failed(args, "permission denied") if args[-1] == "=b" else None
    )

    killed = asyncio.run(TerminalSessionService(runner).kill_all(["a", "b", "c"]))

    assert killed == ["a", "c"]


def test_send_input_types_literal_text_then_enter() -> None:
    runner = FakeCommandRunner()

    assert asyncio.run(TerminalSessionService(runner).send_input("app-acme-main", "Enter the void"))
    assert runner.invocations == [
        ("send-keys", "-t", "=app-acme-main:", "-l", "Enter the void"),
        ("send-keys", "-t", "=app-acme-main:", "Enter"),
    ]


def test_capture_returns_none_for_missing_session() -> None:
    runner = FakeCommandRunner(
        [
            ok(("capture-pane",), "line one\nline two\n"),
            failed(("capture-pane",), "can't find pane: =gone:"),
        ]
    )
    terminal = TerminalSessionService(runner)

    assert asyncio.run(terminal.capture("app-acme-main", 20)) == "line one\nline two\n"
    assert asyncio.run(terminal.capture("gone")) is None
    assert runner.invocations[0] == ("capture-pane", "-p", "-t", "=app-acme-main:", "-S", "-20")


def test_rename_many_uses_temporary_names() -> None:
    runner = FakeCommandRunner(
        responder=lambda args: ok(args, "app-a-old-main\napp-a-old-tab-2\n")
        if args[0] == "list-sessions"
        else None
    )

    done = asyncio.run(
        TerminalSessionService(runner).rename_many(
            [
                ("app-a-old-main", "app-a-new-main"),
                ("app-a-old-tab-2", "app-a-new-tab-2"),
                ("app-a-old-dead", "app-a-new-dead"),
            ]
        )
    )

    assert done == [("app-a-old-main", "app-a-new-main"), ("app-a-old-tab-2", "app-a-new-tab-2")]
    renames = [args[2:] for args in runner.invocations if args[0] == "rename-session"]
    assert renames == [
        ("=app-a-old-main", "app-a-old-main-renaming-0"),
        ("=app-a-old-tab-2", "app-a-old-tab-2-renaming-1"),
        ("=app-a-old-main-renaming-0", "app-a-new-main"),
        ("=app-a-old-tab-2-renaming-1", "app-a-new-tab-2"),
    ]


def test_rename_many_rolls_back_on_failure() -> None:
    def responder(args):
        if args[0] == "list-sessions":
            return ok(args, "one\ntwo\n")
        if args[0] == "rename-session" and args[-1] == "new-two":
            return failed(args, "server exited unexpectedly")
        return None

    runner = FakeCommandRunner(responder=responder)

    with pytest.raises(ExternalToolError):
        asyncio.run(TerminalSessionService(runner).rename_many([("one", "new-one"), ("two", "new-two")]))

    renames = [args[2:] for args in runner.invocations if args[0] == "rename-session"]
    assert renames[-2:] == [("=new-one", "one"), ("=two-renaming-1", "two")]


def test_update_working_directory_targets_shell_panes_only() -> None:
    runner = FakeCommandRunner(
        responder=lambda args: ok(args, "%1\t-zsh\n%2\tclaude\n%3\tbash\n")
        if args[0] == "list-panes"
        else None
    )

    count = asyncio.run(
        TerminalSessionService(runner).update_working_directory("app-a-main", "/work/new path")
    )

    assert count == 2
    sent = [args for args in runner.invocations if args[0] == "send-keys"]
    assert sent[:3] == [
        ("send-keys", "-t", "%1", "C-u"),
        ("send-keys", "-t", "%1", "-l", "cd '/work/new path'"),
        ("send-keys", "-t", "%1", "Enter"),
    ]
    assert {args[2] for args in sent} == {"%1", "%3"}


def test_pane_path_and_environment_value() -> None:
    def respond(args):
        if args[0] == "display-message":
            return ok(args, "/work/acme\n")
        if args[-1] == "THREADLOOM_WORKTREE_PATH":
            return ok(args, "THREADLOOM_WORKTREE_PATH=/wt/acme/foo\n")
        if args[-1] == "THREADLOOM_THREAD_NAME":
            return ok(args, "-THREADLOOM_THREAD_NAME\n")
        return failed(args, "can't find session: app-gone")

    terminal = TerminalSessionService(FakeCommandRunner(responder=respond))

    assert asyncio.run(terminal.pane_path("app-acme-main")) == "/work/acme"
    assert asyncio.run(terminal.environment_value("app-acme-main", "THREADLOOM_WORKTREE_PATH")) == "/wt/acme/foo"
    assert asyncio.run(terminal.environment_value("app-acme-main", "THREADLOOM_THREAD_NAME")) is None
    assert asyncio.run(terminal.environment_value("app-gone", "OTHER")) is None
