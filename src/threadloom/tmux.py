"""tmux session management.

Every call that targets a session tolerates the session vanishing between a
liveness check and the command itself: such calls report "not found"
(``False`` / ``None``) instead of raising.
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Iterable, Sequence

from .errors import ConsistencyError, ExternalToolError
from .shell import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

_MISSING_MARKERS = (
    "can't find session",
    "can't find pane",
    "can't find window",
    "session not found",
    "no server running",
    "no current target",
    "error connecting to",
)
_SHELL_COMMANDS = {"bash", "zsh", "fish", "sh", "dash", "ksh", "tcsh", "nu"}


def _session_target(name: str) -> str:
    return f"={name}"


def _pane_target(name: str) -> str:
    return f"={name}:"


def _is_missing(result: CommandResult) -> bool:
    stderr = result.stderr.lower()
    return any(marker in stderr for marker in _MISSING_MARKERS)


class TerminalSessionService:
    """Create, inspect, rename and drive detached tmux sessions."""

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    async def _tmux(self, *args: str) -> CommandResult:
        return await self._runner.run(*args)

    def _fail(self, result: CommandResult, message: str) -> None:
        raise ExternalToolError(
            message, args=result.args, returncode=result.returncode, stderr=result.stderr
        )

    async def is_alive(self, name: str) -> bool:
        result = await self._tmux("has-session", "-t", _session_target(name))
        return result.ok

    async def list_sessions(self) -> list[str]:
        result = await self._tmux("list-sessions", "-F", "#{session_name}")
        if not result.ok:
            if _is_missing(result):
                return []
            self._fail(result, "tmux list-sessions failed")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def create_session(self, name: str, working_dir: Path | str, command: str) -> None:
        result = await self._tmux("new-session", "-d", "-s", name, "-c", str(working_dir), command)
        if not result.ok:
            if "duplicate session" in result.stderr.lower():
                raise ConsistencyError(f"Session already exists: {name}")
            self._fail(result, f"tmux new-session failed for {name}")
        logger.info("Created session", extra={"session": name, "cwd": str(working_dir)})

    async def ensure_session(self, name: str, working_dir: Path | str, command: str) -> bool:
        """Create ``name`` unless it is already alive; returns True when created."""

        if await self.is_alive(name):
            return False
        try:
            await self.create_session(name, working_dir, command)
        except ConsistencyError:
            # Lost a creation race; the session now exists under the same name.
            return False
        return True

    async def kill(self, name: str) -> bool:
        """Kill ``name``; returns False when the session was already gone."""

        result = await self._tmux("kill-session", "-t", _session_target(name))
        if result.ok:
            logger.info("Killed session", extra={"session": name})
            return True
        if _is_missing(result):
            return False
        self._fail(result, f"tmux kill-session failed for {name}")
        return False

    async def capture(self, name: str, lines: int = 15) -> str | None:
        """Visible output plus ``lines`` of scrollback; None when the session is gone."""

        result = await self._tmux("capture-pane", "-p", "-t", _pane_target(name), "-S", f"-{lines}")
        if not result.ok:
            return None
        return result.stdout

    async def pane_title(self, name: str) -> str | None:
        result = await self._tmux("display-message", "-p", "-t", _pane_target(name), "#{pane_title}")
        if not result.ok:
            return None
        return result.stdout.strip()

    async def pane_path(self, name: str) -> str | None:
        """Current directory of the session's active pane."""

        result = await self._tmux(
            "display-message", "-p", "-t", _pane_target(name), "#{pane_current_path}"
        )
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def environment_value(self, name: str, key: str) -> str | None:
        result = await self._tmux("show-environment", "-t", _session_target(name), key)
        if not result.ok:
            return None
        line = result.stdout.strip()
        prefix = f"{key}="
        if not line.startswith(prefix):
            return None
        return line[len(prefix):]

    async def send_keys(self, name: str, *keys: str, literal: bool = False) -> bool:
        args = ["send-keys", "-t", _pane_target(name)]
        if literal:
            args.append("-l")
        result = await self._tmux(*args, *keys)
        if result.ok:
            return True
        if _is_missing(result):
            return False
        self._fail(result, f"tmux send-keys failed for {name}")
        return False

    async def send_input(self, name: str, text: str, *, submit: bool = True) -> bool:
        """Type ``text`` into the session, then press Enter as a separate key event."""

        if not await self.send_keys(name, text, literal=True):
            return False
        if submit:
            return await self.send_keys(name, "Enter")
        return True

    async def rename(self, old: str, new: str) -> bool:
        result = await self._tmux("rename-session", "-t", _session_target(old), new)
        if result.ok:
            return True
        if _is_missing(result):
            return False
        self._fail(result, f"tmux rename-session failed for {old}")
        return False

    async def rename_many(self, pairs: Sequence[tuple[str, str]]) -> list[tuple[str, str]]:
        """Rename sessions in two phases through temporary names.

        Dead sessions are skipped. Returns the pairs that were renamed. If any
        step fails, sessions already moved are put back before re-raising.
        """

        live = set(await self.list_sessions())
        moving = [(old, new) for old, new in pairs if old in live and old != new]
        staged: list[tuple[str, str, str]] = []
        done: list[tuple[str, str]] = []
        try:
            for index, (old, new) in enumerate(moving):
                temp = f"{old}-renaming-{index}"
                if await self.rename(old, temp):
                    staged.append((old, temp, new))
            for old, temp, new in staged:
                if not await self.rename(temp, new):
                    raise ExternalToolError(f"Session {temp} vanished during rename")
                done.append((old, new))
        except ExternalToolError:
            finished = {old for old, _ in done}
            for old, new in reversed(done):
                await self._rollback_rename(new, old)
            for old, temp, _ in reversed(staged):
                if old not in finished:
                    await self._rollback_rename(temp, old)
            raise
        return done

    async def _rollback_rename(self, current: str, original: str) -> None:
        try:
            await self.rename(current, original)
        except ExternalToolError:
            logger.exception(
                "Failed to roll back session rename",
                extra={"session": current, "original": original},
            )

    async def set_environment(self, name: str, key: str, value: str) -> bool:
        result = await self._tmux("set-environment", "-t", _session_target(name), key, value)
        return result.ok

    async def set_environment_many(self, name: str, variables: dict[str, str]) -> None:
        for key, value in variables.items():
            if not await self.set_environment(name, key, value):
                logger.debug("set-environment skipped", extra={"session": name, "key": key})

    async def shell_panes(self, name: str) -> list[str]:
        result = await self._tmux(
            "list-panes", "-s", "-t", _session_target(name), "-F", "#{pane_id}\t#{pane_current_command}"
        )
        if not result.ok:
            return []
        panes: list[str] = []
        for line in result.stdout.splitlines():
            pane_id, _, command = line.partition("\t")
            if Path(command.strip()).name.lstrip("-") in _SHELL_COMMANDS:
                panes.append(pane_id.strip())
        return panes

    async def update_working_directory(self, name: str, path: Path | str) -> int:
        """Send ``cd <path>`` to every idle shell pane; returns the pane count."""

        panes = await self.shell_panes(name)
        command = f"cd {shlex.quote(str(path))}"
        for pane in panes:
            await self._tmux("send-keys", "-t", pane, "C-u")
            await self._tmux("send-keys", "-t", pane, "-l", command)
            await self._tmux("send-keys", "-t", pane, "Enter")
        return len(panes)

    async def kill_all(self, names: Iterable[str]) -> list[str]:
        """Kill each named session, logging failures; returns names that were killed."""

        killed: list[str] = []
        for name in names:
            try:
                if await self.kill(name):
                    killed.append(name)
            except ExternalToolError:
                logger.exception("Failed to kill session", extra={"session": name})
        return killed


__all__ = ["TerminalSessionService"]
