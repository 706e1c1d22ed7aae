"""Async runner for external command-line tools (git, tmux, agent CLIs)."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping

from ..errors import ExternalToolError, ToolNotFoundError
from .utils import sanitize_environment

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of a single tool invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self, message: str | None = None) -> "CommandResult":
        """Raise ``ExternalToolError`` unless the command succeeded."""

        if not self.ok:
            raise ExternalToolError(
                message or f"{self.args[0] if self.args else 'command'} exited with {self.returncode}",
                args=self.args,
                returncode=self.returncode,
                stderr=self.stderr,
            )
        return self


class CommandRunner:
    """Execute a single external tool asynchronously with a bounded timeout."""

    def __init__(
        self,
        executable: Path | str | None = None,
        *,
        name: str,
        timeout: float = 15.0,
    ) -> None:
        self._name = name
        self._timeout = timeout
        self._executable_path = self._resolve_executable(name, executable)

    @staticmethod
    def _resolve_executable(name: str, explicit: Path | str | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ToolNotFoundError(f"{name} executable not found at {candidate}")

        binary = shutil.which(name)
        if binary is None:
            raise ToolNotFoundError(f"{name} executable not found on PATH")
        return Path(binary)

    @property
    def name(self) -> str:
        return self._name

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(
        self,
        *args: str,
        cwd: Path | str | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run the tool with ``args``; a timeout raises ``ExternalToolError``."""

        return await self._invoke(
            tuple(args),
            cwd=cwd,
            timeout=self._timeout if timeout is None else timeout,
            env=env,
        )

    async def _invoke(
        self,
        args: tuple[str, ...],
        *,
        cwd: Path | str | None,
        timeout: float,
        env: Mapping[str, str] | None,
    ) -> CommandResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=sanitize_environment(env),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            logger.warning(
                "Command timed out",
                extra={"tool": self._name, "command": list(args), "timeout": timeout},
            )
            raise ExternalToolError(
                f"{self._name} timed out after {timeout:g}s",
                args=tuple(cmd),
                timed_out=True,
            ) from exc
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CommandResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


Responder = Callable[[tuple[str, ...]], "CommandResult | None"]


class FakeCommandRunner(CommandRunner):
    """Test double that records invocations and replays scripted results."""

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[CommandResult] | None = None,
        *,
        name: str = "fake",
        responder: Responder | None = None,
    ) -> None:
        self._name = name
        self._timeout = 15.0
        self._responses = list(responses or [])
        self._responder = responder
        self._invocations: list[tuple[str, ...]] = []
        self._executable_path = Path(f"/tmp/fake-{name}")

    async def _invoke(self, args, *, cwd, timeout, env):  # type: ignore[override]
        self._invocations.append(tuple(args))
        if self._responder is not None:
            scripted = self._responder(tuple(args))
            if scripted is not None:
                return scripted
        if self._responses:
            return self._responses.pop(0)
        return CommandResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


__all__ = ["CommandResult", "CommandRunner", "FakeCommandRunner"]
