"""Thread-name suggestions from an agent CLI run in one-shot mode."""

from __future__ import annotations

import logging
from typing import Callable

from .errors import ExternalToolError, ToolNotFoundError
from .naming import QUESTION_SLUG, sanitize_slug_output
from .profiles import AgentProfile
from .shell import CommandRunner

logger = logging.getLogger(__name__)

SLUG_PROMPT = (
    "You name git branches for coding tasks. Read the request below and reply with "
    "exactly one line of the form 'SLUG: <slug>' where <slug> is 2 to 5 lowercase words "
    "joined by dashes describing the task. If the request is a question rather than a "
    "task, reply 'SLUG: EMPTY'.\n\nRequest:\n{prompt}"
)

RunnerFactory = Callable[[str], CommandRunner]


class SlugGenerator:
    """Ask an agent CLI for a short descriptive slug.

    Returns ``QUESTION_SLUG`` when the prompt is a question and ``None`` when
    no usable answer was produced.
    """

    def __init__(
        self,
        *,
        timeout: float = 15.0,
        runner_factory: RunnerFactory | None = None,
    ) -> None:
        self._timeout = timeout
        self._runner_factory = runner_factory or (
            lambda executable: CommandRunner(name=executable, timeout=timeout)
        )
        self._runners: dict[str, CommandRunner] = {}

    def _runner(self, executable: str) -> CommandRunner:
        runner = self._runners.get(executable)
        if runner is None:
            runner = self._runner_factory(executable)
            self._runners[executable] = runner
        return runner

    async def suggest(self, profile: AgentProfile, prompt: str) -> str | None:
        if not profile.slug_command:
            return None
        args = profile.slug_args(SLUG_PROMPT.format(prompt=prompt.strip()[:2000]))
        executable, *rest = args
        try:
            runner = self._runner(executable)
            result = await runner.run(*rest, timeout=self._timeout)
        except ToolNotFoundError:
            logger.info("Slug generator unavailable", extra={"agent": profile.id})
            return None
        except ExternalToolError as exc:
            logger.warning(
                "Slug generation failed", extra={"agent": profile.id, "error": exc.diagnostic}
            )
            return None
        if not result.ok:
            logger.warning(
                "Slug generation exited non-zero",
                extra={"agent": profile.id, "returncode": result.returncode},
            )
            return None
        slug = sanitize_slug_output(result.stdout)
        if slug == QUESTION_SLUG:
            logger.info("Prompt classified as a question; skipping rename")
        return slug


__all__ = ["SLUG_PROMPT", "SlugGenerator"]
