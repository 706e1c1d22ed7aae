"""Error taxonomy shared by the threadloom services."""

from __future__ import annotations

from typing import Iterable, Sequence


class ThreadloomError(RuntimeError):
    """Base class for threadloom errors."""


class ValidationError(ThreadloomError):
    """Raised when a request is rejected before touching external state."""


class NotFoundError(ValidationError):
    """Raised when a project, thread or tab id is unknown."""


class PathExistsError(ValidationError):
    """Raised when a worktree target directory already exists."""


class BranchExistsError(ValidationError):
    """Raised when a branch to be created already exists."""


class BaseBranchMissingError(ValidationError):
    """Raised when the requested base branch cannot be resolved."""


class ConsistencyError(ThreadloomError):
    """Raised when an operation would violate a naming or ordering invariant."""


class StateLoadError(ThreadloomError):
    """Raised when the persisted state document cannot be read."""


class ExternalToolError(ThreadloomError):
    """Raised when git or tmux exits non-zero or times out."""

    def __init__(
        self,
        message: str,
        *,
        args: Sequence[str] = (),
        returncode: int | None = None,
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.command = tuple(args)
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out

    @property
    def diagnostic(self) -> str:
        """Human-readable summary including captured stderr."""

        detail = self.stderr.strip()
        base = str(self)
        return f"{base}: {detail}" if detail else base


class ToolNotFoundError(ExternalToolError):
    """Raised when a required executable cannot be located."""


class ConfirmationRequired(ThreadloomError):
    """Raised when archive preconditions are unmet and confirmation is needed."""

    def __init__(self, reasons: Iterable[str]) -> None:
        self.reasons = list(reasons)
        super().__init__("Confirmation required: " + "; ".join(self.reasons))


__all__ = [
    "BaseBranchMissingError",
    "BranchExistsError",
    "ConfirmationRequired",
    "ConsistencyError",
    "ExternalToolError",
    "NotFoundError",
    "PathExistsError",
    "StateLoadError",
    "ThreadloomError",
    "ToolNotFoundError",
    "ValidationError",
]
