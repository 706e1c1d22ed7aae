"""Git worktree and branch operations invoked as subprocesses."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .errors import (
    BaseBranchMissingError,
    BranchExistsError,
    ExternalToolError,
    PathExistsError,
)
from .shell import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

HostingProvider = Literal["github", "gitlab", "bitbucket", "unknown"]

_CONVENTIONAL_DEFAULTS = ("main", "master", "develop")
_SCP_LIKE = re.compile(r"^(?:[^@/]+@)?(?P<host>[^:/]+):(?P<path>[^/].*)$")
_URL_LIKE = re.compile(r"^[a-z+]+://(?:[^@/]+@)?(?P<host>[^/:]+)(?::\d+)?/(?P<path>.+)$")


@dataclass(slots=True, frozen=True)
class GitRemote:
    """A parsed ``git remote -v`` fetch entry."""

    name: str
    url: str
    host: str
    path: str
    provider: HostingProvider

    @property
    def web_url(self) -> str | None:
        if self.provider == "unknown":
            return None
        return f"https://{self.host}/{self.path}"


@dataclass(slots=True, frozen=True)
class WorktreeEntry:
    path: Path
    branch: str | None
    head: str | None


def classify_host(host: str) -> HostingProvider:
    lowered = host.lower()
    for provider in ("github", "gitlab", "bitbucket"):
        if provider in lowered:
            return provider  # type: ignore[return-value]
    return "unknown"


def parse_remote_url(name: str, url: str) -> GitRemote | None:
    """Parse scp-like (``git@host:owner/repo.git``) and URL-style remotes."""

    match = _URL_LIKE.match(url) or _SCP_LIKE.match(url)
    if match is None:
        return None
    host = match.group("host")
    path = match.group("path").strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return GitRemote(name=name, url=url, host=host, path=path, provider=classify_host(host))


class GitWorktreeService:
    """Wraps the git CLI for worktree, branch and status queries."""

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    async def _git(self, *args: str, cwd: Path | str) -> CommandResult:
        return await self._runner.run(*args, cwd=cwd)

    async def _git_checked(self, *args: str, cwd: Path | str, message: str) -> CommandResult:
        result = await self._git(*args, cwd=cwd)
        return result.check(message)

    async def is_repository(self, path: Path | str) -> bool:
        if not Path(path).is_dir():
            return False
        result = await self._git("rev-parse", "--git-dir", cwd=path)
        return result.ok

    async def branch_exists(self, repo_path: Path | str, branch: str) -> bool:
        result = await self._git(
            "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=repo_path
        )
        return result.ok

    async def ref_exists(self, repo_path: Path | str, ref: str) -> bool:
        result = await self._git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", cwd=repo_path)
        return result.ok

    async def current_branch(self, path: Path | str) -> str | None:
        result = await self._git("symbolic-ref", "--quiet", "--short", "HEAD", cwd=path)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def create_worktree(
        self,
        repo_path: Path | str,
        branch: str,
        target_path: Path | str,
        base_branch: str | None = None,
    ) -> Path:
        """Create ``branch`` from ``base_branch`` (or HEAD) checked out at ``target_path``."""

        target = Path(target_path)
        if target.exists():
            raise PathExistsError(f"Worktree path already exists: {target}")
        if await self.branch_exists(repo_path, branch):
            raise BranchExistsError(f"Branch already exists: {branch}")
        if base_branch and not await self.ref_exists(repo_path, base_branch):
            raise BaseBranchMissingError(f"Base branch not found: {base_branch}")

        target.parent.mkdir(parents=True, exist_ok=True)
        args = ["-c", "core.hooksPath=/dev/null", "worktree", "add", "-b", branch, str(target)]
        if base_branch:
            args.append(base_branch)
        await self._git_checked(*args, cwd=repo_path, message=f"git worktree add failed for {branch}")
        logger.info("Created worktree", extra={"branch": branch, "path": str(target)})
        return target

    async def add_worktree_for_branch(
        self, repo_path: Path | str, branch: str, target_path: Path | str
    ) -> Path:
        """Check out an existing ``branch`` at ``target_path``."""

        target = Path(target_path)
        if target.exists():
            raise PathExistsError(f"Worktree path already exists: {target}")
        target.parent.mkdir(parents=True, exist_ok=True)
        await self._git_checked(
            "-c", "core.hooksPath=/dev/null", "worktree", "add", str(target), branch,
            cwd=repo_path,
            message=f"git worktree add failed for {branch}",
        )
        return target

    async def remove_worktree(self, repo_path: Path | str, path: Path | str) -> None:
        """Remove the worktree at ``path``; an already missing path counts as success."""

        target = Path(path)
        if target.exists():
            result = await self._git("worktree", "remove", "--force", str(target), cwd=repo_path)
            if not result.ok and "is not a working tree" not in result.stderr:
                result.check(f"git worktree remove failed for {target}")
        await self.prune_worktrees(repo_path)
        logger.info("Removed worktree", extra={"path": str(target)})

    async def move_worktree(
        self, repo_path: Path | str, old_path: Path | str, new_path: Path | str
    ) -> None:
        destination = Path(new_path)
        if destination.exists():
            raise PathExistsError(f"Worktree path already exists: {destination}")
        await self._git_checked(
            "worktree", "move", str(old_path), str(destination),
            cwd=repo_path,
            message=f"git worktree move failed for {old_path}",
        )

    async def prune_worktrees(self, repo_path: Path | str) -> None:
        result = await self._git("worktree", "prune", cwd=repo_path)
        if not result.ok:
            logger.warning(
                "git worktree prune failed",
                extra={"repo": str(repo_path), "stderr": result.stderr.strip()},
            )

    async def list_worktrees(self, repo_path: Path | str) -> list[WorktreeEntry]:
        result = await self._git_checked(
            "worktree", "list", "--porcelain", cwd=repo_path, message="git worktree list failed"
        )
        entries: list[WorktreeEntry] = []
        current: dict[str, str] = {}
        for line in result.stdout.splitlines() + [""]:
            if not line.strip():
                if "worktree" in current:
                    branch = current.get("branch")
                    if branch and branch.startswith("refs/heads/"):
                        branch = branch[len("refs/heads/"):]
                    entries.append(
                        WorktreeEntry(
                            path=Path(current["worktree"]), branch=branch, head=current.get("HEAD")
                        )
                    )
                current = {}
                continue
            key, _, value = line.partition(" ")
            current[key] = value
        return entries

    async def rename_branch(self, repo_path: Path | str, old: str, new: str) -> None:
        if await self.branch_exists(repo_path, new):
            raise BranchExistsError(f"Branch already exists: {new}")
        await self._git_checked(
            "branch", "-m", old, new, cwd=repo_path, message=f"git branch -m {old} {new} failed"
        )

    async def delete_branch(self, repo_path: Path | str, branch: str) -> bool:
        """Force-delete ``branch``; returns False when it did not exist."""

        if not await self.branch_exists(repo_path, branch):
            return False
        await self._git_checked(
            "branch", "-D", branch, cwd=repo_path, message=f"git branch -D {branch} failed"
        )
        return True

    async def is_clean(self, path: Path | str) -> bool:
        result = await self._git_checked(
            "status", "--porcelain", cwd=path, message=f"git status failed in {path}"
        )
        return not result.stdout.strip()

    async def is_merged_into(self, path: Path | str, base: str) -> bool:
        """True iff HEAD of ``path`` is an ancestor of (or equal to) ``base``."""

        result = await self._git("merge-base", "--is-ancestor", "HEAD", base, cwd=path)
        if result.returncode in (0, 1):
            return result.ok
        result.check(f"git merge-base failed for {base}")
        return False

    async def detect_default_branch(self, repo_path: Path | str) -> str | None:
        result = await self._git("symbolic-ref", "--quiet", "refs/remotes/origin/HEAD", cwd=repo_path)
        if result.ok:
            ref = result.stdout.strip()
            prefix = "refs/remotes/origin/"
            if ref.startswith(prefix) and len(ref) > len(prefix):
                return ref[len(prefix):]
        for candidate in _CONVENTIONAL_DEFAULTS:
            if await self.branch_exists(repo_path, candidate):
                return candidate
        return None

    async def get_remotes(self, repo_path: Path | str) -> list[GitRemote]:
        """Parsed fetch remotes, ``origin`` first."""

        result = await self._git("remote", "-v", cwd=repo_path)
        if not result.ok:
            raise ExternalToolError(
                "git remote -v failed",
                args=result.args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        remotes: dict[str, GitRemote] = {}
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) < 3 or parts[2] != "(fetch)" or parts[0] in remotes:
                continue
            remote = parse_remote_url(parts[0], parts[1])
            if remote is not None:
                remotes[remote.name] = remote
        return sorted(remotes.values(), key=lambda remote: (remote.name != "origin", remote.name))


__all__ = [
    "GitRemote",
    "GitWorktreeService",
    "HostingProvider",
    "WorktreeEntry",
    "classify_host",
    "parse_remote_url",
]
