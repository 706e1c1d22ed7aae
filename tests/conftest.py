from __future__ import annotations

import itertools
import shutil
from pathlib import Path
from typing import Any

import pytest

from threadloom.config import ThreadloomSettings
from threadloom.detection import AgentStateDetector
from threadloom.errors import (
    BranchExistsError,
    ConsistencyError,
    ExternalToolError,
    PathExistsError,
)
from threadloom.events import EventBus
from threadloom.git import WorktreeEntry
from threadloom.orchestrator import ThreadOrchestrator
from threadloom.profiles import AgentProfile
from threadloom.storage import StateStore


class FakeTerminal:
    """In-memory stand-in for TerminalSessionService."""

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, str]] = {}
        self.sent: list[tuple[str, str]] = []
        self.captures: dict[str, str] = {}
        self.titles: dict[str, str] = {}
        self.environment: dict[str, dict[str, str]] = {}
        self.cd_calls: list[tuple[str, str]] = []
        self.create_failures: set[str] = set()
        self.kill_failures: set[str] = set()
        self.fail_rename = False
        self.env_failures: set[str] = set()
        self.list_error: Exception | None = None

    async def is_alive(self, name: str) -> bool:
        return name in self.sessions

    async def list_sessions(self) -> list[str]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.sessions)

    async def create_session(self, name: str, working_dir, command: str) -> None:
        if name in self.create_failures:
            raise ExternalToolError(f"tmux new-session failed for {name}", stderr="boom")
        if name in self.sessions:
            raise ConsistencyError(f"Session already exists: {name}")
        self.sessions[name] = {"cwd": str(working_dir), "command": command}

    async def ensure_session(self, name: str, working_dir, command: str) -> bool:
        if name in self.sessions:
            return False
        await self.create_session(name, working_dir, command)
        return True

    async def kill(self, name: str) -> bool:
        if name in self.kill_failures:
            raise ExternalToolError(f"tmux kill-session failed for {name}", stderr="boom")
        self.environment.pop(name, None)
        return self.sessions.pop(name, None) is not None

    async def kill_all(self, names) -> list[str]:
        killed = []
        for name in names:
            try:
                if await self.kill(name):
                    killed.append(name)
            except ExternalToolError:
                continue
        return killed

    async def capture(self, name: str, lines: int = 15) -> str | None:
        if name not in self.sessions:
            return None
        return self.captures.get(name, "")

    async def pane_title(self, name: str) -> str | None:
        return self.titles.get(name)

    async def send_input(self, name: str, text: str, *, submit: bool = True) -> bool:
        if name not in self.sessions:
            return False
        self.sent.append((name, text))
        return True

    async def rename(self, old: str, new: str) -> bool:
        if old not in self.sessions:
            return False
        self.sessions[new] = self.sessions.pop(old)
        if old in self.environment:
            self.environment[new] = self.environment.pop(old)
        return True

    async def rename_many(self, pairs) -> list[tuple[str, str]]:
        if self.fail_rename:
            raise ExternalToolError("tmux rename-session failed", stderr="boom")
        done = []
        for old, new in pairs:
            if old != new and await self.rename(old, new):
                done.append((old, new))
        return done

    async def pane_path(self, name: str) -> str | None:
        session = self.sessions.get(name)
        return session["cwd"] if session else None

    async def environment_value(self, name: str, key: str) -> str | None:
        return self.environment.get(name, {}).get(key)

    async def set_environment_many(self, name: str, variables: dict[str, str]) -> None:
        if name in self.env_failures:
            raise ExternalToolError(f"tmux set-environment timed out for {name}", timed_out=True)
        self.environment.setdefault(name, {}).update(variables)

    async def update_working_directory(self, name: str, path) -> int:
        self.cd_calls.append((name, str(path)))
        return 1


class FakeGit:
    """In-memory stand-in for GitWorktreeService that creates real directories."""

    def __init__(self, repo: Path) -> None:
        self.repo = repo
        self.branches: set[str] = {"main"}
        self.worktree_branches: dict[Path, str] = {}
        self.dirty: set[Path] = set()
        self.unmerged: set[str] = set()

    async def is_repository(self, path) -> bool:
        return Path(path).is_dir()

    async def branch_exists(self, repo_path, branch: str) -> bool:
        return branch in self.branches

    async def current_branch(self, path) -> str | None:
        if Path(path) == self.repo:
            return "main"
        return self.worktree_branches.get(Path(path))

    async def create_worktree(self, repo_path, branch: str, target_path, base_branch=None) -> Path:
        target = Path(target_path)
        if target.exists():
            raise PathExistsError(f"Worktree path already exists: {target}")
        if branch in self.branches:
            raise BranchExistsError(f"Branch already exists: {branch}")
        target.mkdir(parents=True)
        (target / ".git").write_text(
            f"gitdir: {self.repo}/.git/worktrees/{target.name}\n", encoding="utf-8"
        )
        self.branches.add(branch)
        self.worktree_branches[target] = branch
        return target

    async def remove_worktree(self, repo_path, path) -> None:
        target = Path(path)
        if target.exists():
            shutil.rmtree(target)
        self.worktree_branches.pop(target, None)

    async def move_worktree(self, repo_path, old_path, new_path) -> None:
        destination = Path(new_path)
        if destination.exists():
            raise PathExistsError(f"Worktree path already exists: {destination}")
        Path(old_path).rename(destination)
        self.worktree_branches[destination] = self.worktree_branches.pop(Path(old_path))

    async def add_worktree_for_branch(self, repo_path, branch: str, target_path) -> Path:
        target = Path(target_path)
        if target.exists():
            raise PathExistsError(f"Worktree path already exists: {target}")
        target.mkdir(parents=True)
        (target / ".git").write_text(
            f"gitdir: {self.repo}/.git/worktrees/{target.name}\n", encoding="utf-8"
        )
        self.worktree_branches[target] = branch
        return target

    async def prune_worktrees(self, repo_path) -> None:
        for path in [path for path in self.worktree_branches if not path.exists()]:
            del self.worktree_branches[path]

    async def list_worktrees(self, repo_path) -> list[WorktreeEntry]:
        entries = [WorktreeEntry(path=self.repo, branch="main", head=None)]
        entries.extend(
            WorktreeEntry(path=path, branch=branch, head=None)
            for path, branch in self.worktree_branches.items()
        )
        return entries

    async def rename_branch(self, repo_path, old: str, new: str) -> None:
        if new in self.branches:
            raise BranchExistsError(f"Branch already exists: {new}")
        self.branches.discard(old)
        self.branches.add(new)
        for path, branch in list(self.worktree_branches.items()):
            if branch == old:
                self.worktree_branches[path] = new

    async def delete_branch(self, repo_path, branch: str) -> bool:
        if branch not in self.branches:
            return False
        self.branches.discard(branch)
        return True

    async def is_clean(self, path) -> bool:
        return Path(path) not in self.dirty

    async def is_merged_into(self, path, base: str) -> bool:
        return self.worktree_branches.get(Path(path)) not in self.unmerged

    async def detect_default_branch(self, repo_path) -> str | None:
        return "main"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def make_settings(tmp_path: Path, **overrides: Any) -> ThreadloomSettings:
    values: dict[str, Any] = {
        "THREADLOOM_STATE_PATH": tmp_path / "state" / "state.json",
        "CHROMA_PERSIST_PATH": tmp_path / "chroma",
        "THREADLOOM_PROFILE_PATHS": (tmp_path / "profiles",),
        "THREADLOOM_SHELL": "/bin/sh",
        "THREADLOOM_SAVE_DELAY": 0,
        "THREADLOOM_INJECTION_DELAY": 0,
        "THREADLOOM_PROMPT_DELAY": 0,
    }
    values.update(overrides)
    return ThreadloomSettings(**values)


def make_profiles() -> dict[str, AgentProfile]:
    claude = AgentProfile(
        id="claude",
        title="Claude",
        command="claude",
        supports_resume=True,
        resume_command="/resume",
        busy_markers=["esc to interrupt"],
        waiting_markers=[r"Do you want to proceed\?"],
        debounce_seconds=3,
    )
    codex = AgentProfile(id="codex", title="Codex", command="codex", busy_markers=["esc to interrupt"])
    return {claude.id: claude, codex.id: codex}


class Harness:
    def __init__(self, tmp_path: Path, **kwargs: Any) -> None:
        self.repo = (tmp_path / "repo").resolve()
        self.repo.mkdir(parents=True, exist_ok=True)
        self.worktrees = tmp_path / "worktrees"
        self.git = FakeGit(self.repo)
        self.terminal = FakeTerminal()
        self.settings = kwargs.pop("settings", None) or make_settings(tmp_path)
        self.store = StateStore(self.settings.state_path)
        self.clock = FakeClock()
        self.events: list[Any] = []
        bus = EventBus()
        bus.subscribe(self.events.append)
        names = itertools.cycle(kwargs.pop("names", ("river-otter",)))
        self.orchestrator = ThreadOrchestrator(
            store=self.store,
            git=self.git,
            terminal=self.terminal,
            profiles=kwargs.pop("profiles", None) or make_profiles(),
            settings=self.settings,
            events=bus,
            detector=AgentStateDetector(clock=self.clock),
            name_generator=lambda: next(names),
            **kwargs,
        )

    async def add_project(self, name: str = "acme", **kwargs: Any):
        kwargs.setdefault("worktrees_base_path", str(self.worktrees / "$THREADLOOM_PROJECT_NAME"))
        return await self.orchestrator.add_project(name, str(self.repo), **kwargs)

    def events_of(self, kind: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, kind)]


@pytest.fixture
def harness_factory(tmp_path: Path):
    def build(**kwargs: Any) -> Harness:
        return Harness(tmp_path, **kwargs)

    return build
