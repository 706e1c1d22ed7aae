"""Startup commands and environment for thread sessions."""

from __future__ import annotations

import shlex

from ..shell import export_statement
from ..storage.models import Project, Thread

ENV_PROJECT_PATH = "THREADLOOM_PROJECT_PATH"
ENV_PROJECT_NAME = "THREADLOOM_PROJECT_NAME"
ENV_THREAD_NAME = "THREADLOOM_THREAD_NAME"
ENV_WORKTREE_PATH = "THREADLOOM_WORKTREE_PATH"


def session_environment(project: Project, thread: Thread) -> dict[str, str]:
    env = {
        ENV_PROJECT_PATH: project.repo_path,
        ENV_PROJECT_NAME: project.name,
    }
    if not thread.is_main:
        env[ENV_THREAD_NAME] = thread.name
        env[ENV_WORKTREE_PATH] = thread.worktree_path
    return env


def agent_start_command(
    env: dict[str, str], working_dir: str, agent_command: str, shell: str
) -> str:
    """Run the agent inside a login shell and drop back to a shell when it exits."""

    login = f"exec {shlex.quote(shell)} -l"
    inner = f"{export_statement(env)} && cd {shlex.quote(working_dir)} && {agent_command}; {login}"
    return f"{login} -c {shlex.quote(inner)}"


def shell_start_command(env: dict[str, str], working_dir: str, shell: str) -> str:
    return (
        f"{export_statement(env)} && cd {shlex.quote(working_dir)} "
        f"&& exec {shlex.quote(shell)} -l"
    )


__all__ = [
    "ENV_PROJECT_NAME",
    "ENV_PROJECT_PATH",
    "ENV_THREAD_NAME",
    "ENV_WORKTREE_PATH",
    "agent_start_command",
    "session_environment",
    "shell_start_command",
]
