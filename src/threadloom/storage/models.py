"""Persisted data model: projects, threads, tabs and global settings."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from ..naming import repo_slug

PROJECT_NAME_VARIABLE = "$THREADLOOM_PROJECT_NAME"
STATE_VERSION = 1


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Project(BaseModel):
    """A source repository threads are created against."""

    id: str = Field(default_factory=_new_id)
    name: str
    repo_path: str
    worktrees_base_path: str = Field(
        default=f"~/.threadloom/worktrees/{PROJECT_NAME_VARIABLE}",
        description="Parent directory for thread worktrees; may use $THREADLOOM_PROJECT_NAME.",
    )
    default_branch: str | None = None
    agent_type: str | None = None
    terminal_injection_command: str | None = None
    agent_context_injection: str | None = None

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Project name must not be empty")
        return normalized

    @property
    def slug(self) -> str:
        return repo_slug(self.name)

    def resolved_worktrees_base(self) -> Path:
        raw = self.worktrees_base_path.replace(PROJECT_NAME_VARIABLE, self.name)
        return Path(raw).expanduser()


class TabKind(str, Enum):
    AGENT = "agent"
    SHELL = "shell"


class Tab(BaseModel):
    """One terminal session belonging to a thread."""

    session_name: str
    kind: TabKind = TabKind.SHELL
    agent_type: str | None = None
    display_name: str | None = None

    @property
    def is_agent(self) -> bool:
        return self.kind is TabKind.AGENT


class Thread(BaseModel):
    """A unit of work bound to a worktree and branch (or the root checkout)."""

    id: str = Field(default_factory=_new_id)
    project_id: str
    name: str
    worktree_path: str
    branch_name: str = ""
    is_main: bool = False
    tabs: list[Tab] = Field(default_factory=list)
    pinned_sessions: list[str] = Field(default_factory=list)
    selected_agent_type: str | None = None
    unread_sessions: set[str] = Field(default_factory=set)
    waiting_sessions: set[str] = Field(default_factory=set)
    busy_sessions: set[str] = Field(default_factory=set, exclude=True)
    last_selected_session: str | None = None
    section_id: str | None = None
    is_pinned: bool = False
    is_dirty: bool = False
    is_delivered: bool = False
    is_archived: bool = False
    did_auto_rename: bool = False
    display_order: int = 0
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_pinned_prefix(self) -> "Thread":
        names = self.session_names
        if self.pinned_sessions != names[: len(self.pinned_sessions)]:
            raise ValueError("Pinned sessions must be a prefix of the tab list")
        return self

    @property
    def session_names(self) -> list[str]:
        return [tab.session_name for tab in self.tabs]

    @property
    def agent_sessions(self) -> set[str]:
        return {tab.session_name for tab in self.tabs if tab.is_agent}

    @property
    def custom_tab_names(self) -> dict[str, str]:
        return {tab.session_name: tab.display_name for tab in self.tabs if tab.display_name}

    @property
    def pinned_count(self) -> int:
        return len(self.pinned_sessions)

    def tab(self, session_name: str) -> Tab | None:
        return next((tab for tab in self.tabs if tab.session_name == session_name), None)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "project_id": self.project_id,
            "branch": self.branch_name,
            "worktree_path": self.worktree_path,
            "is_main": self.is_main,
            "is_archived": self.is_archived,
            "is_delivered": self.is_delivered,
            "section_id": self.section_id,
            "tabs": [
                {
                    "session_name": tab.session_name,
                    "kind": tab.kind.value,
                    "display_name": tab.display_name,
                    "pinned": tab.session_name in self.pinned_sessions,
                }
                for tab in self.tabs
            ],
            "busy": sorted(self.busy_sessions),
            "waiting": sorted(self.waiting_sessions),
            "unread": sorted(self.unread_sessions),
        }


class ThreadSection(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    color: str = "gray"
    sort_order: int = 0
    is_visible: bool = True


def default_sections() -> list[ThreadSection]:
    return [
        ThreadSection(name="TODO", color="gray", sort_order=0),
        ThreadSection(name="In Progress", color="blue", sort_order=1),
        ThreadSection(name="Reviewing", color="purple", sort_order=2),
        ThreadSection(name="Done", color="green", sort_order=3),
    ]


class AppSettings(BaseModel):
    """User-editable settings persisted with the model."""

    active_agents: list[str] = Field(default_factory=lambda: ["claude"])
    default_agent_type: str | None = "claude"
    custom_agent_command: str = ""
    auto_rename_threads: bool = True
    sections: list[ThreadSection] = Field(default_factory=default_sections)
    terminal_injection_command: str = ""
    agent_context_injection: str = ""

    def default_section(self) -> ThreadSection | None:
        visible = sorted(
            (section for section in self.sections if section.is_visible),
            key=lambda section: section.sort_order,
        )
        return visible[0] if visible else None


class StateDocument(BaseModel):
    """Root of the persisted JSON document."""

    version: int = STATE_VERSION
    projects: list[Project] = Field(default_factory=list)
    threads: list[Thread] = Field(default_factory=list)
    settings: AppSettings = Field(default_factory=AppSettings)

    @property
    def active_threads(self) -> list[Thread]:
        return [thread for thread in self.threads if not thread.is_archived]


__all__ = [
    "AppSettings",
    "PROJECT_NAME_VARIABLE",
    "Project",
    "STATE_VERSION",
    "StateDocument",
    "Tab",
    "TabKind",
    "Thread",
    "ThreadSection",
    "default_sections",
]
