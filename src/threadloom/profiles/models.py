"""Profile models describing how each agent type is started and observed."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, field_validator


class AgentProfile(BaseModel):
    """Configuration for one agent type (``claude``, ``codex``, ``custom``...)."""

    id: str = Field(..., description="Agent type identifier stored on threads and projects.")
    title: str = Field(..., description="Display title for the agent.")
    command: str = Field(..., description="Shell command that starts the agent in a session.")
    supports_resume: bool = Field(
        default=False,
        description="Whether a recreated session can pick up the prior conversation.",
    )
    resume_command: str | None = Field(
        default=None,
        description="Input sent to a recreated agent session to resume prior context.",
    )
    busy_markers: list[str] = Field(
        default_factory=list,
        description="Regexes over the captured tail that indicate the agent is working.",
    )
    title_busy_markers: list[str] = Field(
        default_factory=list,
        description="Regexes over the pane title that indicate the agent is working.",
    )
    waiting_markers: list[str] = Field(
        default_factory=list,
        description="Regexes over the captured tail that indicate a confirmation prompt.",
    )
    debounce_seconds: float = Field(
        default=4.0,
        description="How long output must stay unchanged before busy becomes idle.",
    )
    capture_lines: int = Field(
        default=15,
        description="Number of trailing non-empty lines inspected per sample.",
    )
    slug_command: list[str] = Field(
        default_factory=list,
        description="One-shot CLI invocation used to name a thread; '{prompt}' is substituted.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("Agent profile id must not be empty")
        return normalized

    @field_validator("busy_markers", "title_busy_markers", "waiting_markers", mode="before")
    @classmethod
    def _ensure_patterns(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            raise TypeError("Marker patterns must be a sequence of regular expressions")
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid marker pattern {pattern!r}: {exc}") from exc
        return list(value)

    @field_validator("debounce_seconds")
    @classmethod
    def _validate_debounce(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("debounce_seconds must be positive")
        return value

    @field_validator("capture_lines")
    @classmethod
    def _validate_capture_lines(cls, value: int) -> int:
        if value < 1:
            raise ValueError("capture_lines must be >= 1")
        return value

    def slug_args(self, prompt: str) -> list[str]:
        return [part.replace("{prompt}", prompt) for part in self.slug_command]


__all__ = ["AgentProfile"]
