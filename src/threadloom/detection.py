"""Infer agent activity from sampled terminal output.

Each agent tab is tracked as ``idle``, ``busy`` or ``waiting`` plus a sticky
``unread_completion`` flag. Submitted input flips a tab to busy at once;
samples move it between states using per-agent marker patterns and a
debounce window. Only state changes produce transitions.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Protocol

from .profiles import AgentProfile

ANSI_FULL_RE = re.compile(
    r"\x1b\[[0-9;?]*[A-Za-z]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[()][0-9A-Za-z]"
    r"|\x1bP[^\x1b]*\x1b\\"
)


def strip_ansi(text: str) -> str:
    return ANSI_FULL_RE.sub("", text)


def tail_lines(text: str, count: int) -> str:
    """Last ``count`` non-empty lines, right-stripped."""

    lines = [line.rstrip() for line in text.splitlines() if line.strip()]
    return "\n".join(lines[-count:])


class ActivityState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    WAITING = "waiting"


class OutputMatcher(Protocol):
    """Classifies a captured tail; swapped per agent type."""

    def is_waiting(self, text: str) -> bool:
        ...

    def is_busy(self, text: str, title: str | None = None) -> bool:
        ...


class MarkerMatcher:
    """Regex-list matcher built from an agent profile."""

    def __init__(
        self,
        *,
        busy: Iterable[str] = (),
        waiting: Iterable[str] = (),
        title_busy: Iterable[str] = (),
    ) -> None:
        self._busy = [re.compile(pattern, re.MULTILINE) for pattern in busy]
        self._waiting = [re.compile(pattern, re.MULTILINE) for pattern in waiting]
        self._title_busy = [re.compile(pattern) for pattern in title_busy]

    @classmethod
    def from_profile(cls, profile: AgentProfile) -> "MarkerMatcher":
        return cls(
            busy=profile.busy_markers,
            waiting=profile.waiting_markers,
            title_busy=profile.title_busy_markers,
        )

    def is_waiting(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self._waiting)

    def is_busy(self, text: str, title: str | None = None) -> bool:
        if any(pattern.search(text) for pattern in self._busy):
            return True
        return bool(title) and any(pattern.search(title) for pattern in self._title_busy)


@dataclass(slots=True)
class TabActivity:
    state: ActivityState = ActivityState.IDLE
    unread_completion: bool = False
    last_capture: str | None = None
    last_change_at: float = 0.0


@dataclass(slots=True, frozen=True)
class ActivityTransition:
    session_name: str
    previous: ActivityState
    current: ActivityState
    completed: bool = False


class AgentStateDetector:
    """Per-session activity state machine."""

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._tabs: dict[str, TabActivity] = {}

    def activity(self, session_name: str) -> TabActivity:
        return self._tabs.setdefault(session_name, TabActivity())

    def state(self, session_name: str) -> ActivityState:
        return self.activity(session_name).state

    def note_input(self, session_name: str) -> ActivityTransition | None:
        """A line was submitted to the tab: busy immediately."""

        activity = self.activity(session_name)
        activity.last_change_at = self._clock()
        return self._move(session_name, activity, ActivityState.BUSY)

    def observe(
        self,
        session_name: str,
        capture: str,
        *,
        matcher: OutputMatcher,
        debounce: float,
        focused: bool,
        title: str | None = None,
        capture_lines: int = 15,
    ) -> ActivityTransition | None:
        """Feed one sample; returns a transition only when the state changes."""

        activity = self.activity(session_name)
        now = self._clock()
        text = tail_lines(strip_ansi(capture), capture_lines)
        changed = text != activity.last_capture
        if changed:
            activity.last_capture = text
            activity.last_change_at = now

        previous = activity.state
        if matcher.is_waiting(text):
            target = ActivityState.WAITING
        elif matcher.is_busy(text, title):
            target = ActivityState.BUSY
        elif previous is ActivityState.WAITING:
            target = ActivityState.BUSY
            activity.last_change_at = now
        elif (
            previous is ActivityState.BUSY
            and not changed
            and now - activity.last_change_at >= debounce
        ):
            target = ActivityState.IDLE
        else:
            target = previous

        completed = False
        if previous is ActivityState.BUSY and target is ActivityState.IDLE and not focused:
            activity.unread_completion = True
            completed = True
        return self._move(session_name, activity, target, completed=completed)

    def _move(
        self,
        session_name: str,
        activity: TabActivity,
        target: ActivityState,
        *,
        completed: bool = False,
    ) -> ActivityTransition | None:
        previous = activity.state
        if previous is target:
            return None
        activity.state = target
        return ActivityTransition(
            session_name=session_name, previous=previous, current=target, completed=completed
        )

    def mark_seen(self, session_name: str) -> bool:
        """Clear the unread flag when the tab gains focus; live state is untouched."""

        activity = self._tabs.get(session_name)
        if activity is None or not activity.unread_completion:
            return False
        activity.unread_completion = False
        return True

    def rename(self, old: str, new: str) -> None:
        if old in self._tabs:
            self._tabs[new] = self._tabs.pop(old)

    def forget(self, session_name: str) -> None:
        self._tabs.pop(session_name, None)

    def reset(self, session_name: str) -> None:
        """Start over for a recreated session."""

        self._tabs[session_name] = TabActivity()


__all__ = [
    "ActivityState",
    "ActivityTransition",
    "AgentStateDetector",
    "MarkerMatcher",
    "OutputMatcher",
    "TabActivity",
    "strip_ansi",
    "tail_lines",
]
