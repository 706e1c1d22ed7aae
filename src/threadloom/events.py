"""Typed orchestrator events and the observer bus that delivers them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Union

if TYPE_CHECKING:
    from .storage.models import Thread

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DeadSessionsRecreated:
    thread_id: str
    session_names: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class AgentCompletion:
    thread_id: str
    unread_sessions: frozenset[str]


@dataclass(slots=True, frozen=True)
class AgentWaiting:
    thread_id: str
    waiting_sessions: frozenset[str]


@dataclass(slots=True, frozen=True)
class AgentBusy:
    thread_id: str
    busy_sessions: frozenset[str]


@dataclass(slots=True, frozen=True)
class ThreadsUpdated:
    threads: tuple["Thread", ...]


@dataclass(slots=True, frozen=True)
class SessionRecoveryFailed:
    thread_id: str
    session_name: str
    failure_count: int
    threshold: int
    error: str


OrchestratorEvent = Union[
    DeadSessionsRecreated,
    AgentCompletion,
    AgentWaiting,
    AgentBusy,
    ThreadsUpdated,
    SessionRecoveryFailed,
]
Observer = Callable[[OrchestratorEvent], None]


class EventBus:
    """Synchronous fan-out to registered observers."""

    def __init__(self) -> None:
        self._observers: list[Observer] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer``; the returned callable unsubscribes it."""

        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, event: OrchestratorEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception(
                    "Event observer failed", extra={"event": type(event).__name__}
                )


__all__ = [
    "AgentBusy",
    "AgentCompletion",
    "AgentWaiting",
    "DeadSessionsRecreated",
    "EventBus",
    "Observer",
    "OrchestratorEvent",
    "SessionRecoveryFailed",
    "ThreadsUpdated",
]
