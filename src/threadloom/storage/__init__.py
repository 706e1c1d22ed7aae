"""Persistence for the threadloom model and its event journal."""

from .chroma import RECOVERY_ALERT, ChromaJournal, ChromaUnavailableError, JournalEvent
from .models import (
    AppSettings,
    Project,
    StateDocument,
    Tab,
    TabKind,
    Thread,
    ThreadSection,
)
from .state import StateStore

__all__ = [
    "AppSettings",
    "ChromaJournal",
    "ChromaUnavailableError",
    "JournalEvent",
    "Project",
    "RECOVERY_ALERT",
    "StateDocument",
    "StateStore",
    "Tab",
    "TabKind",
    "Thread",
    "ThreadSection",
]
