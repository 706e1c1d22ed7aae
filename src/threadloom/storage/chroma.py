"""Optional Chroma journal: per-thread history and recovery alerts.

The journal is append-only. Every event is one document holding the JSON
body; the thread id, event type, timestamp and a per-thread sequence number
live in metadata so queries filter on ``where`` clauses and never need
embeddings.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

EVENTS_COLLECTION = "threadloom_events"
RECOVERY_ALERT = "recovery_alert"

_SCALARS = (str, int, float, bool)


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


@dataclass(slots=True, frozen=True)
class JournalEvent:
    id: str
    thread_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    @property
    def sequence(self) -> int:
        return int(self.metadata.get("sequence", 0))

    @property
    def body(self) -> Any:
        try:
            return json.loads(self.document)
        except ValueError:
            return self.document


def _default_client(path: Path) -> Any:
    try:
        import chromadb
    except ImportError as exc:  # pragma: no cover - depends on environment
        raise ChromaUnavailableError(
            "chromadb package is not installed; install threadloom with persistence extras"
        ) from exc
    return chromadb.PersistentClient(path=str(path))


class ChromaJournal:
    """Thread lifecycle events stored in a single Chroma collection."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = EVENTS_COLLECTION,
        client_factory: Callable[[], Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or (lambda: _default_client(self._path))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collection: Any = None
        self._sequences: dict[str, int] = {}

    @property
    def collection_name(self) -> str:
        return self._collection_name

    @property
    def _events(self) -> Any:
        if self._collection is None:
            self._collection = self._client_factory().get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        """Connect to the collection; raises ``ChromaUnavailableError`` when that fails."""

        return self._events is not None

    def _next_sequence(self, thread_id: str) -> int:
        # Continue numbering across restarts from what is already stored.
        if thread_id not in self._sequences:
            existing = self._events.get(where={"thread_id": thread_id})
            self._sequences[thread_id] = len(existing.get("ids", []))
        self._sequences[thread_id] += 1
        return self._sequences[thread_id]

    def record_event(
        self,
        *,
        thread_id: str,
        event_type: str,
        body: Any,
        metadata: Mapping[str, Any] | None = None,
    ) -> JournalEvent:
        """Append one event.

        Metadata values that are not scalars are dropped; Chroma rejects them.
        The body is stored verbatim when it is a string and as JSON otherwise.
        """

        timestamp = self._clock()
        fields: dict[str, Any] = {
            key: value for key, value in (metadata or {}).items() if isinstance(value, _SCALARS)
        }
        fields.update(
            thread_id=thread_id,
            event_type=event_type,
            timestamp=timestamp.isoformat(),
            sequence=self._next_sequence(thread_id),
        )
        document = body if isinstance(body, str) else json.dumps(body, sort_keys=True)
        event = JournalEvent(
            id=f"{thread_id}:{uuid.uuid4().hex}",
            thread_id=thread_id,
            event_type=event_type,
            document=document,
            metadata=fields,
            timestamp=timestamp,
        )
        self._events.add(documents=[document], metadatas=[fields], ids=[event.id])
        return event

    def _query(self, where: dict[str, Any]) -> list[JournalEvent]:
        result = self._events.get(where=where)
        events = [
            JournalEvent(
                id=record_id,
                thread_id=metadata.get("thread_id", ""),
                event_type=metadata.get("event_type", ""),
                document=document,
                metadata=dict(metadata),
                timestamp=datetime.fromisoformat(metadata["timestamp"]),
            )
            for record_id, document, metadata in zip(
                result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
            )
            if isinstance(metadata.get("timestamp"), str)
        ]
        events.sort(key=lambda event: (event.timestamp, event.sequence))
        return events

    def fetch_thread_events(
        self,
        thread_id: str,
        *,
        limit: int | None = None,
        event_type: str | None = None,
    ) -> list[JournalEvent]:
        """A thread's history, oldest first; ``limit`` keeps the most recent events."""

        where: dict[str, Any] = {"thread_id": thread_id}
        if event_type:
            where = {"$and": [where, {"event_type": event_type}]}
        events = self._query(where)
        return events[-limit:] if limit else events

    def list_alerts(self, thread_id: str | None = None) -> list[JournalEvent]:
        """Recovery alerts raised when a session could not be recreated."""

        if thread_id:
            return self.fetch_thread_events(thread_id, event_type=RECOVERY_ALERT)
        return self._query({"event_type": RECOVERY_ALERT})


__all__ = ["ChromaJournal", "ChromaUnavailableError", "JournalEvent", "RECOVERY_ALERT"]
