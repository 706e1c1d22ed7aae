from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from threadloom.storage import ChromaJournal, ChromaUnavailableError


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


def _matches(metadata: dict[str, Any], where: dict[str, Any]) -> bool:
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    return all(metadata.get(key) == value for key, value in where.items())


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, where=None):
        filtered = self.records
        if where:
            filtered = [record for record in filtered if _matches(record.metadata, where)]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def make_journal(tmp_path: Path, client: StubClient | None = None) -> ChromaJournal:
    client = client or StubClient()
    return ChromaJournal(
        tmp_path,
        client_factory=lambda: client,
        clock=lambda: datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
    )


def test_record_and_fetch_events(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)

    event = journal.record_event(
        thread_id="thread-1",
        event_type="thread_created",
        body={"name": "river-otter"},
        metadata={"branch": "river-otter", "tabs": ["ignored"]},
    )

    assert event.thread_id == "thread-1"
    assert event.metadata["sequence"] == 1
    assert "tabs" not in event.metadata

    events = journal.fetch_thread_events("thread-1")
    assert len(events) == 1
    assert events[0].metadata["branch"] == "river-otter"
    assert events[0].document == '{"name": "river-otter"}'


def test_sequence_increments_per_thread(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)

    journal.record_event(thread_id="a", event_type="created", body="A")
    journal.record_event(thread_id="b", event_type="created", body="B")
    journal.record_event(thread_id="a", event_type="renamed", body="A2")

    sequences = [event.metadata["sequence"] for event in journal.fetch_thread_events("a")]
    assert sequences == [1, 2]


def test_history_keeps_most_recent_and_filters_by_type(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)

    journal.record_event(thread_id="t", event_type="thread_created", body={"name": "river-otter"})
    journal.record_event(thread_id="t", event_type="tab_added", body={"session": "app-acme-river-otter-tab-2"})
    journal.record_event(thread_id="t", event_type="thread_renamed", body="renamed")

    recent = journal.fetch_thread_events("t", limit=2)
    assert [event.event_type for event in recent] == ["tab_added", "thread_renamed"]
    assert recent[0].body == {"session": "app-acme-river-otter-tab-2"}
    assert recent[1].body == "renamed"
    assert [event.sequence for event in journal.fetch_thread_events("t", event_type="tab_added")] == [2]


def test_sequence_continues_after_reopening(tmp_path: Path) -> None:
    client = StubClient()
    make_journal(tmp_path, client).record_event(thread_id="t", event_type="created", body="A")

    event = make_journal(tmp_path, client).record_event(thread_id="t", event_type="renamed", body="B")

    assert event.sequence == 2


def test_list_alerts_filters_by_thread(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)

    journal.record_event(
        thread_id="t1",
        event_type="recovery_alert",
        body={"session": "app-acme-main"},
        metadata={"session": "app-acme-main", "failures": 3},
    )
    journal.record_event(thread_id="t2", event_type="recovery_alert", body={}, metadata={"failures": 5})
    journal.record_event(thread_id="t1", event_type="thread_created", body={})

    assert len(journal.list_alerts()) == 2
    alerts = journal.list_alerts("t1")
    assert [alert.metadata["failures"] for alert in alerts] == [3]


def test_ping_raises_when_client_unavailable(tmp_path: Path) -> None:
    def broken_factory():
        raise ChromaUnavailableError("no chroma")

    journal = ChromaJournal(tmp_path, client_factory=broken_factory)

    with pytest.raises(ChromaUnavailableError):
        journal.ping()
