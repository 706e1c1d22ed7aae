"""Threadloom diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from threadloom.config import ThreadloomSettings
from threadloom.errors import StateLoadError
from threadloom.storage import ChromaJournal, ChromaUnavailableError, StateStore


def load_journal(settings: ThreadloomSettings) -> ChromaJournal:
    try:
        journal = ChromaJournal(settings.chroma_persist_path)
        journal.ping()
    except ChromaUnavailableError as exc:
        print(f"Journal unavailable: {exc}")
        raise SystemExit(1)
    return journal


def cmd_threads(args: argparse.Namespace) -> None:
    settings = ThreadloomSettings()
    try:
        document = StateStore(settings.state_path.expanduser()).load()
    except StateLoadError as exc:
        print(f"State unreadable: {exc}")
        raise SystemExit(1)

    threads = [
        thread
        for thread in document.threads
        if args.all or not thread.is_archived
    ]
    if args.json:
        print(json.dumps([thread.summary() for thread in threads], indent=2))
        return
    projects = {project.id: project.name for project in document.projects}
    for thread in threads:
        flags = "".join(
            flag
            for flag, enabled in (
                ("M", thread.is_main),
                ("A", thread.is_archived),
                ("*", thread.is_dirty),
                ("?", bool(thread.waiting_sessions)),
                ("!", bool(thread.unread_sessions)),
            )
            if enabled
        )
        project = projects.get(thread.project_id, thread.project_id)
        print(f"{project}/{thread.name} [{flags or '-'}] {len(thread.tabs)} tab(s) -> {thread.worktree_path}")


def cmd_events(args: argparse.Namespace) -> None:
    settings = ThreadloomSettings()
    journal = load_journal(settings)
    events = journal.fetch_thread_events(
        args.thread_id, limit=args.limit, event_type=args.event_type
    )
    payload = [
        {
            "event_id": event.id,
            "thread_id": event.thread_id,
            "event_type": event.event_type,
            "timestamp": event.timestamp.isoformat(),
            "document": event.document,
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_alerts(args: argparse.Namespace) -> None:
    settings = ThreadloomSettings()
    journal = load_journal(settings)
    alerts = journal.list_alerts(args.thread_id)
    alerts.sort(key=lambda event: event.timestamp)
    if args.limit is not None and args.limit > 0:
        alerts = alerts[-args.limit :]

    payload = [
        {
            "event_id": event.id,
            "thread_id": event.thread_id,
            "session_name": event.metadata.get("session"),
            "failure_count": event.metadata.get("failures"),
            "timestamp": event.timestamp.isoformat(),
        }
        for event in alerts
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Threadloom diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_threads = sub.add_parser("threads", help="List threads from the state file")
    p_threads.add_argument("--json", action="store_true", help="Output JSON")
    p_threads.add_argument("--all", action="store_true", help="Include archived threads")
    p_threads.set_defaults(func=cmd_threads)

    p_events = sub.add_parser("events", help="Show a thread's journal history")
    p_events.add_argument("--thread-id", required=True)
    p_events.add_argument("--event-type")
    p_events.add_argument("--limit", type=int, default=None)
    p_events.set_defaults(func=cmd_events)

    p_alerts = sub.add_parser(
        "alerts",
        help="List session recovery alerts (recreation failure threshold breaches)",
    )
    p_alerts.add_argument("--thread-id")
    p_alerts.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N alerts",
    )
    p_alerts.set_defaults(func=cmd_alerts)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
