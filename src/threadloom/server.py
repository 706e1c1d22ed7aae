"""FastMCP server bootstrap for threadloom."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import ThreadloomSettings, get_settings
from .errors import ToolNotFoundError
from .git import GitWorktreeService
from .orchestrator import ThreadOrchestrator
from .profiles import ProfileLoadError, ProfileLoader
from .shell import CommandRunner
from .slugs import SlugGenerator
from .storage import ChromaJournal, ChromaUnavailableError, StateStore
from .tmux import TerminalSessionService
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the threadloom server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _tool_metadata(runner: CommandRunner | None, error: str | None) -> dict[str, Any]:
    return {
        "available": runner is not None,
        "path": str(runner.executable) if runner is not None else None,
        "error": error,
    }


def build_orchestrator(
    settings: ThreadloomSettings,
    *,
    journal: ChromaJournal | None = None,
) -> ThreadOrchestrator:
    """Wire git, tmux, profiles and storage into an orchestrator.

    Raises ``ToolNotFoundError`` when git or tmux cannot be located.
    """

    git_runner = CommandRunner(settings.git_path, name="git", timeout=settings.command_timeout)
    tmux_runner = CommandRunner(settings.tmux_path, name="tmux", timeout=settings.command_timeout)
    profiles = ProfileLoader(settings.profile_paths).load_all()
    return ThreadOrchestrator(
        store=StateStore(settings.state_path),
        git=GitWorktreeService(git_runner),
        terminal=TerminalSessionService(tmux_runner),
        profiles=profiles,
        settings=settings,
        slug_generator=SlugGenerator(timeout=settings.slug_timeout),
        journal=journal,
    )


def create_server(
    settings: Optional[ThreadloomSettings] = None,
    orchestrator: ThreadOrchestrator | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with tools and a status resource."""

    settings = settings or get_settings()
    profile_loader = ProfileLoader(settings.profile_paths)

    journal: ChromaJournal | None = None
    journal_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "threadloom_events",
        "error": None,
    }
    try:
        journal = ChromaJournal(settings.chroma_persist_path)
        journal.ping()
        journal_metadata["available"] = True
    except ChromaUnavailableError as exc:
        journal_metadata["error"] = str(exc)
        journal = None

    if orchestrator is None:
        orchestrator = build_orchestrator(settings, journal=journal)

    tools_metadata: dict[str, Any] = {}
    for key, path in (("git", settings.git_path), ("tmux", settings.tmux_path)):
        try:
            tools_metadata[key] = _tool_metadata(CommandRunner(path, name=key), None)
        except ToolNotFoundError as exc:
            tools_metadata[key] = _tool_metadata(None, str(exc))

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
        await orchestrator.restore()
        await orchestrator.start()
        logger.info("Orchestrator started", extra={"threads": len(orchestrator.threads)})
        try:
            yield
        finally:
            await orchestrator.close()

    server = FastMCP(
        name="threadloom",
        version=__version__,
        instructions=(
            "Threadloom manages parallel coding threads: each thread is a git worktree "
            "and branch with tmux sessions running coding agents or shells. Use the tools "
            "to create, rename, archive and prompt threads."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(server, orchestrator=orchestrator)

    @server.resource(
        "resource://threadloom/status",
        name="threadloom_status",
        title="Threadloom Status",
        description="Projects, threads and agent activity for the running orchestrator.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        try:
            profile_ids = sorted(profile_loader.load_all())
            profile_error: str | None = None
        except ProfileLoadError as exc:
            profile_ids = []
            profile_error = str(exc)

        threads = orchestrator.threads
        alerts: list[dict[str, Any]] = []
        storage_error = None
        if journal is not None:
            try:
                alerts = [
                    {
                        "thread_id": event.thread_id,
                        "session_name": event.metadata.get("session"),
                        "failure_count": event.metadata.get("failures"),
                        "timestamp": event.timestamp.isoformat(),
                    }
                    for event in journal.list_alerts()[-5:]
                ]
            except Exception as exc:
                storage_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "state_path": str(settings.state_path),
            "session_prefix": settings.session_prefix,
            "profiles": {"count": len(profile_ids), "ids": profile_ids, "error": profile_error},
            "tools": tools_metadata,
            "storage": {"chroma": journal_metadata, "recovery_alerts": alerts, "error": storage_error},
            "projects": [project.name for project in orchestrator.projects],
            "threads": {
                "count": len(threads),
                "busy": sum(1 for thread in threads if thread.busy_sessions),
                "waiting": sum(1 for thread in threads if thread.waiting_sessions),
                "unread": sum(1 for thread in threads if thread.unread_sessions),
                "dirty": sum(1 for thread in threads if thread.is_dirty),
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "orchestrator", orchestrator)
    setattr(server, "profile_loader", profile_loader)
    setattr(server, "journal", journal)
    setattr(server, "journal_metadata", journal_metadata)
    setattr(server, "tools_metadata", tools_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the threadloom MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching threadloom MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "state_path": str(settings.state_path),
            "journal_available": getattr(server, "journal_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
