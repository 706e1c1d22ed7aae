"""Tool registration for the Threadloom MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..errors import ConfirmationRequired, NotFoundError, ValidationError
from ..orchestrator import ThreadOrchestrator
from ..storage.models import Project, Tab, Thread, ThreadSection

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    list_projects: Any
    add_project: Any
    list_threads: Any
    thread_info: Any
    create_thread: Any
    rename_thread: Any
    archive_thread: Any
    delete_thread: Any
    list_tabs: Any
    create_tab: Any
    close_tab: Any
    send_prompt: Any
    move_thread: Any
    recover_worktree: Any
    list_sections: Any
    add_section: Any
    rename_section: Any
    reorder_section: Any
    set_section_visibility: Any
    remove_section: Any


def _project_payload(project: Project) -> dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name,
        "repo_path": project.repo_path,
        "worktrees_base_path": str(project.resolved_worktrees_base()),
        "default_branch": project.default_branch,
        "agent_type": project.agent_type,
    }


def _section_payload(section: ThreadSection) -> dict[str, Any]:
    return {
        "id": section.id,
        "name": section.name,
        "color": section.color,
        "sort_order": section.sort_order,
        "is_visible": section.is_visible,
    }


def _tab_payload(thread: Thread, tab: Tab) -> dict[str, Any]:
    return {
        "session_name": tab.session_name,
        "kind": tab.kind.value,
        "agent_type": tab.agent_type,
        "display_name": tab.display_name,
        "pinned": tab.session_name in thread.pinned_sessions,
        "busy": tab.session_name in thread.busy_sessions,
        "waiting": tab.session_name in thread.waiting_sessions,
        "unread": tab.session_name in thread.unread_sessions,
    }


def _thread_payload(thread: Thread, *, detail: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": thread.id,
        "name": thread.name,
        "project_id": thread.project_id,
        "branch": thread.branch_name,
        "is_main": thread.is_main,
        "is_dirty": thread.is_dirty,
        "is_delivered": thread.is_delivered,
        "is_pinned": thread.is_pinned,
        "tab_count": len(thread.tabs),
        "busy": bool(thread.busy_sessions),
        "waiting": bool(thread.waiting_sessions),
        "unread": bool(thread.unread_sessions),
    }
    if detail:
        payload.update(
            {
                "worktree_path": thread.worktree_path,
                "section_id": thread.section_id,
                "display_order": thread.display_order,
                "selected_agent_type": thread.selected_agent_type,
                "last_selected_session": thread.last_selected_session,
                "created_at": thread.created_at.isoformat(),
                "tabs": [_tab_payload(thread, tab) for tab in thread.tabs],
            }
        )
    return payload


def register_tools(server: FastMCP, *, orchestrator: ThreadOrchestrator) -> ToolHandles:
    """Register Threadloom's MCP tools on the server."""

    def _thread(key: str, project: str | None = None) -> Thread:
        project_id = orchestrator.find_project(project).id if project else None
        return orchestrator.find_thread(key, project_id=project_id)

    def _list_projects(context: Context | None = None) -> list[dict[str, Any]]:
        """List registered projects."""

        projects = [_project_payload(project) for project in orchestrator.projects]
        _emit_log(context, "debug", "Listing projects", extra={"count": len(projects)})
        return projects

    async def _add_project(
        name: str,
        repo_path: str,
        worktrees_base_path: str | None = None,
        default_branch: str | None = None,
        agent_type: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Register a git repository and create its main thread."""

        project = await orchestrator.add_project(
            name,
            repo_path,
            worktrees_base_path=worktrees_base_path,
            default_branch=default_branch,
            agent_type=agent_type,
        )
        main = await orchestrator.create_main_thread(project.id)
        _emit_log(context, "info", "Added project", extra={"project": project.name})
        return {**_project_payload(project), "main_thread": _thread_payload(main)}

    def _list_threads(project: str | None = None, context: Context | None = None) -> list[dict[str, Any]]:
        """List active threads, optionally for one project."""

        project_id = orchestrator.find_project(project).id if project else None
        threads = [
            _thread_payload(thread)
            for thread in orchestrator.threads
            if project_id is None or thread.project_id == project_id
        ]
        _emit_log(context, "debug", "Listing threads", extra={"count": len(threads)})
        return threads

    def _thread_info(thread: str, project: str | None = None) -> dict[str, Any]:
        """Full detail for one thread, looked up by id or name."""

        return _thread_payload(_thread(thread, project), detail=True)

    async def _create_thread(
        project: str,
        name: str | None = None,
        agent: str | None = None,
        prompt: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a thread; ``agent='terminal'`` starts a plain shell tab."""

        target = orchestrator.find_project(project)
        use_agent = agent != "terminal"
        if not use_agent and prompt:
            raise ValidationError("A prompt needs an agent tab")
        thread = await orchestrator.create_thread(
            target.id,
            agent_type=agent if use_agent else None,
            use_agent_command=use_agent,
            initial_prompt=prompt,
            name=name,
        )
        _emit_log(context, "info", "Created thread", extra={"thread_name": thread.name})
        return _thread_payload(thread, detail=True)

    async def _rename_thread(
        thread: str, new_name: str, project: str | None = None, context: Context | None = None
    ) -> dict[str, Any]:
        """Rename a thread's branch, worktree and sessions together."""

        target = _thread(thread, project)
        renamed = await orchestrator.rename_thread(target.id, new_name)
        _emit_log(context, "info", "Renamed thread", extra={"old": target.name, "new": renamed.name})
        return _thread_payload(renamed, detail=True)

    async def _archive_thread(
        thread: str,
        confirm: bool = False,
        project: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Archive a thread, keeping its branch.

        Returns ``status='confirmation_required'`` with reasons when the
        worktree is dirty or unmerged and ``confirm`` is false.
        """

        target = _thread(thread, project)
        try:
            archived = await orchestrator.archive_thread(target.id, confirmed=confirm)
        except ConfirmationRequired as exc:
            return {"status": "confirmation_required", "thread": target.name, "reasons": exc.reasons}
        _emit_log(context, "info", "Archived thread", extra={"thread_name": archived.name})
        return {"status": "archived", "thread": archived.name, "branch": archived.branch_name}

    async def _delete_thread(
        thread: str, project: str | None = None, context: Context | None = None
    ) -> dict[str, Any]:
        """Delete a thread together with its worktree and branch."""

        target = _thread(thread, project)
        await orchestrator.delete_thread(target.id)
        _emit_log(context, "info", "Deleted thread", extra={"thread_name": target.name})
        return {"status": "deleted", "thread": target.name, "branch": target.branch_name}

    def _list_tabs(thread: str, project: str | None = None) -> list[dict[str, Any]]:
        target = _thread(thread, project)
        return [_tab_payload(target, tab) for tab in target.tabs]

    async def _create_tab(
        thread: str,
        agent: str | None = None,
        prompt: str | None = None,
        project: str | None = None,
    ) -> dict[str, Any]:
        """Add a tab; omit ``agent`` or pass ``terminal`` for a shell."""

        target = _thread(thread, project)
        use_agent = agent is not None and agent != "terminal"
        if prompt and not use_agent:
            raise ValidationError("A prompt needs an agent tab")
        tab = await orchestrator.add_tab(
            target.id,
            use_agent_command=use_agent,
            agent_type=agent if use_agent else None,
            initial_prompt=prompt,
        )
        return _tab_payload(orchestrator.get_thread(target.id), tab)

    async def _close_tab(thread: str, session: str, project: str | None = None) -> dict[str, Any]:
        target = _thread(thread, project)
        await orchestrator.remove_tab(target.id, session)
        return {"status": "closed", "session_name": session}

    async def _send_prompt(
        thread: str,
        text: str,
        session: str | None = None,
        project: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Type a prompt into an agent tab (the first agent tab by default)."""

        target = _thread(thread, project)
        if session is None:
            session = next((tab.session_name for tab in target.tabs if tab.is_agent), None)
            if session is None:
                raise NotFoundError(f"Thread '{target.name}' has no agent tab")
        await orchestrator.submit_prompt(target.id, session, text)
        _emit_log(context, "info", "Sent prompt", extra={"session": session})
        return {"status": "sent", "session_name": session}

    async def _move_thread(
        thread: str,
        section: str | None = None,
        position: int | None = None,
        project: str | None = None,
    ) -> dict[str, Any]:
        """Move a thread within or between sections.

        ``position`` is the index inside the thread's pin group; omit it to
        bump the thread to the top.
        """

        target = _thread(thread, project)
        if position is None:
            if section is not None:
                moved = await orchestrator.reorder_thread(target.id, 0, section=section)
            else:
                moved = await orchestrator.bump_thread_to_top(target.id)
        else:
            moved = await orchestrator.reorder_thread(target.id, position, section=section)
        return _thread_payload(moved, detail=True)

    async def _recover_worktree(
        thread: str, project: str | None = None, context: Context | None = None
    ) -> dict[str, Any]:
        """Recreate a missing or archived thread's worktree and restart its tabs."""

        project_id = orchestrator.find_project(project).id if project else None
        target = orchestrator.find_thread(thread, project_id=project_id, include_archived=True)
        recovered = await orchestrator.recover_worktree(target.id)
        _emit_log(context, "info", "Recovered worktree", extra={"thread_name": recovered.name})
        return _thread_payload(recovered, detail=True)

    def _list_sections() -> list[dict[str, Any]]:
        return [_section_payload(section) for section in orchestrator.sections]

    async def _add_section(name: str, color: str | None = None) -> dict[str, Any]:
        return _section_payload(await orchestrator.add_section(name, color=color))

    async def _rename_section(
        section: str, new_name: str, color: str | None = None
    ) -> dict[str, Any]:
        return _section_payload(await orchestrator.rename_section(section, new_name, color=color))

    async def _reorder_section(section: str, position: int) -> list[dict[str, Any]]:
        return [
            _section_payload(entry) for entry in await orchestrator.reorder_section(section, position)
        ]

    async def _set_section_visibility(section: str, visible: bool) -> dict[str, Any]:
        """Show or hide a section; a section that still holds threads cannot be hidden."""

        return _section_payload(await orchestrator.set_section_visibility(section, visible))

    async def _remove_section(section: str) -> dict[str, Any]:
        await orchestrator.remove_section(section)
        return {"status": "removed", "section": section}

    tool_list_projects = server.tool(
        name="list_projects",
        description="List registered git repositories.",
    )(_list_projects)

    tool_add_project = server.tool(
        name="add_project",
        description="Register a git repository as a project and start its main thread.",
    )(_add_project)

    tool_list_threads = server.tool(
        name="list_threads",
        description="List active threads with their busy, waiting and unread flags.",
    )(_list_threads)

    tool_thread_info = server.tool(
        name="thread_info",
        description="Show a thread's worktree, branch and tabs. Accepts a thread id or name.",
    )(_thread_info)

    tool_create_thread = server.tool(
        name="create_thread",
        description=(
            "Create a thread (worktree, branch and tmux session) in a project. Pass "
            "agent='terminal' for a shell, or a prompt to send to the agent once it starts."
        ),
    )(_create_thread)

    tool_rename_thread = server.tool(
        name="rename_thread",
        description="Rename a thread together with its branch, worktree directory and sessions.",
    )(_rename_thread)

    tool_archive_thread = server.tool(
        name="archive_thread",
        description=(
            "Remove a thread's worktree and sessions but keep its branch. Asks for "
            "confirm=true when the worktree is dirty or the branch is unmerged."
        ),
    )(_archive_thread)

    tool_delete_thread = server.tool(
        name="delete_thread",
        description="Remove a thread's worktree, sessions and branch.",
    )(_delete_thread)

    tool_list_tabs = server.tool(
        name="list_tabs",
        description="List a thread's tabs in display order.",
    )(_list_tabs)

    tool_create_tab = server.tool(
        name="create_tab",
        description="Open a new tab in a thread, either a shell or an agent.",
    )(_create_tab)

    tool_close_tab = server.tool(
        name="close_tab",
        description="Kill a tab's tmux session and remove the tab.",
    )(_close_tab)

    tool_send_prompt = server.tool(
        name="send_prompt",
        description="Type a prompt into a thread's agent tab and press Enter.",
    )(_send_prompt)

    tool_move_thread = server.tool(
        name="move_thread",
        description=(
            "Reorder a thread inside its section or move it to another section. Without a "
            "position the thread goes to the top of its pin group."
        ),
    )(_move_thread)

    tool_recover_worktree = server.tool(
        name="recover_worktree",
        description="Recreate a missing or archived thread's worktree from its branch.",
    )(_recover_worktree)

    tool_list_sections = server.tool(
        name="list_sections",
        description="List thread sections in display order.",
    )(_list_sections)

    tool_add_section = server.tool(
        name="add_section",
        description="Add a thread section at the end of the list.",
    )(_add_section)

    tool_rename_section = server.tool(
        name="rename_section",
        description="Rename a section (by id or name), optionally changing its color.",
    )(_rename_section)

    tool_reorder_section = server.tool(
        name="reorder_section",
        description="Move a section to a new position in the list.",
    )(_reorder_section)

    tool_set_section_visibility = server.tool(
        name="set_section_visibility",
        description="Show or hide a section. Sections that still hold threads cannot be hidden.",
    )(_set_section_visibility)

    tool_remove_section = server.tool(
        name="remove_section",
        description="Delete an empty section.",
    )(_remove_section)

    return ToolHandles(
        list_projects=tool_list_projects,
        add_project=tool_add_project,
        list_threads=tool_list_threads,
        thread_info=tool_thread_info,
        create_thread=tool_create_thread,
        rename_thread=tool_rename_thread,
        archive_thread=tool_archive_thread,
        delete_thread=tool_delete_thread,
        list_tabs=tool_list_tabs,
        create_tab=tool_create_tab,
        close_tab=tool_close_tab,
        send_prompt=tool_send_prompt,
        move_thread=tool_move_thread,
        recover_worktree=tool_recover_worktree,
        list_sections=tool_list_sections,
        add_section=tool_add_section,
        rename_section=tool_rename_section,
        reorder_section=tool_reorder_section,
        set_section_visibility=tool_set_section_visibility,
        remove_section=tool_remove_section,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Prefer the MCP context logger when one is attached."""

    payload = extra or {}
    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return
    getattr(logger, level, logger.info)(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
