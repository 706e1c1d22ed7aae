"""The thread orchestrator: lifecycle of threads, tabs and their sessions."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping

from ..config import ThreadloomSettings
from ..detection import ActivityState, ActivityTransition, AgentStateDetector
from ..errors import (
    BranchExistsError,
    ConfirmationRequired,
    ConsistencyError,
    ExternalToolError,
    NotFoundError,
    PathExistsError,
    ValidationError,
)
from ..events import (
    AgentBusy,
    AgentCompletion,
    AgentWaiting,
    EventBus,
    OrchestratorEvent,
    ThreadsUpdated,
)
from ..git import GitWorktreeService
from ..naming import (
    QUESTION_SLUG,
    build_session_name,
    default_tab_slug,
    generate_thread_name,
    is_auto_generated,
    naive_rename_candidates,
    numbered_candidates,
    rename_session_name,
    repo_slug,
    slugify,
)
from ..profiles import AgentProfile
from ..slugs import SlugGenerator
from ..storage import ChromaJournal, StateStore
from ..storage.models import AppSettings, Project, StateDocument, Tab, TabKind, Thread, ThreadSection
from ..tmux import TerminalSessionService
from .commands import (
    ENV_PROJECT_PATH,
    ENV_THREAD_NAME,
    ENV_WORKTREE_PATH,
    agent_start_command,
    session_environment,
    shell_start_command,
)
from .monitor import SessionMonitor
from .writer import MutationQueue

logger = logging.getLogger(__name__)

Compensation = Callable[[], Awaitable[Any]]


def _is_within(path: str | Path, root: str | Path) -> bool:
    return Path(path).resolve().is_relative_to(Path(root).resolve())


class ThreadOrchestrator:
    """Owns the thread model and keeps it in step with git and tmux.

    Every mutating operation runs on a single writer task. Read-only queries
    return deep copies so callers never observe a half-applied mutation.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        git: GitWorktreeService,
        terminal: TerminalSessionService,
        profiles: Mapping[str, AgentProfile],
        settings: ThreadloomSettings,
        events: EventBus | None = None,
        slug_generator: SlugGenerator | None = None,
        journal: ChromaJournal | None = None,
        detector: AgentStateDetector | None = None,
        name_generator: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._git = git
        self._terminal = terminal
        self._profiles = dict(profiles)
        self._settings = settings
        self._events = events or EventBus()
        self._slug_generator = slug_generator
        self._journal = journal
        self._detector = detector or AgentStateDetector()
        self._name_generator = name_generator or generate_thread_name
        self._document = StateDocument()
        self._writer = MutationQueue()
        self._recreating: set[str] = set()
        self._auto_renaming: set[str] = set()
        self._focused_session: str | None = None
        self._background: set[asyncio.Task] = set()
        self._save_task: asyncio.Task | None = None
        self._monitor = None

    # ------------------------------------------------------------------
    # Read-only views

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def detector(self) -> AgentStateDetector:
        return self._detector

    @property
    def terminal(self) -> TerminalSessionService:
        return self._terminal

    @property
    def settings(self) -> ThreadloomSettings:
        return self._settings

    @property
    def focused_session(self) -> str | None:
        return self._focused_session

    @property
    def projects(self) -> list[Project]:
        return [project.model_copy(deep=True) for project in self._document.projects]

    @property
    def app_settings(self) -> AppSettings:
        return self._document.settings.model_copy(deep=True)

    @property
    def threads(self) -> list[Thread]:
        return self.snapshot_threads()

    def snapshot_threads(self, *, include_archived: bool = False) -> list[Thread]:
        return [
            thread.model_copy(deep=True)
            for thread in self._document.threads
            if include_archived or not thread.is_archived
        ]

    def get_thread(self, thread_id: str) -> Thread:
        return self._require_thread(thread_id).model_copy(deep=True)

    def get_project(self, project_id: str) -> Project:
        return self._require_project(project_id).model_copy(deep=True)

    def find_thread(
        self, key: str, *, project_id: str | None = None, include_archived: bool = False
    ) -> Thread:
        """Look up a thread by id or by name; active threads win over archived ones."""

        pools = [self._document.active_threads]
        if include_archived:
            pools.append([thread for thread in self._document.threads if thread.is_archived])
        for pool in pools:
            for thread in pool:
                if thread.id == key:
                    return thread.model_copy(deep=True)
            matches = [
                thread
                for thread in pool
                if thread.name == key and (project_id is None or thread.project_id == project_id)
            ]
            if len(matches) > 1:
                raise ValidationError(f"Thread name '{key}' is ambiguous; pass a project or id")
            if matches:
                return matches[0].model_copy(deep=True)
        raise NotFoundError(f"Unknown thread: {key}")

    def find_project(self, key: str) -> Project:
        for project in self._document.projects:
            if key in (project.id, project.name):
                return project.model_copy(deep=True)
        raise NotFoundError(f"Unknown project: {key}")

    def profile_for_tab(self, thread: Thread, tab: Tab) -> AgentProfile | None:
        agent_type = tab.agent_type or thread.selected_agent_type
        return self._profiles.get(agent_type) if agent_type else None

    def effective_agent_type(self, project_id: str) -> str | None:
        return self._resolve_agent_type(self._require_project(project_id), None)

    async def resolve_base_branch(self, thread_id: str) -> str:
        thread = self._require_thread(thread_id)
        return await self._resolve_base_branch(self._require_project(thread.project_id))

    # ------------------------------------------------------------------
    # Lifecycle of the service itself

    def load(self) -> None:
        self._document = self._store.load()

    async def restore(self) -> None:
        """Load persisted state and reconcile it with worktrees and sessions."""

        self.load()
        await self._writer.submit(self._restore)

    async def start(self) -> None:
        self._writer.start()
        if self._monitor is None:
            self._monitor = SessionMonitor(self)
        self._monitor.start()

    async def close(self) -> None:
        if self._monitor is not None:
            await self._monitor.stop()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
            self._commit()
        await self._writer.close()

    async def wait_for_background(self) -> None:
        """Wait for pending post-start injections and auto-renames."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Projects and settings

    async def add_project(
        self,
        name: str,
        repo_path: str,
        *,
        worktrees_base_path: str | None = None,
        default_branch: str | None = None,
        agent_type: str | None = None,
    ) -> Project:
        return await self._writer.submit(
            self._add_project, name, repo_path, worktrees_base_path, default_branch, agent_type
        )

    async def _add_project(
        self,
        name: str,
        repo_path: str,
        worktrees_base_path: str | None,
        default_branch: str | None,
        agent_type: str | None,
    ) -> Project:
        resolved = str(Path(repo_path).expanduser().resolve())
        if not await self._git.is_repository(resolved):
            raise ValidationError(f"Not a git repository: {resolved}")
        if any(project.name == name.strip() for project in self._document.projects):
            raise ValidationError(f"Project '{name}' already exists")
        namespace = self._session_namespace(repo_slug(name.strip()))
        for other in self._document.projects:
            taken = self._session_namespace(other.slug)
            if namespace.startswith(taken) or taken.startswith(namespace):
                raise ValidationError(
                    f"Project '{name}' would share session names with '{other.name}'"
                )
        fields: dict[str, Any] = {"name": name, "repo_path": resolved}
        if worktrees_base_path:
            fields["worktrees_base_path"] = worktrees_base_path
        project = Project(
            **fields, default_branch=default_branch or None, agent_type=agent_type or None
        )
        self._document.projects.append(project)
        self._commit()
        logger.info("Added project", extra={"project": project.name, "repo": resolved})
        return project.model_copy(deep=True)

    async def update_app_settings(self, settings: AppSettings) -> AppSettings:
        async def apply() -> AppSettings:
            self._document.settings = settings.model_copy(deep=True)
            self._commit()
            return self.app_settings

        return await self._writer.submit(apply)

    # ------------------------------------------------------------------
    # Sections

    @property
    def sections(self) -> list[ThreadSection]:
        return [
            section.model_copy()
            for section in sorted(self._document.settings.sections, key=lambda section: section.sort_order)
        ]

    async def add_section(self, name: str, *, color: str | None = None) -> ThreadSection:
        label = name.strip()

        async def apply() -> ThreadSection:
            if not label:
                raise ValidationError("Section name must not be empty")
            sections = self._document.settings.sections
            if self._match_section(label) is not None:
                raise ValidationError(f"Section '{label}' already exists")
            section = ThreadSection(
                name=label,
                sort_order=max((section.sort_order for section in sections), default=-1) + 1,
            )
            if color:
                section.color = color
            sections.append(section)
            self._commit()
            logger.info("Added section", extra={"section": label})
            return section.model_copy()

        return await self._writer.submit(apply)

    async def rename_section(
        self, key: str, new_name: str, *, color: str | None = None
    ) -> ThreadSection:
        label = new_name.strip()

        async def apply() -> ThreadSection:
            section = self._require_section(key)
            if not label:
                raise ValidationError("Section name must not be empty")
            clash = self._match_section(label)
            if clash is not None and clash.id != section.id:
                raise ValidationError(f"Section '{label}' already exists")
            section.name = label
            if color:
                section.color = color
            self._commit()
            return section.model_copy()

        return await self._writer.submit(apply)

    async def reorder_section(self, key: str, position: int) -> list[ThreadSection]:
        """Move a section to ``position`` (clamped) and renumber all sort orders."""

        async def apply() -> list[ThreadSection]:
            section = self._require_section(key)
            ordered = [other for other in self.sections if other.id != section.id]
            ordered.insert(max(0, min(position, len(ordered))), section)
            for order, entry in enumerate(ordered):
                self._require_section(entry.id).sort_order = order
            self._commit()
            self._publish_threads()
            return self.sections

        return await self._writer.submit(apply)

    async def set_section_visibility(self, key: str, visible: bool) -> ThreadSection:
        async def apply() -> ThreadSection:
            section = self._require_section(key)
            if not visible and section.is_visible:
                occupied = self._section_threads(section.id)
                if occupied:
                    raise ValidationError(
                        f"Cannot hide section '{section.name}': {len(occupied)} thread(s) still in it"
                    )
                if not any(
                    other.is_visible and other.id != section.id
                    for other in self._document.settings.sections
                ):
                    raise ValidationError("At least one section must stay visible")
            section.is_visible = visible
            self._commit()
            self._publish_threads()
            return section.model_copy()

        return await self._writer.submit(apply)

    async def remove_section(self, key: str) -> None:
        async def apply() -> None:
            section = self._require_section(key)
            occupied = self._section_threads(section.id)
            if occupied:
                raise ValidationError(
                    f"Cannot remove section '{section.name}': {len(occupied)} thread(s) still in it"
                )
            self._document.settings.sections.remove(section)
            self._commit()
            logger.info("Removed section", extra={"section": section.name})
            self._publish_threads()

        await self._writer.submit(apply)

    # ------------------------------------------------------------------
    # Threads

    async def create_thread(
        self,
        project_id: str,
        *,
        agent_type: str | None = None,
        use_agent_command: bool = True,
        initial_prompt: str | None = None,
        name: str | None = None,
    ) -> Thread:
        return await self._writer.submit(
            self._create_thread, project_id, agent_type, use_agent_command, initial_prompt, name
        )

    async def _create_thread(
        self,
        project_id: str,
        requested_agent: str | None,
        use_agent_command: bool,
        initial_prompt: str | None,
        requested_name: str | None,
    ) -> Thread:
        project = self._require_project(project_id)
        if requested_name is not None:
            name = await self._first_available(project, numbered_candidates(self._validate_name(requested_name)))
            if name is None:
                raise ValidationError(f"Thread name '{requested_name}' is not available")
        else:
            name = await self._generate_thread_name(project)

        agent_type = self._resolve_agent_type(project, requested_agent)
        worktree = project.resolved_worktrees_base() / name
        tab = self._new_tab(
            self._session_name(project, name, default_tab_slug(0)),
            agent_type if use_agent_command else None,
        )
        section = self._document.settings.default_section()
        thread = Thread(
            project_id=project.id,
            name=name,
            worktree_path=str(worktree),
            branch_name=name,
            tabs=[tab],
            selected_agent_type=agent_type,
            last_selected_session=tab.session_name,
            section_id=section.id if section else None,
            display_order=self._next_display_order(project.id, section.id if section else None, False),
        )

        repo = project.repo_path
        compensations: list[Compensation] = []
        try:
            await self._git.create_worktree(repo, name, worktree, project.default_branch)
            compensations.append(lambda: self._git.delete_branch(repo, name))
            compensations.append(lambda: self._git.remove_worktree(repo, worktree))
            await self._start_session(project, thread, tab)
            compensations.append(lambda: self._terminal.kill(tab.session_name))
            self._document.threads.append(thread)
            try:
                self._commit()
            except OSError:
                self._document.threads.remove(thread)
                raise
        except Exception:
            await self._rollback(compensations)
            raise

        logger.info(
            "Created thread",
            extra={"thread_name": name, "project": project.name, "session": tab.session_name},
        )
        self.record_journal(thread.id, "thread_created", thread.summary())
        self._publish_threads()
        self._schedule_injection(project, thread, tab, initial_prompt=initial_prompt)
        return thread.model_copy(deep=True)

    async def create_main_thread(self, project_id: str) -> Thread:
        return await self._writer.submit(self._create_main_thread, project_id)

    async def _create_main_thread(self, project_id: str) -> Thread:
        project = self._require_project(project_id)
        if any(
            thread.is_main and thread.project_id == project.id
            for thread in self._document.active_threads
        ):
            raise ValidationError(f"Project '{project.name}' already has a main thread")
        if not await self._git.is_repository(project.repo_path):
            raise ValidationError(f"Not a git repository: {project.repo_path}")

        session_name = self._session_name(project, None, default_tab_slug(0))
        if session_name in self._all_session_names():
            raise ConsistencyError(f"Session name '{session_name}' belongs to another thread")

        agent_type = self._resolve_agent_type(project, None)
        tab = self._new_tab(session_name, agent_type)
        thread = Thread(
            project_id=project.id,
            name="main",
            worktree_path=project.repo_path,
            branch_name=await self._git.current_branch(project.repo_path) or "",
            is_main=True,
            tabs=[tab],
            selected_agent_type=agent_type,
            last_selected_session=session_name,
        )
        if await self._terminal.is_alive(session_name) and not await self._session_matches(
            project, thread, session_name
        ):
            raise ConsistencyError(f"Session '{session_name}' is running outside '{project.name}'")
        created = await self._start_session(project, thread, tab)
        self._document.threads.insert(0, thread)
        try:
            self._commit()
        except OSError:
            self._document.threads.remove(thread)
            if created:
                await self._terminal.kill(session_name)
            raise

        logger.info("Created main thread", extra={"project": project.name, "session": session_name})
        self._publish_threads()
        self._schedule_injection(project, thread, tab)
        return thread.model_copy(deep=True)

    async def rename_thread(self, thread_id: str, new_name: str) -> Thread:
        return await self._writer.submit(self._rename_thread, thread_id, new_name)

    async def _rename_thread(
        self,
        thread_id: str,
        new_name: str,
        *,
        auto: bool = False,
        expected_name: str | None = None,
    ) -> Thread:
        thread = self._require_thread(thread_id)
        if expected_name is not None and thread.name != expected_name:
            return thread.model_copy(deep=True)
        if thread.is_main:
            raise ValidationError("The main thread cannot be renamed")
        project = self._require_project(thread.project_id)
        slug = self._validate_name(new_name)
        if slug == thread.name:
            return thread.model_copy(deep=True)
        if any(
            other.id != thread.id and other.project_id == project.id and other.name == slug
            for other in self._document.active_threads
        ):
            raise ValidationError(f"A thread named '{slug}' already exists")

        repo = project.repo_path
        old_path = Path(thread.worktree_path)
        new_path = old_path.parent / slug
        if new_path.exists():
            raise PathExistsError(f"Worktree path already exists: {new_path}")
        if await self._git.branch_exists(repo, slug):
            raise BranchExistsError(f"Branch already exists: {slug}")

        try:
            rename_map = {
                name: rename_session_name(
                    name,
                    repo=project.slug,
                    old_thread_slug=thread.name,
                    new_thread_slug=slug,
                    prefix=self._settings.session_prefix,
                )
                for name in thread.session_names
            }
        except ValueError as exc:
            raise ConsistencyError(str(exc)) from exc
        others = self._all_session_names() - set(rename_map)
        for new_session in rename_map.values():
            if new_session in others or (
                new_session not in rename_map and await self._terminal.is_alive(new_session)
            ):
                raise ValidationError(f"Session name '{new_session}' is already in use")

        previous = thread.model_copy(deep=True)
        compensations: list[Compensation] = []
        try:
            branch = (
                await self._git.current_branch(old_path) if old_path.is_dir() else None
            ) or thread.branch_name
            await self._git.rename_branch(repo, branch, slug)
            compensations.append(lambda: self._git.rename_branch(repo, slug, branch))
            if old_path.is_dir():
                await self._git.move_worktree(repo, old_path, new_path)
                compensations.append(lambda: self._git.move_worktree(repo, new_path, old_path))
            renamed = await self._terminal.rename_many(list(rename_map.items()))
            compensations.append(
                lambda: self._terminal.rename_many([(new, old) for old, new in renamed])
            )
            thread.name = slug
            thread.branch_name = slug
            thread.worktree_path = str(new_path)
            if auto:
                thread.did_auto_rename = True
            for old, new in rename_map.items():
                self._remap_session(thread, old, new)
            self._commit()
        except Exception:
            self._replace_thread(previous)
            for old, new in rename_map.items():
                self._detector.rename(new, old)
                if self._focused_session == new:
                    self._focused_session = old
            await self._rollback(compensations)
            raise

        logger.info(
            "Renamed thread",
            extra={"thread_id": thread.id, "old": previous.name, "new": slug, "auto": auto},
        )
        await self._refresh_session_paths(project, thread)
        self.record_journal(
            thread.id,
            "thread_renamed",
            {"old": previous.name, "new": slug, "sessions": rename_map, "auto": auto},
        )
        self._publish_threads()
        return thread.model_copy(deep=True)

    async def archive_thread(self, thread_id: str, *, confirmed: bool = False) -> Thread:
        """Remove the worktree but keep the branch.

        Raises ``ConfirmationRequired`` listing unmet preconditions (dirty
        worktree, branch not merged into the base branch) unless ``confirmed``.
        """

        return await self._writer.submit(self._archive_thread, thread_id, confirmed)

    async def _archive_thread(self, thread_id: str, confirmed: bool) -> Thread:
        thread = self._require_thread(thread_id)
        if thread.is_main:
            raise ValidationError("The main thread cannot be archived")
        project = self._require_project(thread.project_id)
        worktree = Path(thread.worktree_path)

        if worktree.is_dir() and not confirmed:
            reasons: list[str] = []
            if not await self._git.is_clean(worktree):
                reasons.append("uncommitted changes")
            base = await self._resolve_base_branch(project)
            if not await self._git.is_merged_into(worktree, base):
                reasons.append(f"branch '{thread.branch_name}' is not merged into '{base}'")
            if reasons:
                raise ConfirmationRequired(reasons)

        await self._terminal.kill_all(thread.session_names)
        await self._git.remove_worktree(project.repo_path, worktree)
        self._retire(thread)
        self._commit()

        logger.info("Archived thread", extra={"thread_name": thread.name, "branch": thread.branch_name})
        self.record_journal(thread.id, "thread_archived", {"branch": thread.branch_name})
        self._publish_threads()
        return thread.model_copy(deep=True)

    async def delete_thread(self, thread_id: str) -> None:
        await self._writer.submit(self._delete_thread, thread_id)

    async def _delete_thread(self, thread_id: str) -> None:
        thread = self._require_thread(thread_id)
        if thread.is_main:
            raise ValidationError("The main thread cannot be deleted")
        project = self._require_project(thread.project_id)

        await self._terminal.kill_all(thread.session_names)
        await self._git.remove_worktree(project.repo_path, thread.worktree_path)
        await self._git.delete_branch(project.repo_path, thread.branch_name)
        self._retire(thread)
        self._document.threads.remove(thread)
        self._commit()

        logger.info("Deleted thread", extra={"thread_name": thread.name, "branch": thread.branch_name})
        self.record_journal(thread.id, "thread_deleted", {"branch": thread.branch_name})
        self._publish_threads()

    async def move_thread(self, thread_id: str, section_id: str | None) -> Thread:
        async def apply() -> Thread:
            thread = self._require_thread(thread_id)
            if section_id is not None and not any(
                section.id == section_id for section in self._document.settings.sections
            ):
                raise ValidationError(f"Unknown section: {section_id}")
            thread.section_id = section_id
            thread.display_order = self._next_display_order(
                thread.project_id, self._effective_section_id(thread), thread.is_pinned, exclude=thread.id
            )
            self._commit()
            self._publish_threads()
            return thread.model_copy(deep=True)

        return await self._writer.submit(apply)

    async def toggle_thread_pin(self, thread_id: str) -> Thread:
        async def apply() -> Thread:
            thread = self._require_thread(thread_id)
            thread.is_pinned = not thread.is_pinned
            thread.display_order = self._next_display_order(
                thread.project_id, self._effective_section_id(thread), thread.is_pinned, exclude=thread.id
            )
            self._commit()
            self._publish_threads()
            return thread.model_copy(deep=True)

        return await self._writer.submit(apply)

    async def reorder_thread(
        self, thread_id: str, index: int, *, section: str | None = None
    ) -> Thread:
        """Place a thread at ``index`` within its pin group, optionally in another section.

        Both pin groups of the target section are renumbered from zero.
        """

        async def apply() -> Thread:
            thread = self._require_thread(thread_id)
            if thread.is_main:
                raise ValidationError("The main thread is not ordered within sections")
            target = self._require_section(section).id if section else self._effective_section_id(thread)
            thread.section_id = target
            group = self._order_group(thread.project_id, target, thread.is_pinned, exclude=thread.id)
            group.insert(max(0, min(index, len(group))), thread)
            for order, member in enumerate(group):
                member.display_order = order
            for order, member in enumerate(
                self._order_group(thread.project_id, target, not thread.is_pinned)
            ):
                member.display_order = order
            self._commit()
            self._publish_threads()
            return thread.model_copy(deep=True)

        return await self._writer.submit(apply)

    async def bump_thread_to_top(self, thread_id: str) -> Thread:
        async def apply() -> Thread:
            thread = self._require_thread(thread_id)
            if thread.is_main:
                raise ValidationError("The main thread is not ordered within sections")
            group = self._order_group(
                thread.project_id, self._effective_section_id(thread), thread.is_pinned, exclude=thread.id
            )
            thread.display_order = min((member.display_order for member in group), default=0) - 1
            self._commit()
            self._publish_threads()
            return thread.model_copy(deep=True)

        return await self._writer.submit(apply)

    async def refresh_dirty_states(self) -> None:
        results: dict[str, bool] = {}
        for thread in self.snapshot_threads():
            if not Path(thread.worktree_path).is_dir():
                continue
            try:
                results[thread.id] = not await self._git.is_clean(thread.worktree_path)
            except ExternalToolError as exc:
                logger.debug("Dirty check failed", extra={"thread_name": thread.name, "error": exc.diagnostic})
        await self._store_flags("is_dirty", results)

    async def refresh_delivered_states(self) -> None:
        """Flag worktree threads that are clean and fully merged into their base branch."""

        results: dict[str, bool] = {}
        bases: dict[str, str] = {}
        for thread in self.snapshot_threads():
            project = self._find_project(thread.project_id)
            if thread.is_main or project is None or not Path(thread.worktree_path).is_dir():
                continue
            try:
                if project.id not in bases:
                    bases[project.id] = await self._resolve_base_branch(project)
                results[thread.id] = await self._git.is_clean(
                    thread.worktree_path
                ) and await self._git.is_merged_into(thread.worktree_path, bases[project.id])
            except ExternalToolError as exc:
                logger.debug(
                    "Delivered check failed", extra={"thread_name": thread.name, "error": exc.diagnostic}
                )
        await self._store_flags("is_delivered", results)

    async def _store_flags(self, field: str, results: dict[str, bool]) -> None:
        async def apply() -> None:
            changed = False
            for thread_id, value in results.items():
                thread = self._find_active(thread_id)
                if thread is not None and getattr(thread, field) != value:
                    setattr(thread, field, value)
                    changed = True
            if changed:
                self._schedule_save()
                self._publish_threads()

        if results:
            await self._writer.submit(apply)

    async def retire_missing_worktree(self, thread_id: str) -> bool:
        """Archive a thread whose worktree directory was removed outside the app."""

        async def apply() -> bool:
            thread = self._find_active(thread_id)
            if thread is None or thread.is_main or Path(thread.worktree_path).is_dir():
                return False
            project = self._require_project(thread.project_id)
            await self._terminal.kill_all(thread.session_names)
            await self._git.prune_worktrees(project.repo_path)
            self._retire(thread)
            self._commit()
            logger.warning(
                "Worktree disappeared; archived thread",
                extra={"thread_name": thread.name, "path": thread.worktree_path},
            )
            self.record_journal(thread.id, "worktree_missing", {"path": thread.worktree_path})
            self._publish_threads()
            return True

        return await self._writer.submit(apply)

    async def recover_worktree(self, thread_id: str) -> Thread:
        """Recreate a thread's worktree from its branch and restart its tabs.

        Archived threads come back active with one fresh tab. When the branch
        is gone a new one is cut from the project's base branch.
        """

        return await self._writer.submit(self._recover_worktree, thread_id)

    async def _recover_worktree(self, thread_id: str) -> Thread:
        thread = self._find_any_thread(thread_id)
        if thread is None:
            raise NotFoundError(f"Unknown thread: {thread_id}")
        if thread.is_main:
            raise ValidationError("The main thread has no worktree to recover")
        project = self._require_project(thread.project_id)
        if not Path(project.repo_path).is_dir():
            raise ConsistencyError(f"Repository is missing: {project.repo_path}")
        worktree = Path(thread.worktree_path)
        if worktree.exists():
            raise PathExistsError(f"Worktree path already exists: {worktree}")
        if thread.is_archived and any(
            other.project_id == project.id and other.name == thread.name
            for other in self._document.active_threads
        ):
            raise ValidationError(f"A thread named '{thread.name}' already exists")

        repo = project.repo_path
        branch = thread.branch_name
        await self._git.prune_worktrees(repo)
        await self._terminal.kill_all(thread.session_names)

        previous = thread.model_copy(deep=True)
        compensations: list[Compensation] = []
        try:
            if await self._git.branch_exists(repo, branch):
                await self._git.add_worktree_for_branch(repo, branch, worktree)
            else:
                await self._git.create_worktree(repo, branch, worktree, project.default_branch)
                compensations.append(lambda: self._git.delete_branch(repo, branch))
            compensations.append(lambda: self._git.remove_worktree(repo, worktree))

            if thread.is_archived:
                agent_type = self._resolve_agent_type(project, thread.selected_agent_type)
                session_name = await self._unique_session_name(
                    project, thread, default_tab_slug(0), self._all_session_names()
                )
                tab = self._new_tab(session_name, agent_type)
                thread.tabs = [tab]
                thread.selected_agent_type = agent_type
                thread.last_selected_session = session_name
                thread.is_archived = False
                thread.display_order = self._next_display_order(
                    project.id, self._effective_section_id(thread), thread.is_pinned, exclude=thread.id
                )
            for tab in thread.tabs:
                await self._start_session(project, thread, tab)
                compensations.append(lambda name=tab.session_name: self._terminal.kill(name))
                self._detector.reset(tab.session_name)
            thread.busy_sessions.clear()
            thread.waiting_sessions.clear()
            self._commit()
        except Exception:
            self._replace_thread(previous)
            await self._rollback(compensations)
            raise

        logger.info(
            "Recovered worktree",
            extra={"thread_name": thread.name, "branch": branch, "path": str(worktree)},
        )
        self.record_journal(thread.id, "worktree_recovered", {"path": str(worktree), "branch": branch})
        self._publish_threads()
        for tab in thread.tabs:
            self._schedule_injection(project, thread, tab, resume=tab.is_agent)
        return thread.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Tabs

    async def add_tab(
        self,
        thread_id: str,
        *,
        use_agent_command: bool = False,
        agent_type: str | None = None,
        initial_prompt: str | None = None,
    ) -> Tab:
        return await self._writer.submit(
            self._add_tab, thread_id, use_agent_command, agent_type, initial_prompt
        )

    async def _add_tab(
        self,
        thread_id: str,
        use_agent_command: bool,
        requested_agent: str | None,
        initial_prompt: str | None,
    ) -> Tab:
        thread = self._require_thread(thread_id)
        project = self._require_project(thread.project_id)
        session_name = await self._unique_session_name(
            project, thread, default_tab_slug(len(thread.tabs)), self._all_session_names()
        )
        agent_type = None
        if use_agent_command:
            agent_type = self._resolve_agent_type(
                project, requested_agent or thread.selected_agent_type
            )
        tab = self._new_tab(session_name, agent_type)
        await self._start_session(project, thread, tab)

        thread.tabs.append(tab)
        thread.last_selected_session = session_name
        if tab.is_agent and thread.selected_agent_type is None:
            thread.selected_agent_type = agent_type
        try:
            self._commit()
        except OSError:
            thread.tabs.remove(tab)
            await self._terminal.kill(session_name)
            raise

        logger.info("Added tab", extra={"thread_name": thread.name, "session": session_name})
        self.record_journal(thread.id, "tab_added", {"session": session_name, "kind": tab.kind.value})
        self._publish_threads()
        self._schedule_injection(project, thread, tab, initial_prompt=initial_prompt)
        return tab.model_copy(deep=True)

    async def remove_tab(self, thread_id: str, session_name: str) -> None:
        await self._writer.submit(self._remove_tab, thread_id, session_name)

    async def _remove_tab(self, thread_id: str, session_name: str) -> None:
        thread = self._require_thread(thread_id)
        tab = self._require_tab(thread, session_name)
        if (
            self._settings.protect_main_tab
            and thread.is_main
            and thread.tabs[0].session_name == session_name
        ):
            raise ValidationError("The main thread's first tab cannot be closed")

        # Kill first: a failed kill leaves the tab record in place.
        await self._terminal.kill(session_name)

        index = thread.tabs.index(tab)
        thread.tabs.remove(tab)
        if session_name in thread.pinned_sessions:
            thread.pinned_sessions.remove(session_name)
        for status in (thread.unread_sessions, thread.waiting_sessions, thread.busy_sessions):
            status.discard(session_name)
        if thread.last_selected_session == session_name:
            thread.last_selected_session = (
                thread.tabs[min(index, len(thread.tabs) - 1)].session_name if thread.tabs else None
            )
        if self._focused_session == session_name:
            self._focused_session = None
        self._detector.forget(session_name)
        self._commit()

        logger.info("Removed tab", extra={"thread_name": thread.name, "session": session_name})
        self.record_journal(thread.id, "tab_removed", {"session": session_name})
        self._publish_threads()

    async def rename_tab(self, thread_id: str, session_name: str, display_name: str) -> Tab:
        return await self._writer.submit(self._rename_tab, thread_id, session_name, display_name)

    async def _rename_tab(self, thread_id: str, session_name: str, display_name: str) -> Tab:
        thread = self._require_thread(thread_id)
        project = self._require_project(thread.project_id)
        tab = self._require_tab(thread, session_name)
        label = display_name.strip()
        if not label:
            raise ValidationError("Tab name must not be empty")

        tab_slug = slugify(label)
        desired = self._session_name(project, self._thread_slug(thread), tab_slug)
        new_name = session_name
        if desired != session_name:
            new_name = await self._unique_session_name(
                project, thread, tab_slug, self._all_session_names() - {session_name}
            )

        previous = thread.model_copy(deep=True)
        renamed = False
        try:
            if new_name != session_name:
                renamed = await self._terminal.rename(session_name, new_name)
                self._remap_session(thread, session_name, new_name)
            tab.display_name = label
            self._commit()
        except Exception:
            self._replace_thread(previous)
            if new_name != session_name:
                self._detector.rename(new_name, session_name)
                if self._focused_session == new_name:
                    self._focused_session = session_name
            if renamed:
                await self._terminal.rename(new_name, session_name)
            raise

        self._publish_threads()
        return tab.model_copy(deep=True)

    async def toggle_pin(self, thread_id: str, session_name: str) -> Thread:
        async def apply() -> Thread:
            thread = self._require_thread(thread_id)
            self._require_tab(thread, session_name)
            if session_name in thread.pinned_sessions:
                thread.pinned_sessions.remove(session_name)
            else:
                thread.pinned_sessions.append(session_name)
            self._normalize_pins(thread)
            self._commit()
            self._publish_threads()
            return thread.model_copy(deep=True)

        return await self._writer.submit(apply)

    async def update_pinned_tabs(self, thread_id: str, pinned: Iterable[str]) -> Thread:
        """Replace the pinned set; the given order becomes the pinned prefix order."""

        requested = list(dict.fromkeys(pinned))

        async def apply() -> Thread:
            thread = self._require_thread(thread_id)
            unknown = [name for name in requested if thread.tab(name) is None]
            if unknown:
                raise ConsistencyError(f"Unknown sessions cannot be pinned: {', '.join(unknown)}")
            by_name = {tab.session_name: tab for tab in thread.tabs}
            rest = [tab for tab in thread.tabs if tab.session_name not in requested]
            thread.tabs = [by_name[name] for name in requested] + rest
            thread.pinned_sessions = list(requested)
            self._commit()
            self._publish_threads()
            return thread.model_copy(deep=True)

        return await self._writer.submit(apply)

    async def reorder_tabs(self, thread_id: str, order: Iterable[str]) -> Thread:
        requested = list(order)

        async def apply() -> Thread:
            thread = self._require_thread(thread_id)
            if sorted(requested) != sorted(thread.session_names):
                raise ConsistencyError("Tab order must be a permutation of the thread's tabs")
            pinned_count = thread.pinned_count
            if set(requested[:pinned_count]) != set(thread.pinned_sessions):
                raise ConsistencyError("Pinned tabs must stay ahead of unpinned tabs")
            by_name = {tab.session_name: tab for tab in thread.tabs}
            thread.tabs = [by_name[name] for name in requested]
            thread.pinned_sessions = requested[:pinned_count]
            self._commit()
            self._publish_threads()
            return thread.model_copy(deep=True)

        return await self._writer.submit(apply)

    async def select_session(self, thread_id: str, session_name: str) -> Thread:
        """Focus a tab; clears its seen flags without touching live state."""

        async def apply() -> Thread:
            thread = self._require_thread(thread_id)
            self._require_tab(thread, session_name)
            self._focused_session = session_name
            thread.last_selected_session = session_name
            self._detector.mark_seen(session_name)
            had_unread = session_name in thread.unread_sessions
            had_waiting = session_name in thread.waiting_sessions
            thread.unread_sessions.discard(session_name)
            thread.waiting_sessions.discard(session_name)
            self._commit()
            if had_unread:
                self._publish(AgentCompletion(thread.id, frozenset(thread.unread_sessions)))
            if had_waiting:
                self._publish(AgentWaiting(thread.id, frozenset(thread.waiting_sessions)))
            return thread.model_copy(deep=True)

        return await self._writer.submit(apply)

    def clear_focus(self) -> None:
        self._focused_session = None

    async def mark_session_completion_seen(self, thread_id: str, session_name: str) -> None:
        async def apply() -> None:
            thread = self._require_thread(thread_id)
            self._detector.mark_seen(session_name)
            if session_name in thread.unread_sessions:
                thread.unread_sessions.discard(session_name)
                self._commit()
                self._publish(AgentCompletion(thread.id, frozenset(thread.unread_sessions)))

        await self._writer.submit(apply)

    async def mark_session_waiting_seen(self, thread_id: str, session_name: str) -> None:
        async def apply() -> None:
            thread = self._require_thread(thread_id)
            if session_name in thread.waiting_sessions:
                thread.waiting_sessions.discard(session_name)
                self._commit()
                self._publish(AgentWaiting(thread.id, frozenset(thread.waiting_sessions)))

        await self._writer.submit(apply)

    async def mark_session_busy(self, thread_id: str, session_name: str) -> None:
        async def apply() -> None:
            thread = self._require_thread(thread_id)
            tab = self._require_tab(thread, session_name)
            if not tab.is_agent:
                return
            self._detector.note_input(session_name)
            thread.busy_sessions.add(session_name)
            if session_name in thread.waiting_sessions:
                thread.waiting_sessions.discard(session_name)
                self._publish(AgentWaiting(thread.id, frozenset(thread.waiting_sessions)))
            self._commit()
            self._publish(AgentBusy(thread.id, frozenset(thread.busy_sessions)))

        await self._writer.submit(apply)

    async def submit_prompt(self, thread_id: str, session_name: str, text: str) -> None:
        """Type a prompt into a tab, mark it busy and consider auto-renaming."""

        thread = self.get_thread(thread_id)
        self._require_tab(thread, session_name)
        await self.recreate_session_if_needed(session_name, thread_id, resume=False)
        if not await self._terminal.send_input(session_name, text):
            raise ExternalToolError(f"Session {session_name} is not running")
        await self._after_prompt(thread_id, session_name, text)

    async def _after_prompt(self, thread_id: str, session_name: str, text: str) -> None:
        await self.mark_session_busy(thread_id, session_name)
        self._spawn(self.auto_rename_thread_after_first_prompt_if_needed(thread_id, session_name, text))

    async def recreate_session_if_needed(
        self, session_name: str, thread_id: str, *, resume: bool = True
    ) -> bool:
        """Recreate a dead session from the thread's current state.

        Returns False when the session is alive, already being recreated, or
        no longer belongs to the thread.
        """

        return await self._writer.submit(self._recreate_session, session_name, thread_id, resume)

    async def _recreate_session(self, session_name: str, thread_id: str, resume: bool) -> bool:
        thread = self._find_active(thread_id)
        if thread is None:
            return False
        tab = thread.tab(session_name)
        if tab is None or session_name in self._recreating:
            return False
        self._recreating.add(session_name)
        try:
            if await self._terminal.is_alive(session_name):
                return False
            if not Path(thread.worktree_path).is_dir():
                raise ConsistencyError(f"Worktree for '{thread.name}' is missing: {thread.worktree_path}")
            project = self._require_project(thread.project_id)
            await self._start_session(project, thread, tab)
            was_busy = session_name in thread.busy_sessions
            was_waiting = session_name in thread.waiting_sessions
            thread.busy_sessions.discard(session_name)
            thread.waiting_sessions.discard(session_name)
            self._detector.reset(session_name)
        finally:
            self._recreating.discard(session_name)

        if was_busy:
            self._publish(AgentBusy(thread.id, frozenset(thread.busy_sessions)))
        if was_waiting:
            self._publish(AgentWaiting(thread.id, frozenset(thread.waiting_sessions)))
            self._commit()
        if was_busy or was_waiting:
            self._publish_threads()
        logger.info("Recreated session", extra={"thread_name": thread.name, "session": session_name})
        self._schedule_injection(project, thread, tab, resume=resume and tab.is_agent)
        return True

    async def auto_rename_thread_after_first_prompt_if_needed(
        self, thread_id: str, session_name: str, prompt: str
    ) -> bool:
        if not self._document.settings.auto_rename_threads:
            return False
        thread = self._find_active(thread_id)
        if thread is None or thread.is_main or thread.did_auto_rename:
            return False
        if thread.name != Path(thread.worktree_path).name or not is_auto_generated(thread.name):
            return False
        tab = thread.tab(session_name)
        if tab is None or not tab.is_agent or thread_id in self._auto_renaming:
            return False

        expected_name = thread.name
        self._auto_renaming.add(thread_id)
        try:
            for candidate in await self._auto_rename_candidates(thread, tab, prompt):
                try:
                    renamed = await self._writer.submit(
                        self._rename_thread,
                        thread_id,
                        candidate,
                        auto=True,
                        expected_name=expected_name,
                    )
                except ValidationError:
                    continue
                return renamed.name == candidate
            return False
        finally:
            self._auto_renaming.discard(thread_id)

    async def _auto_rename_candidates(self, thread: Thread, tab: Tab, prompt: str) -> list[str]:
        profile = self.profile_for_tab(thread, tab)
        slug: str | None = None
        if self._slug_generator is not None and profile is not None:
            slug = await self._slug_generator.suggest(profile, prompt)
        if slug == QUESTION_SLUG:
            return []
        if slug:
            return numbered_candidates(slug)
        return naive_rename_candidates(prompt)

    # ------------------------------------------------------------------
    # Background-loop hooks

    async def apply_transitions(
        self, thread_id: str, transitions: Iterable[ActivityTransition]
    ) -> None:
        """Fold detector transitions into the thread's status sets."""

        pending = list(transitions)

        async def apply() -> None:
            thread = self._find_active(thread_id)
            if thread is None:
                return
            busy_before = set(thread.busy_sessions)
            waiting_before = set(thread.waiting_sessions)
            unread_before = set(thread.unread_sessions)
            agent_sessions = thread.agent_sessions
            for transition in pending:
                name = transition.session_name
                if name not in agent_sessions:
                    continue
                if transition.current is ActivityState.BUSY:
                    thread.busy_sessions.add(name)
                    thread.waiting_sessions.discard(name)
                elif transition.current is ActivityState.WAITING:
                    thread.waiting_sessions.add(name)
                    thread.busy_sessions.discard(name)
                else:
                    thread.busy_sessions.discard(name)
                    thread.waiting_sessions.discard(name)
                if transition.completed:
                    thread.unread_sessions.add(name)

            if thread.busy_sessions != busy_before:
                self._publish(AgentBusy(thread.id, frozenset(thread.busy_sessions)))
            if thread.waiting_sessions != waiting_before:
                self._publish(AgentWaiting(thread.id, frozenset(thread.waiting_sessions)))
            if thread.unread_sessions != unread_before:
                self._publish(AgentCompletion(thread.id, frozenset(thread.unread_sessions)))
            if thread.waiting_sessions != waiting_before or thread.unread_sessions != unread_before:
                self._schedule_save()

        await self._writer.submit(apply)

    def publish(self, event: OrchestratorEvent) -> None:
        self._publish(event)

    def record_journal(self, thread_id: str, event_type: str, body: Any, **metadata: Any) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_event(
                thread_id=thread_id, event_type=event_type, body=body, metadata=metadata
            )
        except Exception as exc:
            logger.warning(
                "Failed to record journal event",
                extra={"thread_id": thread_id, "event_type": event_type, "error": str(exc)},
            )

    # ------------------------------------------------------------------
    # Restore

    async def _restore(self) -> None:
        for thread in self._document.active_threads:
            if thread.selected_agent_type is None and thread.agent_sessions:
                project = self._find_project(thread.project_id)
                if project is not None:
                    thread.selected_agent_type = self._resolve_agent_type(project, None)

        for project in list(self._document.projects):
            try:
                await self._sync_worktrees(project)
            except ExternalToolError as exc:
                logger.warning(
                    "Worktree sync failed", extra={"project": project.name, "error": exc.diagnostic}
                )
            if not any(
                thread.is_main and thread.project_id == project.id
                for thread in self._document.active_threads
            ):
                try:
                    await self._create_main_thread(project.id)
                except (ValidationError, ConsistencyError, ExternalToolError) as exc:
                    logger.warning(
                        "Could not create main thread", extra={"project": project.name, "error": str(exc)}
                    )

        await self._cleanup_stale_sessions()
        self._commit()
        self._publish_threads()

    async def _sync_worktrees(self, project: Project) -> None:
        """Archive threads whose worktree vanished and adopt unknown worktrees."""

        for thread in list(self._document.active_threads):
            if thread.project_id != project.id or thread.is_main:
                continue
            if not Path(thread.worktree_path).is_dir():
                logger.warning(
                    "Worktree missing at startup; archiving thread",
                    extra={"thread_name": thread.name, "path": thread.worktree_path},
                )
                await self._terminal.kill_all(thread.session_names)
                self._retire(thread)

        await self._git.prune_worktrees(project.repo_path)
        base = project.resolved_worktrees_base()
        if not base.is_dir():
            return
        known = {
            Path(thread.worktree_path).resolve()
            for thread in self._document.active_threads
            if thread.project_id == project.id
        }
        registered = {
            entry.path.resolve(): entry for entry in await self._git.list_worktrees(project.repo_path)
        }
        taken = self._all_session_names()
        for child in sorted(base.iterdir()):
            entry = registered.get(child.resolve())
            if entry is None or child.resolve() in known:
                continue
            name = slugify(child.name)
            session_name = self._session_name(project, name, default_tab_slug(0))
            if session_name in taken:
                continue
            thread = Thread(
                project_id=project.id,
                name=name,
                worktree_path=str(child),
                branch_name=entry.branch or name,
                tabs=[Tab(session_name=session_name)],
                selected_agent_type=self._resolve_agent_type(project, None),
                last_selected_session=session_name,
            )
            if await self._terminal.is_alive(session_name) and not await self._session_matches(
                project, thread, session_name
            ):
                logger.warning(
                    "Not adopting worktree; its session name is in use",
                    extra={"thread_name": name, "session": session_name},
                )
                continue
            self._document.threads.append(thread)
            taken.add(session_name)
            logger.info("Adopted worktree", extra={"thread_name": name, "path": str(child)})

    async def _cleanup_stale_sessions(self) -> None:
        try:
            live = await self._terminal.list_sessions()
        except ExternalToolError as exc:
            logger.warning("Could not list sessions", extra={"error": exc.diagnostic})
            return
        known = self._all_session_names()
        prefixes = tuple(self._session_namespace(project.slug) for project in self._document.projects)
        stale = [name for name in live if name not in known and prefixes and name.startswith(prefixes)]
        if stale:
            killed = await self._terminal.kill_all(stale)
            logger.info("Killed stale sessions", extra={"sessions": killed})

    # ------------------------------------------------------------------
    # Internals

    def _require_project(self, project_id: str) -> Project:
        project = self._find_project(project_id)
        if project is None:
            raise NotFoundError(f"Unknown project: {project_id}")
        return project

    def _find_project(self, project_id: str) -> Project | None:
        return next((project for project in self._document.projects if project.id == project_id), None)

    def _require_thread(self, thread_id: str) -> Thread:
        thread = self._find_active(thread_id)
        if thread is None:
            raise NotFoundError(f"Unknown thread: {thread_id}")
        return thread

    def _find_active(self, thread_id: str) -> Thread | None:
        return next(
            (thread for thread in self._document.active_threads if thread.id == thread_id), None
        )

    @staticmethod
    def _require_tab(thread: Thread, session_name: str) -> Tab:
        tab = thread.tab(session_name)
        if tab is None:
            raise NotFoundError(f"Thread '{thread.name}' has no tab {session_name}")
        return tab

    def _replace_thread(self, snapshot: Thread) -> None:
        for index, thread in enumerate(self._document.threads):
            if thread.id == snapshot.id:
                self._document.threads[index] = snapshot
                return

    def _all_session_names(self) -> set[str]:
        return {
            name for thread in self._document.active_threads for name in thread.session_names
        }

    @staticmethod
    def _thread_slug(thread: Thread) -> str | None:
        return None if thread.is_main else thread.name

    def _session_name(self, project: Project, thread_slug: str | None, tab_slug: str) -> str:
        return build_session_name(
            project.slug, thread_slug, tab_slug, prefix=self._settings.session_prefix
        )

    async def _unique_session_name(
        self, project: Project, thread: Thread, tab_slug: str, taken: set[str]
    ) -> str:
        thread_slug = self._thread_slug(thread)
        for index in range(1, 1000):
            slug = tab_slug if index == 1 else f"{tab_slug}-{index}"
            candidate = self._session_name(project, thread_slug, slug)
            if candidate not in taken and not await self._terminal.is_alive(candidate):
                return candidate
        raise ConsistencyError(f"No free session name for tab '{tab_slug}'")

    @staticmethod
    def _validate_name(raw: str) -> str:
        name = raw.strip()
        if not name:
            raise ValidationError("Thread name must not be empty")
        if "/" in name:
            raise ValidationError("Thread name must not contain '/'")
        return slugify(name)

    async def _is_name_available(self, project: Project, name: str) -> bool:
        if any(
            thread.project_id == project.id and thread.name == name
            for thread in self._document.active_threads
        ):
            return False
        if (project.resolved_worktrees_base() / name).exists():
            return False
        if await self._git.branch_exists(project.repo_path, name):
            return False
        session_name = self._session_name(project, name, default_tab_slug(0))
        if session_name in self._all_session_names():
            return False
        return not await self._terminal.is_alive(session_name)

    async def _first_available(self, project: Project, candidates: Iterable[str]) -> str | None:
        for candidate in candidates:
            if await self._is_name_available(project, candidate):
                return candidate
        return None

    async def _generate_thread_name(self, project: Project) -> str:
        for _ in range(5):
            name = await self._first_available(project, numbered_candidates(self._name_generator()))
            if name is not None:
                return name
        raise ConsistencyError(f"Could not find an available thread name for '{project.name}'")

    def _find_any_thread(self, thread_id: str) -> Thread | None:
        return next((thread for thread in self._document.threads if thread.id == thread_id), None)

    def _match_section(self, key: str) -> ThreadSection | None:
        sections = self._document.settings.sections
        for section in sections:
            if section.id == key:
                return section
        folded = key.strip().casefold()
        return next((section for section in sections if section.name.casefold() == folded), None)

    def _require_section(self, key: str) -> ThreadSection:
        section = self._match_section(key)
        if section is None:
            raise NotFoundError(f"Unknown section: {key}")
        return section

    def _effective_section_id(self, thread: Thread) -> str | None:
        """The thread's section, or the first visible one when it has none or an unknown one."""

        settings = self._document.settings
        if thread.section_id is not None and any(
            section.id == thread.section_id for section in settings.sections
        ):
            return thread.section_id
        default = settings.default_section()
        return default.id if default else None

    def _section_threads(self, section_id: str) -> list[Thread]:
        return [
            thread
            for thread in self._document.active_threads
            if not thread.is_main and self._effective_section_id(thread) == section_id
        ]

    def _order_group(
        self, project_id: str, section_id: str | None, pinned: bool, *, exclude: str | None = None
    ) -> list[Thread]:
        group = [
            thread
            for thread in self._document.active_threads
            if not thread.is_main
            and thread.project_id == project_id
            and thread.is_pinned == pinned
            and thread.id != exclude
            and self._effective_section_id(thread) == section_id
        ]
        group.sort(key=lambda thread: thread.display_order)
        return group

    def _next_display_order(
        self, project_id: str, section_id: str | None, pinned: bool, *, exclude: str | None = None
    ) -> int:
        group = self._order_group(project_id, section_id, pinned, exclude=exclude)
        return max((thread.display_order for thread in group), default=-1) + 1

    def _resolve_agent_type(self, project: Project, requested: str | None) -> str | None:
        settings = self._document.settings
        active = [agent for agent in settings.active_agents if agent in self._profiles]
        if not active:
            return None
        if len(active) == 1:
            return active[0]
        for candidate in (requested, project.agent_type, settings.default_agent_type):
            if candidate in active:
                return candidate
        return active[0]

    def _agent_command(self, agent_type: str | None) -> str | None:
        profile = self._profiles.get(agent_type) if agent_type else None
        if profile is None:
            return None
        command = profile.command
        if profile.id == "custom":
            command = self._document.settings.custom_agent_command or command
        return command.strip() or None

    def _new_tab(self, session_name: str, agent_type: str | None) -> Tab:
        if agent_type and self._agent_command(agent_type):
            return Tab(session_name=session_name, kind=TabKind.AGENT, agent_type=agent_type)
        return Tab(session_name=session_name, kind=TabKind.SHELL)

    async def _start_session(self, project: Project, thread: Thread, tab: Tab) -> bool:
        """Start the tab's session unless it is alive; returns True when it was created."""

        env = session_environment(project, thread)
        agent_command = (
            self._agent_command(tab.agent_type or thread.selected_agent_type) if tab.is_agent else None
        )
        shell = self._settings.user_shell
        if agent_command:
            command = agent_start_command(env, thread.worktree_path, agent_command, shell)
        else:
            command = shell_start_command(env, thread.worktree_path, shell)
        created = await self._terminal.ensure_session(tab.session_name, thread.worktree_path, command)
        try:
            await self._terminal.set_environment_many(tab.session_name, env)
        except ExternalToolError:
            if created:
                await self._terminal.kill_all([tab.session_name])
            raise
        return created

    def _session_namespace(self, slug: str) -> str:
        return f"{self._settings.session_prefix}-{slug}-"

    async def _session_matches(self, project: Project, thread: Thread, session_name: str) -> bool:
        """Whether a live session was started for ``thread`` and not for some other checkout."""

        worktree = await self._terminal.environment_value(session_name, ENV_WORKTREE_PATH)
        if thread.is_main:
            if worktree is not None:
                return False
            recorded = await self._terminal.environment_value(session_name, ENV_PROJECT_PATH)
            if recorded is not None:
                return Path(recorded).resolve() == Path(project.repo_path).resolve()
        elif worktree is not None:
            return Path(worktree).resolve() == Path(thread.worktree_path).resolve()
        cwd = await self._terminal.pane_path(session_name)
        return cwd is not None and _is_within(cwd, thread.worktree_path)

    async def _refresh_session_paths(self, project: Project, thread: Thread) -> None:
        env = session_environment(project, thread)
        for name in thread.session_names:
            try:
                await self._terminal.set_environment_many(
                    name, {key: env[key] for key in (ENV_THREAD_NAME, ENV_WORKTREE_PATH) if key in env}
                )
                await self._terminal.update_working_directory(name, thread.worktree_path)
            except ExternalToolError as exc:
                logger.warning(
                    "Could not refresh session after rename",
                    extra={"session": name, "error": exc.diagnostic},
                )

    def _remap_session(self, thread: Thread, old: str, new: str) -> None:
        for tab in thread.tabs:
            if tab.session_name == old:
                tab.session_name = new
        thread.pinned_sessions = [new if name == old else name for name in thread.pinned_sessions]
        for status in (thread.unread_sessions, thread.waiting_sessions, thread.busy_sessions):
            if old in status:
                status.discard(old)
                status.add(new)
        if thread.last_selected_session == old:
            thread.last_selected_session = new
        if self._focused_session == old:
            self._focused_session = new
        self._detector.rename(old, new)

    @staticmethod
    def _normalize_pins(thread: Thread) -> None:
        pinned = set(thread.pinned_sessions)
        pinned_tabs = [tab for tab in thread.tabs if tab.session_name in pinned]
        thread.tabs = pinned_tabs + [tab for tab in thread.tabs if tab.session_name not in pinned]
        thread.pinned_sessions = [tab.session_name for tab in pinned_tabs]

    def _retire(self, thread: Thread) -> None:
        for name in thread.session_names:
            self._detector.forget(name)
            if self._focused_session == name:
                self._focused_session = None
        thread.is_archived = True
        thread.tabs = []
        thread.pinned_sessions = []
        thread.unread_sessions.clear()
        thread.waiting_sessions.clear()
        thread.busy_sessions.clear()
        thread.last_selected_session = None

    async def _resolve_base_branch(self, project: Project) -> str:
        if project.default_branch:
            return project.default_branch
        return await self._git.detect_default_branch(project.repo_path) or "main"

    async def _rollback(self, compensations: list[Compensation]) -> None:
        for undo in reversed(compensations):
            try:
                await undo()
            except Exception:
                logger.exception("Rollback step failed")

    def _commit(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = None
        self._store.save(self._document)

    def _schedule_save(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            return
        self._save_task = asyncio.create_task(self._delayed_save())

    async def _delayed_save(self) -> None:
        await asyncio.sleep(self._settings.save_delay)
        try:
            self._store.save(self._document)
        except OSError:
            logger.exception("Coalesced state save failed")

    def _publish(self, event: OrchestratorEvent) -> None:
        self._events.publish(event)

    def _publish_threads(self) -> None:
        self._publish(ThreadsUpdated(tuple(self.snapshot_threads())))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    def _schedule_injection(
        self,
        project: Project,
        thread: Thread,
        tab: Tab,
        *,
        initial_prompt: str | None = None,
        resume: bool = False,
    ) -> None:
        settings = self._document.settings
        terminal_command = None
        context = None
        resume_command = None
        if tab.is_agent:
            context = project.agent_context_injection or settings.agent_context_injection or None
            profile = self.profile_for_tab(thread, tab)
            if resume and profile is not None and profile.supports_resume:
                resume_command = profile.resume_command
        else:
            terminal_command = (
                project.terminal_injection_command or settings.terminal_injection_command or None
            )
        prompt = initial_prompt.strip() if initial_prompt else None
        if not (terminal_command or context or resume_command or prompt):
            return
        self._spawn(
            self._inject(thread.id, tab.session_name, terminal_command, resume_command, context, prompt)
        )

    async def _inject(
        self,
        thread_id: str,
        session_name: str,
        terminal_command: str | None,
        resume_command: str | None,
        context: str | None,
        prompt: str | None,
    ) -> None:
        try:
            if terminal_command:
                await asyncio.sleep(self._settings.injection_delay)
                await self._terminal.send_input(session_name, terminal_command)
            if resume_command or context or prompt:
                await asyncio.sleep(self._settings.prompt_delay)
            if resume_command:
                await self._terminal.send_input(session_name, resume_command)
            if context:
                await self._terminal.send_input(session_name, context)
            if prompt and await self._terminal.send_input(session_name, prompt):
                await self._after_prompt(thread_id, session_name, prompt)
        except (ExternalToolError, NotFoundError) as exc:
            logger.warning(
                "Post-start injection failed", extra={"session": session_name, "error": str(exc)}
            )


__all__ = ["ThreadOrchestrator"]
