"""Background loops: dead-session recovery and agent activity sampling."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable

from ..detection import ActivityTransition, MarkerMatcher
from ..errors import ConsistencyError, ExternalToolError, ThreadloomError
from ..events import DeadSessionsRecreated, SessionRecoveryFailed
from ..profiles import AgentProfile
from ..storage import RECOVERY_ALERT

if TYPE_CHECKING:
    from .service import ThreadOrchestrator

logger = logging.getLogger(__name__)


class SessionMonitor:
    """Periodic sweep and sampling driven off the orchestrator.

    The sweep recreates dead sessions and retires threads whose worktree
    vanished; the sampler feeds pane captures to the activity detector. A
    capture failure wakes the sweep early.
    """

    def __init__(self, orchestrator: "ThreadOrchestrator") -> None:
        self._orchestrator = orchestrator
        self._terminal = orchestrator.terminal
        self._settings = orchestrator.settings
        self._matchers: dict[str, MarkerMatcher] = {}
        self._failures: dict[str, int] = {}
        self._alerted: set[str] = set()
        self._ticks = 0
        self._wake = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._wake = asyncio.Event()
        self._tasks = [
            asyncio.create_task(
                self._loop(self.sweep_once, self._settings.sweep_interval, wake=self._wake),
                name="threadloom-sweep",
            ),
            asyncio.create_task(
                self._loop(self.sample_once, self._settings.sample_interval),
                name="threadloom-sample",
            ),
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def request_sweep(self) -> None:
        self._wake.set()

    def failure_count(self, session_name: str) -> int:
        return self._failures.get(session_name, 0)

    async def _loop(
        self,
        step: Callable[[], Awaitable[None]],
        interval: float,
        *,
        wake: asyncio.Event | None = None,
    ) -> None:
        while True:
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Monitor step failed", extra={"step": step.__name__})
            if wake is None:
                await asyncio.sleep(interval)
                continue
            try:
                await asyncio.wait_for(wake.wait(), interval)
            except asyncio.TimeoutError:
                pass
            wake.clear()

    async def sweep_once(self) -> None:
        orchestrator = self._orchestrator
        for thread in orchestrator.snapshot_threads():
            if not thread.is_main and not Path(thread.worktree_path).is_dir():
                await orchestrator.retire_missing_worktree(thread.id)

        try:
            live = set(await self._terminal.list_sessions())
        except ExternalToolError as exc:
            logger.warning("Session sweep skipped", extra={"error": exc.diagnostic})
            return

        known: set[str] = set()
        for thread in orchestrator.snapshot_threads():
            recreated: list[str] = []
            for name in thread.session_names:
                known.add(name)
                if name in live:
                    self._failures.pop(name, None)
                    self._alerted.discard(name)
                    continue
                try:
                    if await orchestrator.recreate_session_if_needed(name, thread.id):
                        recreated.append(name)
                        self._failures.pop(name, None)
                        self._alerted.discard(name)
                except (ThreadloomError, OSError) as exc:
                    self._record_failure(thread.id, name, exc)
            if recreated:
                orchestrator.publish(DeadSessionsRecreated(thread.id, tuple(recreated)))

        for name in set(self._failures) - known:
            self._failures.pop(name, None)
            self._alerted.discard(name)

        self._ticks += 1
        if self._ticks % self._settings.dirty_refresh_every == 0:
            await orchestrator.refresh_dirty_states()
            await orchestrator.refresh_delivered_states()

    def _record_failure(self, thread_id: str, session_name: str, exc: Exception) -> None:
        count = self._failures.get(session_name, 0) + 1
        self._failures[session_name] = count
        threshold = self._settings.recreate_alert_threshold
        log = logger.info if isinstance(exc, ConsistencyError) else logger.warning
        log(
            "Session recreation failed",
            extra={"session": session_name, "failures": count, "error": str(exc)},
        )
        if count < threshold or session_name in self._alerted:
            return
        self._alerted.add(session_name)
        logger.error(
            "Session recreation keeps failing",
            extra={"session": session_name, "failures": count, "threshold": threshold},
        )
        self._orchestrator.publish(
            SessionRecoveryFailed(
                thread_id=thread_id,
                session_name=session_name,
                failure_count=count,
                threshold=threshold,
                error=str(exc),
            )
        )
        self._orchestrator.record_journal(
            thread_id,
            RECOVERY_ALERT,
            {"session": session_name, "failures": count, "error": str(exc)},
            session=session_name,
            failures=count,
        )

    def _matcher(self, profile: AgentProfile) -> MarkerMatcher:
        matcher = self._matchers.get(profile.id)
        if matcher is None:
            matcher = MarkerMatcher.from_profile(profile)
            self._matchers[profile.id] = matcher
        return matcher

    async def sample_once(self) -> None:
        orchestrator = self._orchestrator
        detector = orchestrator.detector
        focused = orchestrator.focused_session
        for thread in orchestrator.snapshot_threads():
            transitions: list[ActivityTransition] = []
            for tab in thread.tabs:
                if not tab.is_agent:
                    continue
                profile = orchestrator.profile_for_tab(thread, tab)
                if profile is None:
                    continue
                capture = await self._terminal.capture(tab.session_name, profile.capture_lines)
                if capture is None:
                    self.request_sweep()
                    continue
                title = None
                if profile.title_busy_markers:
                    title = await self._terminal.pane_title(tab.session_name)
                transition = detector.observe(
                    tab.session_name,
                    capture,
                    matcher=self._matcher(profile),
                    debounce=profile.debounce_seconds,
                    focused=tab.session_name == focused,
                    title=title,
                    capture_lines=profile.capture_lines,
                )
                if transition is not None:
                    transitions.append(transition)
            if transitions:
                await orchestrator.apply_transitions(thread.id, transitions)


__all__ = ["SessionMonitor"]
