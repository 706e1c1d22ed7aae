from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import pytest

from threadloom.errors import ExternalToolError, NotFoundError, PathExistsError, ValidationError


def section_named(h, name: str):
    return next(section for section in h.orchestrator.sections if section.name == name)


def order_in(h, section_id: str, *, pinned: bool = False) -> list[str]:
    threads = [
        thread
        for thread in h.orchestrator.threads
        if thread.section_id == section_id and thread.is_pinned == pinned and not thread.is_main
    ]
    return [thread.name for thread in sorted(threads, key=lambda thread: thread.display_order)]


def test_sections_can_be_added_renamed_reordered_and_removed(harness_factory) -> None:
    h = harness_factory()

    async def scenario():
        added = await h.orchestrator.add_section("Blocked", color="red")
        with pytest.raises(ValidationError):
            await h.orchestrator.add_section("blocked")
        with pytest.raises(ValidationError):
            await h.orchestrator.add_section("   ")
        renamed = await h.orchestrator.rename_section("blocked", "On Hold")
        with pytest.raises(ValidationError):
            await h.orchestrator.rename_section(added.id, "done")
        moved = await h.orchestrator.reorder_section("On Hold", 1)
        clamped = await h.orchestrator.reorder_section("todo", 99)
        await h.orchestrator.remove_section(added.id)
        with pytest.raises(NotFoundError):
            await h.orchestrator.remove_section("On Hold")
        return added, renamed, moved, clamped

    added, renamed, moved, clamped = asyncio.run(scenario())

    assert added.sort_order == 4
    assert added.color == "red"
    assert renamed.id == added.id
    assert renamed.name == "On Hold"
    assert [section.name for section in moved] == ["TODO", "On Hold", "In Progress", "Reviewing", "Done"]
    assert [section.sort_order for section in moved] == [0, 1, 2, 3, 4]
    assert [section.name for section in clamped] == ["On Hold", "In Progress", "Reviewing", "Done", "TODO"]
    saved = sorted(h.store.load().settings.sections, key=lambda section: section.sort_order)
    assert [section.name for section in saved] == ["In Progress", "Reviewing", "Done", "TODO"]


def test_sections_holding_threads_cannot_be_hidden_or_removed(harness_factory) -> None:
    h = harness_factory(names=("river-otter", "swift-fox"))

    async def scenario():
        project = await h.add_project()
        await h.orchestrator.create_main_thread(project.id)
        first = await h.orchestrator.create_thread(project.id)
        todo = section_named(h, "TODO")
        with pytest.raises(ValidationError):
            await h.orchestrator.set_section_visibility("TODO", False)
        with pytest.raises(ValidationError):
            await h.orchestrator.remove_section(todo.id)

        await h.orchestrator.move_thread(first.id, section_named(h, "Done").id)
        hidden = await h.orchestrator.set_section_visibility("todo", False)
        second = await h.orchestrator.create_thread(project.id)
        shown = await h.orchestrator.set_section_visibility(todo.id, True)
        return first, second, hidden, shown

    first, second, hidden, shown = asyncio.run(scenario())

    assert hidden.is_visible is False
    assert shown.is_visible is True
    assert second.section_id == section_named(h, "In Progress").id


def test_last_visible_section_stays_visible(harness_factory) -> None:
    h = harness_factory()

    async def scenario():
        for name in ("TODO", "In Progress", "Reviewing"):
            await h.orchestrator.set_section_visibility(name, False)
        with pytest.raises(ValidationError):
            await h.orchestrator.set_section_visibility("Done", False)

    asyncio.run(scenario())

    assert [section.name for section in h.orchestrator.sections if section.is_visible] == ["Done"]


def test_reorder_thread_renumbers_both_pin_groups(harness_factory) -> None:
    h = harness_factory(names=("amber-fox", "brave-owl", "calm-wren", "dapper-reef"))

    async def scenario():
        project = await h.add_project()
        main = await h.orchestrator.create_main_thread(project.id)
        a, b, c, d = [await h.orchestrator.create_thread(project.id) for _ in range(4)]
        todo = section_named(h, "TODO").id
        await h.orchestrator.toggle_thread_pin(d.id)

        await h.orchestrator.reorder_thread(c.id, 0)
        first = order_in(h, todo)
        await h.orchestrator.reorder_thread(a.id, 10)
        second = order_in(h, todo)
        bumped = await h.orchestrator.bump_thread_to_top(a.id)
        third = order_in(h, todo)
        moved = await h.orchestrator.reorder_thread(b.id, 0, section="Done")
        with pytest.raises(ValidationError):
            await h.orchestrator.reorder_thread(main.id, 0)
        with pytest.raises(NotFoundError):
            await h.orchestrator.reorder_thread(a.id, 0, section="Nowhere")
        return todo, first, second, bumped, third, moved

    todo, first, second, bumped, third, moved = asyncio.run(scenario())

    assert first == ["calm-wren", "amber-fox", "brave-owl"]
    assert second == ["calm-wren", "brave-owl", "amber-fox"]
    assert bumped.display_order == -1
    assert third == ["amber-fox", "calm-wren", "brave-owl"]
    assert order_in(h, todo, pinned=True) == ["dapper-reef"]
    assert moved.section_id == section_named(h, "Done").id
    assert moved.display_order == 0


def test_recover_archived_thread_checks_out_its_branch_again(harness_factory) -> None:
    h = harness_factory()

    async def scenario():
        project = await h.add_project()
        thread = await h.orchestrator.create_thread(project.id)
        await h.orchestrator.archive_thread(thread.id)
        recovered = await h.orchestrator.recover_worktree(thread.id)
        await h.orchestrator.wait_for_background()
        return thread, recovered

    thread, recovered = asyncio.run(scenario())

    worktree = Path(recovered.worktree_path)
    assert recovered.id == thread.id
    assert not recovered.is_archived
    assert worktree.is_dir()
    assert h.git.worktree_branches[worktree] == "river-otter"
    assert recovered.session_names == ["app-acme-river-otter-main"]
    assert recovered.tabs[0].is_agent
    assert ("app-acme-river-otter-main", "/resume") in h.terminal.sent
    assert [saved.id for saved in h.store.load().active_threads] == [thread.id]


def test_recover_cuts_a_new_branch_when_the_old_one_is_gone(harness_factory) -> None:
    h = harness_factory()

    async def scenario():
        project = await h.add_project()
        thread = await h.orchestrator.create_thread(project.id)
        shutil.rmtree(thread.worktree_path)
        h.git.branches.discard(thread.branch_name)
        return await h.orchestrator.recover_worktree(thread.id)

    recovered = asyncio.run(scenario())

    assert Path(recovered.worktree_path).is_dir()
    assert "river-otter" in h.git.branches
    assert recovered.session_names == ["app-acme-river-otter-main"]
    assert "app-acme-river-otter-main" in h.terminal.sessions


def test_recover_rolls_back_when_the_session_cannot_start(harness_factory) -> None:
    h = harness_factory()

    async def scenario():
        project = await h.add_project()
        thread = await h.orchestrator.create_thread(project.id)
        await h.orchestrator.archive_thread(thread.id)
        h.terminal.create_failures.add("app-acme-river-otter-main")
        with pytest.raises(ExternalToolError):
            await h.orchestrator.recover_worktree(thread.id)
        return thread

    thread = asyncio.run(scenario())

    assert not Path(thread.worktree_path).exists()
    assert "river-otter" in h.git.branches
    assert h.orchestrator.threads == []
    archived = h.orchestrator.snapshot_threads(include_archived=True)
    assert [entry.is_archived for entry in archived] == [True]


def test_recover_refuses_main_and_present_worktrees(harness_factory) -> None:
    h = harness_factory()

    async def scenario():
        project = await h.add_project()
        main = await h.orchestrator.create_main_thread(project.id)
        thread = await h.orchestrator.create_thread(project.id)
        with pytest.raises(ValidationError):
            await h.orchestrator.recover_worktree(main.id)
        with pytest.raises(PathExistsError):
            await h.orchestrator.recover_worktree(thread.id)
        with pytest.raises(NotFoundError):
            await h.orchestrator.recover_worktree("missing")

    asyncio.run(scenario())


def test_refresh_delivered_states_marks_clean_merged_threads(harness_factory) -> None:
    h = harness_factory(names=("river-otter", "swift-fox"))

    async def scenario():
        project = await h.add_project()
        main = await h.orchestrator.create_main_thread(project.id)
        merged = await h.orchestrator.create_thread(project.id)
        pending = await h.orchestrator.create_thread(project.id)
        h.git.unmerged.add(pending.branch_name)
        await h.orchestrator.refresh_delivered_states()
        first = {thread.name: thread.is_delivered for thread in h.orchestrator.threads}
        h.git.dirty.add(Path(merged.worktree_path))
        await h.orchestrator.refresh_delivered_states()
        second = h.orchestrator.get_thread(merged.id).is_delivered
        return main, first, second

    main, first, second = asyncio.run(scenario())

    assert first == {"main": False, "river-otter": True, "swift-fox": False}
    assert second is False
