from __future__ import annotations

import random

import pytest

from threadloom.naming import (
    QUESTION_SLUG,
    build_session_name,
    default_tab_slug,
    generate_thread_name,
    is_auto_generated,
    is_slug,
    naive_rename_candidates,
    numbered_candidates,
    rename_session_name,
    repo_slug,
    sanitize_slug_output,
    slugify,
    split_session_name,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Fix Login Bug", "fix-login-bug"),
        ("  --feature//Branch__name-- ", "feature-branch-name"),
        ("Café déjà vu", "cafe-deja-vu"),
        ("!!!", "untitled"),
    ],
)
def test_slugify_normalizes(raw: str, expected: str) -> None:
    assert slugify(raw) == expected
    assert slugify(slugify(raw)) == slugify(raw)
    assert is_slug(slugify(raw))


def test_slugify_caps_length_without_trailing_dash() -> None:
    slug = slugify("a" * 39 + " tail", max_length=40)
    assert slug == "a" * 39
    assert len(slugify("word " * 30)) <= 40


def test_repo_slug_is_short() -> None:
    assert repo_slug("My Very Long Repository Name") == "my-very-long-rep"
    assert repo_slug("***") == "repo"


def test_session_names_compose_and_split_by_position() -> None:
    name = build_session_name("acme", "river-otter", "main")
    assert name == "app-acme-river-otter-main"
    assert build_session_name("acme", None, "main") == "app-acme-main"
    assert build_session_name("acme", None, "tab-2", prefix="dev") == "dev-acme-tab-2"

    parts = split_session_name("app-acme-river-otter-tab-2", "acme", "river-otter")
    assert parts.tab_slug == "tab-2"
    assert parts.thread_slug == "river-otter"

    with pytest.raises(ValueError):
        split_session_name("app-other-main", "acme", "river-otter")
    with pytest.raises(ValueError):
        build_session_name("acme", "Bad Slug", "main")


def test_rename_session_name_rewrites_only_thread_component() -> None:
    renamed = rename_session_name(
        "app-acme-main-main",
        repo="acme",
        old_thread_slug="main",
        new_thread_slug="main-menu",
    )
    assert renamed == "app-acme-main-menu-main"


def test_default_tab_slugs() -> None:
    assert [default_tab_slug(index) for index in range(3)] == ["main", "tab-2", "tab-3"]


def test_generated_names_are_recognized() -> None:
    name = generate_thread_name(random.Random(7))
    assert is_auto_generated(name)
    assert is_auto_generated(f"{name}-3")
    assert not is_auto_generated("fix-login-bug")
    assert numbered_candidates("river-otter", limit=3) == ["river-otter", "river-otter-2", "river-otter-3"]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("SLUG: fix-login-bug", "fix-login-bug"),
        ("Sure!\nSLUG: `Add Dark Mode`\n", "add-dark-mode"),
        ("SLUG: EMPTY", QUESTION_SLUG),
        ("refactor-parser", "refactor-parser"),
        ("SLUG: one-two-three-four-five-six", "one-two-three-four-five"),
        ("SLUG: 42", None),
        ("SLUG: x", None),
        ("", None),
    ],
)
def test_sanitize_slug_output(raw: str, expected: str | None) -> None:
    assert sanitize_slug_output(raw) == expected


def test_naive_rename_candidates_use_first_words() -> None:
    assert naive_rename_candidates("Add dark mode toggle to settings")[:2] == [
        "add-dark-mode",
        "add-dark-mode-2",
    ]
    assert naive_rename_candidates("?? !!") == []
