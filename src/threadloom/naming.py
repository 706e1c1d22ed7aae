"""Deterministic naming for threads, branches and terminal sessions.

Session names follow ``<prefix>-<repo>[-<thread>]-<tab>``. Each component is a
slug, so a name can be split back into its parts by position once the repo
and thread slugs are known; separators inside a slug are never searched for.
"""

from __future__ import annotations

import random
import re
import unicodedata
from dataclasses import dataclass

DEFAULT_PREFIX = "app"
SLUG_MAX_LENGTH = 40
REPO_SLUG_MAX_LENGTH = 16
QUESTION_SLUG = ""

_NON_SLUG = re.compile(r"[^a-z0-9]+")
_SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

_ADJECTIVES = (
    "amber", "brave", "calm", "clever", "cosmic", "crisp", "dapper", "eager",
    "fancy", "gentle", "golden", "happy", "humble", "jolly", "keen", "lively",
    "lucky", "mellow", "misty", "nimble", "noble", "quiet", "rapid", "river",
    "rustic", "silver", "snowy", "sunny", "swift", "tidy", "vivid", "witty",
)
_NOUNS = (
    "badger", "beacon", "canyon", "cedar", "comet", "falcon", "fern", "fox",
    "harbor", "heron", "lagoon", "lantern", "maple", "meadow", "otter", "owl",
    "panda", "pebble", "pine", "quartz", "raven", "reef", "sparrow", "spruce",
    "summit", "thistle", "tiger", "valley", "walrus", "willow", "wren", "zephyr",
)
_GENERATED_RE = re.compile(
    r"^(?:%s)-(?:%s)(?:-\d+)?$" % ("|".join(_ADJECTIVES), "|".join(_NOUNS))
)


def slugify(name: str, *, max_length: int = SLUG_MAX_LENGTH, fallback: str = "untitled") -> str:
    """Return a lowercase ``[a-z0-9-]`` slug; ``slugify(slugify(x)) == slugify(x)``."""

    ascii_name = (
        unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii").lower()
    )
    slug = _NON_SLUG.sub("-", ascii_name).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or fallback


def is_slug(value: str) -> bool:
    return bool(_SLUG_RE.match(value))


def repo_slug(project_name: str) -> str:
    return slugify(project_name, max_length=REPO_SLUG_MAX_LENGTH, fallback="repo")


def default_tab_slug(index: int) -> str:
    """Default slug for the tab at ``index``: ``main`` first, then ``tab-2``, ``tab-3``..."""

    return "main" if index == 0 else f"tab-{index + 1}"


@dataclass(slots=True, frozen=True)
class SessionNameParts:
    prefix: str
    repo_slug: str
    thread_slug: str | None
    tab_slug: str


def _session_head(prefix: str, repo: str, thread_slug: str | None) -> str:
    head = f"{prefix}-{repo}-"
    if thread_slug:
        head += f"{thread_slug}-"
    return head


def build_session_name(
    repo: str,
    thread_slug: str | None,
    tab_slug: str,
    *,
    prefix: str = DEFAULT_PREFIX,
) -> str:
    """Compose ``<prefix>-<repo>[-<thread>]-<tab>``.

    Main threads pass ``thread_slug=None`` and get no thread component.
    """

    components = [prefix, repo, tab_slug] + ([thread_slug] if thread_slug else [])
    for component in components:
        if not is_slug(component):
            raise ValueError(f"'{component}' is not a valid session name component")
    return _session_head(prefix, repo, thread_slug) + tab_slug


def split_session_name(
    name: str,
    repo: str,
    thread_slug: str | None,
    *,
    prefix: str = DEFAULT_PREFIX,
) -> SessionNameParts:
    """Recover the components of ``name`` using the known repo and thread slugs."""

    head = _session_head(prefix, repo, thread_slug)
    if not name.startswith(head) or len(name) == len(head):
        raise ValueError(f"Session '{name}' does not belong to '{head.rstrip('-')}'")
    return SessionNameParts(
        prefix=prefix, repo_slug=repo, thread_slug=thread_slug, tab_slug=name[len(head):]
    )


def rename_session_name(
    name: str,
    *,
    repo: str,
    old_thread_slug: str | None,
    new_thread_slug: str | None,
    prefix: str = DEFAULT_PREFIX,
) -> str:
    """Rewrite only the thread component of a session name."""

    parts = split_session_name(name, repo, old_thread_slug, prefix=prefix)
    return build_session_name(repo, new_thread_slug, parts.tab_slug, prefix=prefix)


def generate_thread_name(rng: random.Random | None = None) -> str:
    """Return a human-memorable ``adjective-noun`` name."""

    chooser = rng or random
    return f"{chooser.choice(_ADJECTIVES)}-{chooser.choice(_NOUNS)}"


def is_auto_generated(name: str) -> bool:
    return bool(_GENERATED_RE.match(name))


def numbered_candidates(base: str, *, limit: int = 9) -> list[str]:
    """``base`` followed by ``base-2`` .. ``base-<limit>``."""

    return [base] + [f"{base}-{index}" for index in range(2, limit + 1)]


def sanitize_slug_output(raw: str) -> str | None:
    """Extract a usable slug from a text generator's ``SLUG: <value>`` answer.

    Returns ``QUESTION_SLUG`` when the generator classified the prompt as a
    question, and ``None`` when nothing usable was produced.
    """

    lines = [line.strip() for line in raw.splitlines() if line.strip()]
    if not lines:
        return None
    value = next(
        (line.split(":", 1)[1].strip() for line in lines if line.upper().startswith("SLUG:")),
        lines[0],
    )
    value = value.strip("`'\" ")
    if value.upper() == "EMPTY":
        return QUESTION_SLUG
    return _validate_generated_slug(slugify(value, max_length=50, fallback=""))


def _validate_generated_slug(slug: str) -> str | None:
    segments = slug.split("-")[:5]
    slug = "-".join(segment for segment in segments if segment)
    if len(slug) < 2 or not any(char.isalpha() for char in slug):
        return None
    return slug


def naive_rename_candidates(prompt: str) -> list[str]:
    """Fallback candidates built from the first three words of a prompt."""

    words = prompt.split()[:3]
    slug = _validate_generated_slug(slugify(" ".join(words), max_length=50, fallback=""))
    return numbered_candidates(slug) if slug else []


__all__ = [
    "DEFAULT_PREFIX",
    "QUESTION_SLUG",
    "SessionNameParts",
    "build_session_name",
    "default_tab_slug",
    "generate_thread_name",
    "is_auto_generated",
    "is_slug",
    "naive_rename_candidates",
    "numbered_candidates",
    "rename_session_name",
    "repo_slug",
    "sanitize_slug_output",
    "slugify",
    "split_session_name",
]
