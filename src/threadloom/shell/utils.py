"""Environment and quoting helpers for subprocess execution."""

from __future__ import annotations

import os
import shlex
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "TMUX",
    "TMUX_PANE",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution.

    ``TMUX`` is dropped so tmux commands issued from inside a session talk to
    the default server instead of refusing to nest.
    """

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def export_statement(variables: Mapping[str, str]) -> str:
    """Render ``export A='x' B='y'`` for a shell startup command."""

    assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in variables.items())
    return f"export {assignments}" if assignments else "true"


__all__ = ["export_statement", "sanitize_environment"]
