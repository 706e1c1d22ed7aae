"""Atomic JSON persistence for the state document."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..errors import StateLoadError
from .models import STATE_VERSION, StateDocument

logger = logging.getLogger(__name__)


def _migrate_v0(raw: dict[str, Any]) -> dict[str, Any]:
    # Unversioned documents kept projects inside the settings block.
    settings = dict(raw.get("settings") or {})
    projects = raw.get("projects") or settings.pop("projects", [])
    return {**raw, "settings": settings, "projects": projects, "version": 1}


_MIGRATIONS = {0: _migrate_v0}


class StateStore:
    """Reads and writes the versioned state document.

    Writes go to a temporary file in the target directory followed by
    ``os.replace`` so a crash mid-write leaves the previous document intact.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> StateDocument:
        if not self._path.exists():
            return StateDocument()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StateLoadError(f"Failed to read state from {self._path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise StateLoadError(f"State document in {self._path} is not an object")

        version = int(raw.get("version", 0))
        if version > STATE_VERSION:
            raise StateLoadError(
                f"State document version {version} is newer than supported version {STATE_VERSION}"
            )
        while version < STATE_VERSION:
            raw = _MIGRATIONS[version](raw)
            version = int(raw["version"])
            logger.info("Migrated state document", extra={"version": version})

        try:
            return StateDocument.model_validate(raw)
        except ValidationError as exc:
            raise StateLoadError(f"State validation error in {self._path}: {exc}") from exc

    def save(self, document: StateDocument) -> None:
        payload = json.dumps(document.model_dump(mode="json"), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, self._path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise


__all__ = ["StateStore"]
