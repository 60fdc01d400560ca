"""Agent profiles: the built-in workspace profile plus YAML overrides from disk."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator

import yaml
from pydantic import ValidationError

from .models import WORKSPACE_PROFILE, AgentProfile

logger = logging.getLogger(__name__)

BUILTIN_PROFILES: dict[str, AgentProfile] = {WORKSPACE_PROFILE.id: WORKSPACE_PROFILE}
PROFILE_SUFFIXES = (".yaml", ".yml")


class ProfileLoadError(RuntimeError):
    """Raised when a profile file is unreadable or a profile id is unknown."""


def read_profile(path: Path) -> AgentProfile | None:
    """Parse one profile file; an empty file yields ``None``."""

    try:
        with path.open(encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as exc:
        raise ProfileLoadError(f"Cannot read profile {path}: {exc}") from exc
    if document is None:
        return None
    try:
        return AgentProfile.model_validate(document)
    except ValidationError as exc:
        raise ProfileLoadError(f"Invalid profile {path}: {exc}") from exc


class ProfileLoader:
    """Resolves the profile a task runs under.

    Directories that do not exist are dropped up front. Files are re-read on
    every lookup so edits take effect for the next task without a restart.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths = [Path(path) for path in search_paths or () if Path(path).is_dir()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def _profile_files(self) -> Iterator[Path]:
        # Directories in order; within one, by file name.
        for directory in self._search_paths:
            candidates = (p for p in directory.iterdir() if p.suffix in PROFILE_SUFFIXES)
            yield from sorted(candidates, key=lambda p: p.name)

    def load_all(self) -> dict[str, AgentProfile]:
        """Built-ins first, then disk profiles; a later file wins on an id clash.

        Every broken file is reported together in one ``ProfileLoadError``.
        """

        profiles = dict(BUILTIN_PROFILES)
        problems: list[str] = []
        for path in self._profile_files():
            try:
                profile = read_profile(path)
            except ProfileLoadError as exc:
                problems.append(str(exc))
                continue
            if profile is None:
                continue
            if profile.id in profiles:
                logger.debug("Profile overridden", extra={"profile_id": profile.id, "path": str(path)})
            profiles[profile.id] = profile
        if problems:
            raise ProfileLoadError("; ".join(problems))
        return profiles

    def get(self, profile_id: str) -> AgentProfile:
        profile = self.load_all().get(profile_id)
        if profile is None:
            raise ProfileLoadError(f"Unknown profile '{profile_id}'")
        return profile


__all__ = ["BUILTIN_PROFILES", "ProfileLoadError", "ProfileLoader", "read_profile"]
