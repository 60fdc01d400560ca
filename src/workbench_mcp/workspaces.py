"""Map repository references onto checkouts under the workspace root."""

from __future__ import annotations

from pathlib import Path, PurePosixPath


class WorkspaceNotFoundError(LookupError):
    """Raised when a repository reference does not name a usable checkout."""


class WorkspaceResolver:
    """Resolve ``owner/name`` references to ``<root>/owner/name`` git checkouts."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, repo_ref: str) -> Path:
        ref = (repo_ref or "").strip().strip("/")
        if not ref:
            raise WorkspaceNotFoundError("Repository reference must not be empty")

        parts = PurePosixPath(ref).parts
        if PurePosixPath(ref).is_absolute() or any(part in ("..", ".") for part in parts):
            raise WorkspaceNotFoundError(f"Invalid repository reference '{repo_ref}'")

        candidate = self._root.joinpath(*parts).resolve()
        if candidate != self._root and self._root not in candidate.parents:
            raise WorkspaceNotFoundError(f"Invalid repository reference '{repo_ref}'")
        if not candidate.is_dir():
            raise WorkspaceNotFoundError(f"No checkout for '{ref}' under {self._root}")
        if not (candidate / ".git").exists():
            raise WorkspaceNotFoundError(f"'{ref}' is not a git checkout")
        return candidate

    def list_checkouts(self) -> list[str]:
        """Return the references of every checkout found up to two levels deep."""

        if not self._root.is_dir():
            return []
        refs: list[str] = []
        for git_dir in sorted(self._root.glob("*/.git")) + sorted(self._root.glob("*/*/.git")):
            refs.append(git_dir.parent.relative_to(self._root).as_posix())
        return sorted(refs)


__all__ = ["WorkspaceNotFoundError", "WorkspaceResolver"]
