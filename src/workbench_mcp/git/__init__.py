"""Version-control state inspection and synchronization."""

from .sync import (
    GitCommandResult,
    GitErrorKind,
    GitOperationError,
    GitResult,
    GitSynchronizer,
    WorkingDirectoryState,
    parse_porcelain,
)

__all__ = [
    "GitCommandResult",
    "GitErrorKind",
    "GitOperationError",
    "GitResult",
    "GitSynchronizer",
    "WorkingDirectoryState",
    "parse_porcelain",
]
