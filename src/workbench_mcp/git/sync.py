"""Git status, commit and push for agent-modified checkouts."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..agent.utils import NON_INTERACTIVE_ENV, sanitize_environment

logger = logging.getLogger(__name__)


class GitErrorKind(str, Enum):
    EMPTY_MESSAGE = "empty_message"
    NOTHING_TO_COMMIT = "nothing_to_commit"
    NO_REMOTE = "no_remote"
    PUSH_FAILED = "push_failed"
    COMMAND_FAILED = "command_failed"


class GitOperationError(RuntimeError):
    """Raised when the working-directory state cannot be read."""

    def __init__(self, message: str, kind: GitErrorKind = GitErrorKind.COMMAND_FAILED) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass(slots=True)
class GitCommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def detail(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"


@dataclass(slots=True)
class WorkingDirectoryState:
    """Disjoint path sets describing uncommitted changes at one instant."""

    modified: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.modified or self.added or self.deleted or self.untracked)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "modified": list(self.modified),
            "added": list(self.added),
            "deleted": list(self.deleted),
            "untracked": list(self.untracked),
        }


@dataclass(slots=True)
class GitResult:
    success: bool
    kind: GitErrorKind | None = None
    error: str | None = None
    pushed: bool = False
    commit: str | None = None

    @classmethod
    def failure(cls, kind: GitErrorKind, error: str) -> "GitResult":
        return cls(success=False, kind=kind, error=error)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            payload["error"] = self.error
        if self.kind is not None:
            payload["kind"] = self.kind.value
        if self.commit is not None:
            payload["commit"] = self.commit
        if self.success:
            payload["pushed"] = self.pushed
        return payload


def parse_porcelain(output: str) -> WorkingDirectoryState:
    """Classify ``git status --porcelain=v1 -z`` output into the four path sets."""

    state = WorkingDirectoryState()
    fields = output.split("\0")
    index = 0
    while index < len(fields):
        entry = fields[index]
        index += 1
        if len(entry) < 4:
            continue
        xy, path = entry[:2], entry[3:]
        if "R" in xy or "C" in xy:
            # The original path follows as its own field.
            index += 1
        if xy == "??":
            state.untracked.append(path)
        elif xy == "!!":
            continue
        elif "D" in xy:
            state.deleted.append(path)
        elif xy[0] == "A":
            state.added.append(path)
        else:
            state.modified.append(path)

    state.modified.sort()
    state.added.sort()
    state.deleted.sort()
    state.untracked.sort()
    return state


class GitSynchronizer:
    """Run git against a working directory; every status call hits the disk."""

    def __init__(
        self,
        git_executable: str | None = None,
        *,
        author_name: str = "AI Architect",
        author_email: str = "ai-architect@localhost",
        timeout: float = 60.0,
    ) -> None:
        self._git = git_executable or shutil.which("git") or "git"
        self._author_name = author_name
        self._author_email = author_email
        self._timeout = timeout

    async def status(self, working_dir: Path) -> WorkingDirectoryState:
        result = await self._run(
            working_dir, "status", "--porcelain=v1", "-z", "--untracked-files=all"
        )
        if not result.ok:
            raise GitOperationError(f"git status failed: {result.detail}")
        return parse_porcelain(result.stdout)

    async def commit_all(self, working_dir: Path, message: str) -> GitResult:
        """Stage every change and commit it; rejected requests leave the checkout untouched."""

        if not message or not message.strip():
            return GitResult.failure(GitErrorKind.EMPTY_MESSAGE, "Commit message must not be empty")

        try:
            state = await self.status(working_dir)
        except GitOperationError as exc:
            return GitResult.failure(exc.kind, str(exc))
        if state.clean:
            return GitResult.failure(GitErrorKind.NOTHING_TO_COMMIT, "Nothing to commit")

        snapshot = await self._run(working_dir, "write-tree")
        if not snapshot.ok:
            return GitResult.failure(
                GitErrorKind.COMMAND_FAILED, f"git write-tree failed: {snapshot.detail}"
            )
        index_tree = snapshot.stdout.strip()

        added = await self._run(working_dir, "add", "-A")
        if not added.ok:
            await self._restore_index(working_dir, index_tree)
            return GitResult.failure(GitErrorKind.COMMAND_FAILED, f"git add failed: {added.detail}")

        committed = await self._run(
            working_dir,
            "-c",
            f"user.name={self._author_name}",
            "-c",
            f"user.email={self._author_email}",
            "commit",
            "--quiet",
            "-m",
            message.strip(),
        )
        if not committed.ok:
            await self._restore_index(working_dir, index_tree)
            logger.warning(
                "git commit failed",
                extra={"working_dir": str(working_dir), "detail": committed.detail},
            )
            return GitResult.failure(
                GitErrorKind.COMMAND_FAILED, f"git commit failed: {committed.detail}"
            )

        head = await self._run(working_dir, "rev-parse", "HEAD")
        commit = head.stdout.strip() if head.ok else None
        logger.info("Committed changes", extra={"working_dir": str(working_dir), "commit": commit})
        return GitResult(success=True, commit=commit)

    async def push(self, working_dir: Path) -> GitResult:
        """Push the current branch; "nothing to push" is a success with ``pushed=False``."""

        remotes_result = await self._run(working_dir, "remote")
        if not remotes_result.ok:
            return GitResult.failure(
                GitErrorKind.COMMAND_FAILED, f"git remote failed: {remotes_result.detail}"
            )
        remotes = [line.strip() for line in remotes_result.stdout.splitlines() if line.strip()]
        if not remotes:
            return GitResult.failure(GitErrorKind.NO_REMOTE, "No remote is configured for this checkout")

        if not (await self._run(working_dir, "rev-parse", "--verify", "--quiet", "HEAD")).ok:
            return GitResult(success=True, pushed=False)

        upstream = await self._run(
            working_dir, "rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"
        )
        if upstream.ok:
            ahead = await self._run(working_dir, "rev-list", "--count", "@{u}..HEAD")
            if ahead.ok and ahead.stdout.strip() == "0":
                return GitResult(success=True, pushed=False)
            pushed = await self._run(working_dir, "push")
        else:
            remote = "origin" if "origin" in remotes else remotes[0]
            pushed = await self._run(working_dir, "push", "--set-upstream", remote, "HEAD")

        if not pushed.ok:
            logger.warning(
                "git push failed",
                extra={"working_dir": str(working_dir), "detail": pushed.detail},
            )
            return GitResult.failure(GitErrorKind.PUSH_FAILED, f"git push failed: {pushed.detail}")

        logger.info("Pushed changes", extra={"working_dir": str(working_dir)})
        return GitResult(success=True, pushed=True)

    async def _restore_index(self, working_dir: Path, tree: str) -> None:
        """Put the index back exactly as it was before staging."""

        restored = await self._run(working_dir, "read-tree", tree)
        if not restored.ok:
            logger.error(
                "Failed to restore index",
                extra={"working_dir": str(working_dir), "tree": tree, "detail": restored.detail},
            )

    async def _run(self, working_dir: Path, *args: str) -> GitCommandResult:
        cmd = (self._git, *args)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(working_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(NON_INTERACTIVE_ENV),
            )
        except OSError as exc:
            return GitCommandResult(args=cmd, returncode=-1, stdout="", stderr=str(exc))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), self._timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return GitCommandResult(
                args=cmd,
                returncode=-1,
                stdout="",
                stderr=f"git {args[0]} timed out after {self._timeout:g} seconds",
            )
        return GitCommandResult(
            args=cmd,
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
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
