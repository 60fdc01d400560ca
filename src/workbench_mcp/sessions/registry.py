"""In-memory session registry enforcing one in-flight task per session."""

from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .models import Role, Session, Task, Turn

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Base class for session registry errors."""


class SessionBusyError(SessionError):
    """Raised when a session already has a task in flight."""

    def __init__(self, session_id: str, task_id: str) -> None:
        super().__init__(f"Session '{session_id}' already has a running task ({task_id})")
        self.session_id = session_id
        self.task_id = task_id


class SessionNotFoundError(SessionError):
    """Raised when an operation references an unknown session."""


class SessionRegistry:
    """Owns every live session and serializes the tasks within each one.

    The registry is an explicit object handed to whoever hosts the pipeline;
    there is no module-level instance. All state transitions happen under a
    single lock so the busy check and the busy mark are one atomic step.
    """

    def __init__(self, *, max_turns: int = 20) -> None:
        self._max_turns = max_turns
        self._sessions: dict[str, Session] = {}
        self._claimed_dirs: dict[Path, Task] = {}
        self._lock = threading.Lock()

    @property
    def max_turns(self) -> int:
        return self._max_turns

    def resolve_or_create(self, session_id: str, working_dir: Path) -> Session:
        """Return the session for ``session_id``, creating it on first use."""

        session_id = session_id.strip()
        if not session_id:
            raise SessionError("Session id must not be empty")
        working_dir = Path(working_dir)

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(
                    session_id=session_id,
                    working_dir=working_dir,
                    history=deque(maxlen=self._max_turns),
                )
                self._sessions[session_id] = session
                logger.info(
                    "Created session",
                    extra={"session_id": session_id, "working_dir": str(working_dir)},
                )
            elif session.working_dir != working_dir:
                raise SessionError(
                    f"Session '{session_id}' is bound to {session.working_dir}, not {working_dir}"
                )
            return session

    def get(self, session_id: str) -> Session:
        with self._lock:
            return self._require(session_id)

    def sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def history(self, session_id: str) -> list[Turn]:
        with self._lock:
            return list(self._require(session_id).history)

    def append_turn(self, session_id: str, role: Role, text: str) -> None:
        if role not in ("user", "assistant"):
            raise ValueError(f"Unknown turn role '{role}'")
        with self._lock:
            session = self._require(session_id)
            session.history.append(Turn(role=role, text=text))
            session.updated_at = datetime.now(timezone.utc)

    def try_begin_task(self, session_id: str, message: str) -> Task:
        """Mark the session busy with a new task.

        Fails with ``SessionBusyError`` while the session has a task in flight
        or its checkout is claimed by ``working_dir_scope``.
        """

        with self._lock:
            session = self._require(session_id)
            if session.active_task is not None:
                raise SessionBusyError(session_id, session.active_task.task_id)
            claim = self._claimed_dirs.get(session.working_dir)
            if claim is not None:
                raise SessionBusyError(session_id, claim.task_id)
            task = Task(session_id=session_id, message=message)
            session.active_task = task
            session.updated_at = datetime.now(timezone.utc)
            return task

    def end_task(self, session_id: str, task: Task | None = None) -> bool:
        """Clear the busy flag; returns False if there was nothing to clear.

        When ``task`` is given only that task's registration is removed, so a
        late call from a finished task never clears a newer one.
        """

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.active_task is None:
                return False
            if task is not None and session.active_task is not task:
                return False
            session.active_task = None
            session.updated_at = datetime.now(timezone.utc)
            return True

    @contextmanager
    def task_scope(self, session_id: str, message: str) -> Iterator[Task]:
        """Hold the session's busy flag for the lifetime of the block."""

        task = self.try_begin_task(session_id, message)
        try:
            yield task
        finally:
            self.end_task(session_id, task)

    @contextmanager
    def working_dir_scope(self, working_dir: Path, label: str) -> Iterator[list[str]]:
        """Claim the checkout at ``working_dir`` for the block.

        Used for git mutations so they never overlap an agent run against the
        same checkout. Every session bound to it is marked busy, and no task
        can begin there (even in a session created meanwhile) until the block
        exits. Fails with ``SessionBusyError`` if any of them is busy or the
        checkout is already claimed.
        """

        working_dir = Path(working_dir)
        claims: list[tuple[str, Task]] = []
        with self._lock:
            existing = self._claimed_dirs.get(working_dir)
            if existing is not None:
                raise SessionBusyError(existing.session_id, existing.task_id)
            bound = [s for s in self._sessions.values() if s.working_dir == working_dir]
            for session in bound:
                if session.active_task is not None:
                    raise SessionBusyError(session.session_id, session.active_task.task_id)
            claim = Task(session_id=str(working_dir), message=label)
            self._claimed_dirs[working_dir] = claim
            for session in bound:
                task = Task(session_id=session.session_id, message=label)
                session.active_task = task
                claims.append((session.session_id, task))
        try:
            yield [session_id for session_id, _ in claims]
        finally:
            with self._lock:
                if self._claimed_dirs.get(working_dir) is claim:
                    del self._claimed_dirs[working_dir]
            for session_id, task in claims:
                self.end_task(session_id, task)

    def discard(self, session_id: str) -> None:
        """Tear down a session whose workspace is being thrown away."""

        with self._lock:
            session = self._require(session_id)
            if session.active_task is not None:
                raise SessionBusyError(session_id, session.active_task.task_id)
            del self._sessions[session_id]

    def _require(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError as exc:
            raise SessionNotFoundError(f"Unknown session '{session_id}'") from exc


__all__ = [
    "SessionBusyError",
    "SessionError",
    "SessionNotFoundError",
    "SessionRegistry",
]
