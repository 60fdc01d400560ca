"""Data models for sessions and the tasks that run inside them."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal
from uuid import uuid4

Role = Literal["user", "assistant"]
TaskStatus = Literal["running", "done", "error"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class Turn:
    role: Role
    text: str


@dataclass(slots=True)
class Task:
    """One execution attempt of the agent for a single message."""

    session_id: str
    message: str
    prompt: str = ""
    task_id: str = field(default_factory=lambda: f"task-{uuid4().hex[:12]}")
    started_at: datetime = field(default_factory=_utcnow)
    cancelled: bool = False
    status: TaskStatus = "running"
    output: list[str] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status != "running"

    @property
    def full_text(self) -> str:
        return "".join(self.output)

    def append_output(self, fragment: str) -> None:
        if self.terminal:
            return
        self.output.append(fragment)

    def finish(self, status: TaskStatus) -> bool:
        """Move the task to a terminal state; returns False if it already was."""

        if self.terminal:
            return False
        self.status = status
        return True


@dataclass(slots=True)
class Session:
    """A conversation thread bound to one working-directory checkout."""

    session_id: str
    working_dir: Path
    history: deque[Turn]
    active_task: Task | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def busy(self) -> bool:
        return self.active_task is not None

    def snapshot(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "working_dir": str(self.working_dir),
            "turns": len(self.history),
            "busy": self.busy,
            "active_task_id": self.active_task.task_id if self.active_task else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


__all__ = ["Role", "Session", "Task", "TaskStatus", "Turn"]
