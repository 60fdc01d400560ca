"""Session registry and session/task models."""

from .models import Session, Task, Turn
from .registry import SessionBusyError, SessionError, SessionNotFoundError, SessionRegistry

__all__ = [
    "Session",
    "SessionBusyError",
    "SessionError",
    "SessionNotFoundError",
    "SessionRegistry",
    "Task",
    "Turn",
]
