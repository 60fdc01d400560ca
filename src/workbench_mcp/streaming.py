"""Ordered event stream for a single task and its server-sent-event framing."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Literal, Union

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_TIMEOUT = "execution_timeout"
    EXECUTION_CANCELLED = "execution_cancelled"
    BUSY = "busy"
    CAPACITY_EXCEEDED = "capacity_exceeded"


@dataclass(slots=True, frozen=True)
class ChunkEvent:
    content: str
    type: Literal["chunk"] = "chunk"

    @property
    def terminal(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content}


@dataclass(slots=True, frozen=True)
class DoneEvent:
    content: str
    type: Literal["done"] = "done"

    @property
    def terminal(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content}


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    message: str
    kind: ErrorKind = ErrorKind.EXECUTION_FAILED
    type: Literal["error"] = "error"

    @property
    def terminal(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message, "kind": self.kind.value}


StreamEvent = Union[ChunkEvent, DoneEvent, ErrorEvent]


def encode_sse(event: StreamEvent) -> bytes:
    """Frame one event as a self-contained server-sent-event message."""

    data = json.dumps(event.to_dict(), ensure_ascii=False)
    return f"data: {data}\n\n".encode("utf-8")


def decode_sse(payload: bytes | str) -> list[dict[str, Any]]:
    """Parse ``data:`` frames back into dictionaries (comment lines are skipped)."""

    text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    events: list[dict[str, Any]] = []
    for frame in text.split("\n\n"):
        for line in frame.splitlines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))
    return events


class EventStream:
    """Turns executor callbacks into one ordered, terminal-capped event sequence.

    ``on_chunk``, ``on_done`` and ``on_error`` are handed to the executor;
    iterating the stream yields the events in the order they were produced and
    stops right after the first terminal event. Anything reported after that
    is dropped.
    """

    def __init__(self, task_id: str | None = None) -> None:
        self.task_id = task_id
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._closed = False
        self._terminal: StreamEvent | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal_event(self) -> StreamEvent | None:
        return self._terminal

    def on_chunk(self, text: str) -> None:
        if text:
            self._emit(ChunkEvent(content=text))

    def on_done(self, full_text: str) -> None:
        self._emit(DoneEvent(content=full_text))

    def on_error(self, message: str, kind: ErrorKind = ErrorKind.EXECUTION_FAILED) -> None:
        self._emit(ErrorEvent(message=message, kind=kind))

    def _emit(self, event: StreamEvent) -> None:
        if self._closed:
            logger.debug(
                "Dropping event after terminal",
                extra={"task_id": self.task_id, "event_type": event.type},
            )
            return
        if event.terminal:
            self._closed = True
            self._terminal = event
        self._queue.put_nowait(event)

    async def next_event(self) -> StreamEvent:
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.terminal:
                return


__all__ = [
    "ChunkEvent",
    "DoneEvent",
    "ErrorEvent",
    "ErrorKind",
    "EventStream",
    "StreamEvent",
    "decode_sse",
    "encode_sse",
]
