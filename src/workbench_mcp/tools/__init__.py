"""Tool registration for the Workbench MCP server."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..admission import CapacityExceededError
from ..pipeline import TaskPipeline
from ..profiles import ProfileLoader
from ..sessions import SessionBusyError
from ..streaming import ErrorKind
from ..workspaces import WorkspaceNotFoundError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    run_task: Any
    git_status: Any
    git_commit: Any
    git_push: Any
    list_sessions: Any
    list_agents: Any


def _unavailable() -> RuntimeError:
    return RuntimeError("Agent runner is unavailable; cannot run tasks or git operations")


def register_tools(
    server: FastMCP,
    *,
    pipeline: TaskPipeline | None,
    profiles: ProfileLoader,
) -> ToolHandles:
    """Register Workbench's MCP tools on the server."""

    async def _run_task(
        message: str,
        session_id: str,
        repo_ref: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run the agent for one chat message and return its terminal event."""

        if pipeline is None:
            raise _unavailable()

        chunk_count = 0
        try:
            async with pipeline.open_task(message, session_id, repo_ref) as run:
                async for event in run.events():
                    if not event.terminal:
                        chunk_count += 1
                        await _forward_chunk(context, event.content)
                terminal = run.terminal_event
                task_id = run.task_id
        except WorkspaceNotFoundError as exc:
            raise ValueError(str(exc)) from exc
        except SessionBusyError as exc:
            return {"type": "error", "message": str(exc), "kind": ErrorKind.BUSY.value}
        except CapacityExceededError as exc:
            return {"type": "error", "message": str(exc), "kind": ErrorKind.CAPACITY_EXCEEDED.value}

        _emit_log(
            context,
            "info",
            "Task finished",
            extra={"task_id": task_id, "session_id": session_id, "chunks": chunk_count},
        )
        result = terminal.to_dict() if terminal is not None else {"type": "error", "message": "No result"}
        return {**result, "task_id": task_id, "session_id": session_id, "chunks": chunk_count}

    async def _git_status(repo_ref: str, context: Context | None = None) -> dict[str, Any]:
        """Report modified, added, deleted and untracked paths for a checkout."""

        if pipeline is None:
            raise _unavailable()
        state = await pipeline.status(repo_ref)
        _emit_log(context, "debug", "Computed git status", extra={"repo_ref": repo_ref})
        return state.to_dict()

    async def _git_commit(repo_ref: str, message: str, context: Context | None = None) -> dict[str, Any]:
        """Commit every change in the checkout with the given message."""

        if pipeline is None:
            raise _unavailable()
        try:
            result = await pipeline.commit_all(message, repo_ref)
        except SessionBusyError as exc:
            return {"success": False, "error": str(exc), "kind": ErrorKind.BUSY.value}
        _emit_log(context, "info", "Commit requested", extra={"repo_ref": repo_ref, "success": result.success})
        return result.to_dict()

    async def _git_push(repo_ref: str, context: Context | None = None) -> dict[str, Any]:
        """Push the checkout's current branch to its remote."""

        if pipeline is None:
            raise _unavailable()
        try:
            result = await pipeline.push(repo_ref)
        except SessionBusyError as exc:
            return {"success": False, "error": str(exc), "kind": ErrorKind.BUSY.value}
        _emit_log(context, "info", "Push requested", extra={"repo_ref": repo_ref, "success": result.success})
        return result.to_dict()

    def _list_sessions(context: Context | None = None) -> list[dict[str, Any]]:
        """List live sessions with their checkout and busy state."""

        if pipeline is None:
            return []
        return [session.snapshot() for session in pipeline.registry.sessions()]

    def _list_agents(context: Context | None = None) -> list[dict[str, Any]]:
        """List available agent instruction profiles."""

        catalog = [
            {
                "id": profile.id,
                "title": profile.title,
                "persona": profile.persona,
                "constraints": profile.constraints,
                "tags": profile.metadata.get("tags", []),
            }
            for profile in profiles.load_all().values()
        ]
        _emit_log(context, "debug", "Listing agent profiles", extra={"count": len(catalog)})
        return catalog

    tool_run = server.tool(
        name="run_task",
        description=(
            "Send a chat message to the coding agent for a session bound to a repository "
            "checkout. Output is forwarded as it arrives; the final result is a done or "
            "error event."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "The agent reads, edits and runs commands inside the checkout",
            }
        },
    )(_run_task)
    tool_status = server.tool(
        name="git_status",
        description="Show modified, added, deleted and untracked files for a checkout.",
    )(_git_status)
    tool_commit = server.tool(
        name="git_commit",
        description="Stage and commit all changes in a checkout.",
    )(_git_commit)
    tool_push = server.tool(
        name="git_push",
        description="Push committed changes to the checkout's remote.",
    )(_git_push)
    tool_sessions = server.tool(
        name="list_sessions",
        description="List live chat sessions and whether a task is running in each.",
    )(_list_sessions)
    tool_agents = server.tool(
        name="list_agents",
        description="List agent instruction profiles.",
    )(_list_agents)

    return ToolHandles(
        run_task=tool_run,
        git_status=tool_status,
        git_commit=tool_commit,
        git_push=tool_push,
        list_sessions=tool_sessions,
        list_agents=tool_agents,
    )


async def _forward_chunk(context: Context | None, text: str) -> None:
    """Relay one output fragment to the MCP client log when a context is present."""

    if context is None:
        return
    info = getattr(context, "info", None)
    if not callable(info):
        return
    result = info(text)
    if inspect.isawaitable(result):
        await result


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log locally, preferring the MCP context logger when one is attached."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    log_method = getattr(logger, level, logger.info)
    log_method(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
