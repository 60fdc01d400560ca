"""HTTP gateway: chat over server-sent events plus git status/commit/push."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import web

from .. import __version__
from ..admission import CapacityExceededError
from ..git import GitOperationError
from ..pipeline import TaskPipeline, TaskRun
from ..sessions import SessionBusyError, SessionError
from ..streaming import ErrorKind, encode_sse
from ..workspaces import WorkspaceNotFoundError

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

PIPELINE_KEY = web.AppKey("pipeline", TaskPipeline)

# How often an open event stream checks whether its client is still there.
DISCONNECT_POLL_INTERVAL = 0.25


def _error(status: int, message: str, kind: str | None = None, **headers: str) -> web.Response:
    payload: dict[str, Any] = {"success": False, "error": message}
    if kind is not None:
        payload["kind"] = kind
    return web.json_response(payload, status=status, headers=headers or None)


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(
            text='{"success": false, "error": "Request body must be JSON"}',
            content_type="application/json",
        )
    if not isinstance(payload, dict):
        raise web.HTTPBadRequest(
            text='{"success": false, "error": "Request body must be a JSON object"}',
            content_type="application/json",
        )
    return payload


def _repo_ref(source: Any) -> str:
    return str(source.get("repoRef") or source.get("repoFullName") or source.get("repo") or "").strip()


async def _cancel_on_disconnect(request: web.Request, run: TaskRun) -> None:
    """Cancel ``run`` as soon as the client goes away, even if the agent is silent."""

    while not run.finished:
        transport = request.transport
        if transport is None or transport.is_closing():
            logger.info(
                "Client disconnected; cancelling task",
                extra={"task_id": run.task_id, "session_id": run.task.session_id},
            )
            run.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)


async def chat(request: web.Request) -> web.StreamResponse:
    pipeline: TaskPipeline = request.app[PIPELINE_KEY]
    payload = await _read_json(request)
    message = str(payload.get("message") or "")
    session_id = str(payload.get("sessionId") or "").strip()
    repo_ref = _repo_ref(payload)
    if not message.strip() or not session_id or not repo_ref:
        return _error(400, "message, sessionId and repoRef are required")

    try:
        async with pipeline.open_task(message, session_id, repo_ref) as run:
            response = web.StreamResponse(status=200, headers=SSE_HEADERS)
            await response.prepare(request)
            watcher = asyncio.create_task(_cancel_on_disconnect(request, run))
            try:
                async for event in run.events():
                    await response.write(encode_sse(event))
            except ConnectionResetError:
                logger.info(
                    "Client disconnected mid-stream",
                    extra={"task_id": run.task_id, "session_id": session_id},
                )
                return response
            finally:
                watcher.cancel()
            await response.write_eof()
            return response
    except SessionBusyError as exc:
        return _error(409, str(exc), ErrorKind.BUSY.value)
    except CapacityExceededError as exc:
        return _error(503, str(exc), ErrorKind.CAPACITY_EXCEEDED.value, **{"Retry-After": "5"})
    except WorkspaceNotFoundError as exc:
        return _error(404, str(exc))
    except SessionError as exc:
        return _error(400, str(exc))


async def git_status(request: web.Request) -> web.Response:
    pipeline: TaskPipeline = request.app[PIPELINE_KEY]
    repo_ref = _repo_ref(request.query)
    if not repo_ref:
        return _error(400, "repoRef is required")
    try:
        state = await pipeline.status(repo_ref)
    except WorkspaceNotFoundError as exc:
        return _error(404, str(exc))
    except GitOperationError as exc:
        return _error(500, str(exc), exc.kind.value)
    return web.json_response(state.to_dict())


async def git_commit(request: web.Request) -> web.Response:
    pipeline: TaskPipeline = request.app[PIPELINE_KEY]
    payload = await _read_json(request)
    repo_ref = _repo_ref(payload)
    if not repo_ref:
        return _error(400, "repoRef is required")
    try:
        result = await pipeline.commit_all(str(payload.get("message") or ""), repo_ref)
    except WorkspaceNotFoundError as exc:
        return _error(404, str(exc))
    except SessionBusyError as exc:
        return _error(409, str(exc), ErrorKind.BUSY.value)
    return web.json_response(result.to_dict())


async def git_push(request: web.Request) -> web.Response:
    pipeline: TaskPipeline = request.app[PIPELINE_KEY]
    payload = await _read_json(request)
    repo_ref = _repo_ref(payload)
    if not repo_ref:
        return _error(400, "repoRef is required")
    try:
        result = await pipeline.push(repo_ref)
    except WorkspaceNotFoundError as exc:
        return _error(404, str(exc))
    except SessionBusyError as exc:
        return _error(409, str(exc), ErrorKind.BUSY.value)
    return web.json_response(result.to_dict())


async def health(request: web.Request) -> web.Response:
    pipeline: TaskPipeline = request.app[PIPELINE_KEY]
    sessions = pipeline.registry.sessions()
    return web.json_response(
        {
            "status": "ok",
            "version": __version__,
            "admission": pipeline.admission.stats(),
            "sessions": {
                "count": len(sessions),
                "busy": sum(1 for session in sessions if session.busy),
            },
        }
    )


def create_app(pipeline: TaskPipeline) -> web.Application:
    """Build the gateway application around a locally hosted pipeline."""

    app = web.Application()
    app[PIPELINE_KEY] = pipeline
    app.add_routes(
        [
            web.get("/api/health", health),
            web.post("/api/workspace/chat", chat),
            web.get("/api/workspace/git/status", git_status),
            web.post("/api/workspace/git/commit", git_commit),
            web.post("/api/workspace/git/push", git_push),
        ]
    )
    return app


__all__ = ["PIPELINE_KEY", "SSE_HEADERS", "create_app"]
