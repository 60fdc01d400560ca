"""FastMCP server bootstrap for Workbench."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agent import AgentNotFoundError
from .config import WorkbenchSettings, get_settings
from .pipeline import TaskPipeline, build_pipeline
from .profiles import ProfileLoadError, ProfileLoader
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for Workbench processes."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[WorkbenchSettings] = None,
    pipeline: TaskPipeline | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server around a task pipeline."""

    settings = settings or get_settings()
    profile_loader = ProfileLoader(settings.profile_paths)

    agent_metadata = {
        "available": False,
        "path": None,
        "version": None,
        "error": None,
    }

    if pipeline is None:
        try:
            pipeline = build_pipeline(settings)
        except AgentNotFoundError as exc:
            agent_metadata["error"] = str(exc)

    if pipeline is not None:
        agent_metadata["available"] = True
        agent_metadata["path"] = str(pipeline.runner.executable)
        try:
            version_result = _run_sync(pipeline.runner.version())
        except OSError as exc:
            agent_metadata["error"] = str(exc)
        else:
            if version_result.ok:
                agent_metadata["version"] = version_result.stdout.strip()
            else:
                agent_metadata["error"] = (
                    version_result.stderr.strip() or "Agent version command failed"
                )

    server = FastMCP(
        name="Workbench MCP",
        version=__version__,
        instructions=(
            "Workbench runs a coding agent against repository checkouts, one task at a "
            "time per session, and exposes git status, commit and push over the result."
        ),
    )

    handles = register_tools(server, pipeline=pipeline, profiles=profile_loader)

    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        try:
            profile_ids = sorted(profile_loader.load_all().keys())
            profile_error: str | None = None
        except ProfileLoadError as exc:
            profile_ids = []
            profile_error = str(exc)

        sessions = pipeline.registry.sessions() if pipeline is not None else []
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "profiles": {
                "count": len(profile_ids),
                "ids": profile_ids,
                "default": settings.default_profile,
                "error": profile_error,
            },
            "agent": {
                "default_model": settings.agent_default_model,
                "timeout_seconds": settings.execution_timeout_seconds,
                **agent_metadata,
            },
            "admission": pipeline.admission.stats() if pipeline is not None else None,
            "sessions": {
                "count": len(sessions),
                "busy": sum(1 for session in sessions if session.busy),
                "recent": [session.snapshot() for session in sessions[-5:]],
            },
            "workspace_root": str(settings.workspace_root),
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    server.resource(
        "resource://workbench/status",
        name="workbench_status",
        title="Workbench Status",
        description="Provides the current runtime status for the Workbench server.",
        mime_type="application/json",
        tags={"status", "health"},
    )(status_resource)

    setattr(server, "pipeline", pipeline)
    setattr(server, "profile_loader", profile_loader)
    setattr(server, "agent_metadata", agent_metadata)
    setattr(server, "tool_handles", handles)
    setattr(server, "workbench_status", status_resource)
    return server


def main() -> None:
    """Entry point for running the Workbench MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Workbench MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "agent_available": getattr(server, "agent_metadata", {}).get("available"),
            "max_workers": settings.max_workers,
        },
    )
    server.run()


if __name__ == "__main__":
    main()
