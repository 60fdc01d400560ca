from __future__ import annotations

import asyncio
import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from conftest import init_repo, requires_git
from workbench_mcp.config import WorkbenchSettings
from workbench_mcp.profiles import AgentProfile, ProfileLoader
from workbench_mcp.server import create_server
from workbench_mcp.tools import register_tools

pytestmark = requires_git


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubProfileLoader:
    def __init__(self, profile: AgentProfile) -> None:
        self._profile = profile

    def load_all(self) -> dict[str, AgentProfile]:
        return {self._profile.id: self._profile}


class RecordingContext:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def info(self, message: str) -> None:
        self.messages.append(message)


@pytest.fixture
def checkout(workspace_root: Path) -> Path:
    return init_repo(workspace_root / "acme" / "app")


def _register(pipeline):
    server = StubServer()
    handles = register_tools(
        server,  # type: ignore[arg-type]
        pipeline=pipeline,
        profiles=ProfileLoader(),
    )
    return server, handles


def test_run_task_forwards_chunks_and_returns_terminal(make_script, make_pipeline, checkout: Path) -> None:
    script = make_script("agent", "printf 'step one\\n'\nsleep 0.2\nprintf 'step two'")
    pipeline = make_pipeline(script)
    server, handles = _register(pipeline)
    context = RecordingContext()

    result = asyncio.run(
        handles.run_task.fn(  # type: ignore[attr-defined]
            message="Do the work",
            session_id="s1",
            repo_ref="acme/app",
            context=context,
        )
    )

    assert sorted(server._tools) == [
        "git_commit",
        "git_push",
        "git_status",
        "list_agents",
        "list_sessions",
        "run_task",
    ]
    assert result["type"] == "done"
    assert result["content"] == "step one\nstep two"
    assert result["session_id"] == "s1"
    assert result["task_id"].startswith("task-")
    assert result["chunks"] == len(context.messages) >= 2
    assert "".join(context.messages) == result["content"]


def test_run_task_reports_busy_session(make_script, make_pipeline, checkout: Path) -> None:
    pipeline = make_pipeline(make_script("agent", "printf 'ok'"))
    pipeline.registry.resolve_or_create("s1", checkout)
    pipeline.registry.try_begin_task("s1", "already running")
    _, handles = _register(pipeline)

    result = asyncio.run(
        handles.run_task.fn(message="hi", session_id="s1", repo_ref="acme/app")  # type: ignore[attr-defined]
    )
    commit = asyncio.run(
        handles.git_commit.fn(repo_ref="acme/app", message="x")  # type: ignore[attr-defined]
    )

    assert result["type"] == "error"
    assert result["kind"] == "busy"
    assert commit == {"success": False, "error": commit["error"], "kind": "busy"}


def test_run_task_rejects_unknown_repository(make_script, make_pipeline, checkout: Path) -> None:
    pipeline = make_pipeline(make_script("agent", "printf 'ok'"))
    _, handles = _register(pipeline)

    with pytest.raises(ValueError):
        asyncio.run(
            handles.run_task.fn(message="hi", session_id="s1", repo_ref="acme/nope")  # type: ignore[attr-defined]
        )


def test_git_tools_round_trip(make_script, make_pipeline, checkout: Path) -> None:
    pipeline = make_pipeline(make_script("agent", "echo hello > NOTES.md\nprintf 'done'"))
    _, handles = _register(pipeline)

    async def scenario():
        await handles.run_task.fn(message="Write notes", session_id="s1", repo_ref="acme/app")
        before = await handles.git_status.fn(repo_ref="acme/app")
        commit = await handles.git_commit.fn(repo_ref="acme/app", message="Add notes")
        after = await handles.git_status.fn(repo_ref="acme/app")
        push = await handles.git_push.fn(repo_ref="acme/app")
        return before, commit, after, push

    before, commit, after, push = asyncio.run(scenario())

    assert before["untracked"] == ["NOTES.md"]
    assert commit["success"] is True
    assert after["untracked"] == []
    assert push["kind"] == "no_remote"

    sessions = handles.list_sessions.fn()  # type: ignore[attr-defined]
    assert sessions[0]["session_id"] == "s1"
    assert sessions[0]["turns"] == 2
    assert sessions[0]["busy"] is False


def test_list_agents_reports_catalog() -> None:
    profile = AgentProfile(
        id="code_reviewer",
        title="Reviewer",
        system_prompt="Review the diff",
        constraints=["Read only"],
        metadata={"tags": ["review"]},
    )
    server = StubServer()

    handles = register_tools(
        server,  # type: ignore[arg-type]
        pipeline=None,
        profiles=StubProfileLoader(profile),  # type: ignore[arg-type]
    )

    catalog = handles.list_agents.fn()  # type: ignore[attr-defined]

    assert catalog[0]["id"] == "code_reviewer"
    assert catalog[0]["tags"] == ["review"]
    assert handles.list_sessions.fn() == []  # type: ignore[attr-defined]
    with pytest.raises(RuntimeError):
        asyncio.run(handles.git_status.fn(repo_ref="acme/app"))  # type: ignore[attr-defined]


def test_create_server_reports_status(
    monkeypatch: pytest.MonkeyPatch, make_script, make_pipeline, workspace_root: Path, checkout: Path
) -> None:
    script = make_script(
        "agent",
        'if [ "$1" = "--version" ]; then echo "agent 9.9.9"; exit 0; fi\nprintf \'ok\'',
    )
    pipeline = make_pipeline(script, workers=2)
    settings = WorkbenchSettings()
    settings.workspace_root = workspace_root
    settings.profile_paths = ()
    settings.log_level = "DEBUG"

    monkeypatch.setattr(
        "workbench_mcp.server.register_tools",
        lambda *_, **__: SimpleNamespace(run_task=None),
    )

    server = create_server(settings, pipeline=pipeline)

    assert server.agent_metadata["available"] is True  # type: ignore[attr-defined]
    assert server.agent_metadata["version"] == "agent 9.9.9"  # type: ignore[attr-defined]

    payload = json.loads(server.workbench_status(None))  # type: ignore[attr-defined]
    assert payload["profiles"]["ids"] == ["workspace"]
    assert payload["agent"]["path"] == str(script)
    assert payload["admission"]["capacity"] == 2
    assert payload["sessions"]["count"] == 0
    assert payload["workspace_root"] == str(workspace_root)
    assert payload["request_id"] is None
