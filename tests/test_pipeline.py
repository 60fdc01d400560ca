from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import init_repo, requires_git
from workbench_mcp.admission import CapacityExceededError
from workbench_mcp.pipeline import compose_prompt, render_history
from workbench_mcp.profiles import WORKSPACE_PROFILE
from workbench_mcp.sessions import SessionBusyError, Turn
from workbench_mcp.streaming import ChunkEvent, DoneEvent, ErrorEvent, ErrorKind
from workbench_mcp.workspaces import WorkspaceNotFoundError

pytestmark = requires_git

ECHO_PROMPT = 'for last; do :; done\nprintf \'%s\' "$last"'


@pytest.fixture
def checkout(workspace_root: Path) -> Path:
    return init_repo(workspace_root / "acme" / "app")


def _idle(pipeline, session_id: str) -> bool:
    stats = pipeline.admission.stats()
    return (
        not pipeline.registry.get(session_id).busy
        and stats["outstanding"] == 0
        and stats["available"] == pipeline.admission.capacity
    )


def test_chat_then_commit_round_trip(make_script, make_pipeline, checkout: Path) -> None:
    script = make_script(
        "agent",
        "printf 'Creating notes\\n'\necho hello > NOTES.md\nprintf 'Created NOTES.md'",
    )
    pipeline = make_pipeline(script)

    async def scenario():
        events = await pipeline.run_to_completion("Create a NOTES.md file", "s1", "acme/app")
        before = await pipeline.status("acme/app")
        commit = await pipeline.commit_all("Add notes", "acme/app")
        after = await pipeline.status(session_id="s1")
        return events, before, commit, after

    events, before, commit, after = asyncio.run(scenario())

    assert isinstance(events[0], ChunkEvent)
    assert events[-1] == DoneEvent(content="Creating notes\nCreated NOTES.md")
    assert sum(1 for event in events if event.terminal) == 1
    assert (checkout / "NOTES.md").read_text(encoding="utf-8") == "hello\n"
    assert before.untracked == ["NOTES.md"]
    assert commit.success
    assert after.clean
    assert _idle(pipeline, "s1")


def test_second_message_on_busy_session_is_rejected(make_script, make_pipeline, checkout: Path) -> None:
    script = make_script("agent", "printf 'working'\nsleep 30")
    pipeline = make_pipeline(script)

    async def scenario():
        async with pipeline.open_task("first", "s1", "acme/app") as run:
            events = run.events()
            first = await events.__anext__()
            with pytest.raises(SessionBusyError):
                async with pipeline.open_task("second", "s1", "acme/app"):
                    pass
            with pytest.raises(SessionBusyError):
                await pipeline.commit_all("Sneaky commit", "acme/app")
            busy_stats = pipeline.admission.stats()
            await events.aclose()
        return first, busy_stats, run

    first, busy_stats, run = asyncio.run(scenario())

    assert first == ChunkEvent(content="working")
    assert busy_stats["outstanding"] == 1
    assert run.task.cancelled
    assert _idle(pipeline, "s1")
    assert pipeline.registry.history("s1") == []


def test_single_worker_runs_tasks_one_at_a_time(
    make_script, make_pipeline, workspace_root: Path, tmp_path: Path
) -> None:
    init_repo(workspace_root / "acme" / "app")
    init_repo(workspace_root / "acme" / "lib")
    log = tmp_path / "activity.log"
    script = make_script(
        "agent",
        f"echo start >> '{log}'\nprintf 'a'\nsleep 0.3\nprintf 'b'\necho end >> '{log}'",
    )
    pipeline = make_pipeline(script, workers=1)

    async def scenario():
        return await asyncio.gather(
            pipeline.run_to_completion("one", "s1", "acme/app"),
            pipeline.run_to_completion("two", "s2", "acme/lib"),
        )

    first, second = asyncio.run(scenario())

    assert first[-1] == DoneEvent(content="ab")
    assert second[-1] == DoneEvent(content="ab")
    assert log.read_text(encoding="utf-8").split() == ["start", "end", "start", "end"]
    assert _idle(pipeline, "s1")
    assert _idle(pipeline, "s2")


def test_timeout_releases_session_and_slot(make_script, make_pipeline, checkout: Path) -> None:
    script = make_script(
        "agent",
        'case "$1" in *quick*) printf \'ok\'; exit 0;; esac\nwhile true; do sleep 1; done',
    )
    pipeline = make_pipeline(script, workers=1, timeout=0.5)

    async def scenario():
        stalled = await pipeline.run_to_completion("Hang forever", "s1", "acme/app")
        assert _idle(pipeline, "s1")
        recovered = await pipeline.run_to_completion("Be quick", "s1", "acme/app")
        return stalled, recovered

    stalled, recovered = asyncio.run(scenario())

    assert isinstance(stalled[-1], ErrorEvent)
    assert stalled[-1].kind is ErrorKind.EXECUTION_TIMEOUT
    assert recovered[-1] == DoneEvent(content="ok")
    history = pipeline.registry.history("s1")
    assert [turn.text for turn in history] == ["Be quick", "ok"]


def test_history_is_part_of_next_prompt(make_script, make_pipeline, checkout: Path) -> None:
    script = make_script("agent", ECHO_PROMPT)
    pipeline = make_pipeline(script)

    async def scenario():
        first = await pipeline.run_to_completion("What is in README?", "s1", "acme/app")
        second = await pipeline.run_to_completion("Summarize it", "s1", "acme/app")
        return first[-1].content, second[-1].content

    first_prompt, second_prompt = asyncio.run(scenario())

    assert WORKSPACE_PROFILE.system_prompt.strip() in first_prompt
    assert "Conversation so far:" not in first_prompt
    assert first_prompt.endswith("Current request:\nWhat is in README?")
    assert "Conversation so far:\nUser: What is in README?\nAssistant: " in second_prompt
    assert second_prompt.endswith("Current request:\nSummarize it")


def test_capacity_exceeded_leaves_session_idle(make_script, make_pipeline, checkout: Path) -> None:
    script = make_script("agent", "printf 'ok'")
    pipeline = make_pipeline(script, workers=1, admission_timeout=0.1)

    async def scenario():
        held = await pipeline.admission.acquire()
        with pytest.raises(CapacityExceededError):
            async with pipeline.open_task("hello", "s1", "acme/app"):
                pass
        busy = pipeline.registry.get("s1").busy
        pipeline.admission.release(held)
        events = await pipeline.run_to_completion("hello again", "s1", "acme/app")
        return busy, events

    busy, events = asyncio.run(scenario())

    assert busy is False
    assert events[-1] == DoneEvent(content="ok")
    assert _idle(pipeline, "s1")


def test_leaving_stream_early_cancels_agent(make_script, make_pipeline, checkout: Path) -> None:
    script = make_script("agent", "printf 'partial'\nsleep 30\nprintf 'never'")
    pipeline = make_pipeline(script)

    async def scenario():
        async with pipeline.open_task("Long job", "s1", "acme/app") as run:
            events = run.events()
            first = await events.__anext__()
            await events.aclose()
        await asyncio.sleep(0)
        return first, run

    first, run = asyncio.run(scenario())

    assert first == ChunkEvent(content="partial")
    assert run.task.cancelled
    assert run.handle.returncode is not None
    assert run.terminal_event.kind is ErrorKind.EXECUTION_CANCELLED
    assert pipeline.registry.history("s1") == []
    assert _idle(pipeline, "s1")


def test_open_task_validation(make_script, make_pipeline, checkout: Path) -> None:
    script = make_script("agent", "printf 'ok'")
    pipeline = make_pipeline(script)

    async def scenario():
        with pytest.raises(ValueError):
            async with pipeline.open_task("   ", "s1", "acme/app"):
                pass
        with pytest.raises(WorkspaceNotFoundError):
            async with pipeline.open_task("hello", "s1", "acme/missing"):
                pass
        with pytest.raises(WorkspaceNotFoundError):
            async with pipeline.open_task("hello", "s1", "../escape"):
                pass

    asyncio.run(scenario())

    assert pipeline.registry.sessions() == []


def test_render_history_drops_oldest_turns_first() -> None:
    history = [
        Turn("user", "a" * 10),
        Turn("assistant", "b" * 10),
        Turn("user", "c" * 10),
    ]

    assert render_history(history, 1000).splitlines()[0] == "User: " + "a" * 10
    assert render_history(history, 40) == "Assistant: " + "b" * 10 + "\nUser: " + "c" * 10
    assert render_history(history, 5) == ""


def test_compose_prompt_sections() -> None:
    prompt = compose_prompt(
        WORKSPACE_PROFILE,
        [Turn("user", "hi"), Turn("assistant", "hello")],
        "  do the thing  ",
    )

    sections = prompt.split("\n\n")
    assert sections[-1] == "Current request:\ndo the thing"
    assert "Constraints:\n- Work only inside the current repository checkout." in prompt
    assert "Conversation so far:\nUser: hi\nAssistant: hello" in prompt
