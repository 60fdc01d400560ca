"""Task pipeline: session lookup, admission, agent execution and streaming."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Sequence

from .admission import AdmissionController
from .agent import AgentRunner, ExecutionHandle
from .config import WorkbenchSettings
from .git import GitResult, GitSynchronizer, WorkingDirectoryState
from .profiles import WORKSPACE_PROFILE, AgentProfile, ProfileLoadError, ProfileLoader
from .sessions import SessionRegistry, Task, Turn
from .streaming import DoneEvent, EventStream, StreamEvent
from .workspaces import WorkspaceResolver

logger = logging.getLogger(__name__)


def render_history(history: Sequence[Turn], max_chars: int) -> str:
    """Render turns oldest-first, dropping the oldest until the text fits ``max_chars``."""

    lines = [f"{'User' if turn.role == 'user' else 'Assistant'}: {turn.text.strip()}" for turn in history]
    while lines and len("\n".join(lines)) > max_chars:
        lines.pop(0)
    return "\n".join(lines)


def compose_prompt(
    profile: AgentProfile,
    history: Sequence[Turn],
    message: str,
    *,
    max_history_chars: int = 16000,
) -> str:
    constraints = "\n".join(f"- {constraint}" for constraint in profile.constraints)
    conversation = render_history(history, max_history_chars)

    sections = [profile.system_prompt.strip()]
    if constraints:
        sections.append("Constraints:\n" + constraints)
    if conversation:
        sections.append("Conversation so far:\n" + conversation)
    sections.append("Current request:\n" + message.strip())
    return "\n\n".join(sections)


class TaskRun:
    """A single admitted task whose events can be iterated exactly once."""

    def __init__(
        self,
        *,
        task: Task,
        handle: ExecutionHandle,
        stream: EventStream,
        stack: AsyncExitStack,
        runner: AgentRunner,
        registry: SessionRegistry,
    ) -> None:
        self.task = task
        self.handle = handle
        self._stream = stream
        self._stack = stack
        self._runner = runner
        self._registry = registry
        self._finalized = False

    @property
    def task_id(self) -> str:
        return self.task.task_id

    @property
    def terminal_event(self) -> StreamEvent | None:
        return self._stream.terminal_event

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield chunks as they arrive, then the single terminal event.

        The slot and the session's busy flag are released before the terminal
        event is handed out, so the caller may start the next turn right away.
        """

        async for event in self._stream:
            if event.terminal:
                await self._finalize()
            yield event

    @property
    def finished(self) -> bool:
        return self._stream.terminal_event is not None

    def cancel(self) -> None:
        """Ask the agent to stop; the stream still ends with its terminal event."""

        self._runner.cancel(self.handle)

    async def close(self) -> None:
        """Stop the agent if it is still running and release everything held."""

        if self._finalized:
            return
        self._runner.cancel(self.handle)
        await self._finalize()

    async def _finalize(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        try:
            await self.handle.wait()
            terminal = self._stream.terminal_event
            if isinstance(terminal, DoneEvent):
                self._registry.append_turn(self.task.session_id, "user", self.task.message)
                self._registry.append_turn(self.task.session_id, "assistant", terminal.content)
        finally:
            await self._stack.aclose()
            logger.info(
                "Task finished",
                extra={
                    "task_id": self.task.task_id,
                    "session_id": self.task.session_id,
                    "status": self.task.status,
                },
            )


class TaskPipeline:
    """Glue between the session registry, the worker pool and the agent runner."""

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        admission: AdmissionController,
        runner: AgentRunner,
        resolver: WorkspaceResolver,
        git: GitSynchronizer,
        profiles: ProfileLoader | None = None,
        profile_id: str = WORKSPACE_PROFILE.id,
        admission_timeout: float | None = 30.0,
        history_max_chars: int = 16000,
    ) -> None:
        self.registry = registry
        self.admission = admission
        self.runner = runner
        self.resolver = resolver
        self.git = git
        self._profiles = profiles or ProfileLoader()
        self._profile_id = profile_id
        self._admission_timeout = admission_timeout
        self._history_max_chars = history_max_chars

    def profile(self) -> AgentProfile:
        try:
            return self._profiles.get(self._profile_id)
        except ProfileLoadError as exc:
            logger.warning(
                "Falling back to built-in workspace profile: %s", exc, extra={"profile_id": self._profile_id}
            )
            return WORKSPACE_PROFILE

    def working_dir(self, repo_ref: str | None = None, *, session_id: str | None = None) -> Path:
        if repo_ref:
            return self.resolver.resolve(repo_ref)
        if session_id:
            return self.registry.get(session_id).working_dir
        raise ValueError("Either a repository reference or a session id is required")

    @asynccontextmanager
    async def open_task(
        self,
        message: str,
        session_id: str,
        repo_ref: str | None = None,
        *,
        working_dir: Path | None = None,
    ) -> AsyncIterator[TaskRun]:
        """Admit one task and yield its run; everything is released on exit.

        Raises ``SessionBusyError``, ``CapacityExceededError`` or
        ``WorkspaceNotFoundError`` before any event is produced.
        """

        if not message or not message.strip():
            raise ValueError("Message must not be empty")
        if working_dir is None:
            working_dir = self.working_dir(repo_ref, session_id=session_id)
        self.registry.resolve_or_create(session_id, working_dir)

        stack = AsyncExitStack()
        try:
            task = stack.enter_context(self.registry.task_scope(session_id, message))
            slot = await stack.enter_async_context(self.admission.hold(self._admission_timeout))
            history = self.registry.history(session_id)
            task.prompt = compose_prompt(
                self.profile(), history, message, max_history_chars=self._history_max_chars
            )
            stream = EventStream(task.task_id)
            handle = self.runner.run(
                task,
                on_chunk=stream.on_chunk,
                on_done=stream.on_done,
                on_error=stream.on_error,
                cwd=working_dir,
            )
        except BaseException:
            await stack.aclose()
            raise

        logger.info(
            "Task admitted",
            extra={
                "task_id": task.task_id,
                "session_id": session_id,
                "slot_id": slot.slot_id,
                "history_turns": len(history),
            },
        )
        run = TaskRun(
            task=task,
            handle=handle,
            stream=stream,
            stack=stack,
            runner=self.runner,
            registry=self.registry,
        )
        try:
            yield run
        finally:
            await run.close()

    async def run_to_completion(
        self,
        message: str,
        session_id: str,
        repo_ref: str | None = None,
        *,
        working_dir: Path | None = None,
    ) -> list[StreamEvent]:
        """Drain a task and return every event it produced."""

        events: list[StreamEvent] = []
        async with self.open_task(message, session_id, repo_ref, working_dir=working_dir) as run:
            async for event in run.events():
                events.append(event)
        return events

    async def status(
        self, repo_ref: str | None = None, *, session_id: str | None = None
    ) -> WorkingDirectoryState:
        return await self.git.status(self.working_dir(repo_ref, session_id=session_id))

    async def commit_all(
        self, message: str, repo_ref: str | None = None, *, session_id: str | None = None
    ) -> GitResult:
        working_dir = self.working_dir(repo_ref, session_id=session_id)
        with self.registry.working_dir_scope(working_dir, "git commit"):
            return await self.git.commit_all(working_dir, message)

    async def push(self, repo_ref: str | None = None, *, session_id: str | None = None) -> GitResult:
        working_dir = self.working_dir(repo_ref, session_id=session_id)
        with self.registry.working_dir_scope(working_dir, "git push"):
            return await self.git.push(working_dir)


def build_pipeline(settings: WorkbenchSettings, runner: AgentRunner | None = None) -> TaskPipeline:
    """Assemble a pipeline from settings; raises ``AgentNotFoundError`` without an agent."""

    if runner is None:
        runner = AgentRunner(
            Path(settings.agent_path) if settings.agent_path else None,
            timeout=settings.execution_timeout_seconds,
            flags=settings.agent_flags,
            model=settings.agent_default_model,
            kill_grace=settings.agent_kill_grace_seconds,
        )
    return TaskPipeline(
        registry=SessionRegistry(max_turns=settings.history_max_turns),
        admission=AdmissionController(
            settings.max_workers, max_queue_depth=settings.max_queue_depth
        ),
        runner=runner,
        resolver=WorkspaceResolver(settings.workspace_root),
        git=GitSynchronizer(
            author_name=settings.git_author_name,
            author_email=settings.git_author_email,
            timeout=settings.git_timeout_seconds,
        ),
        profiles=ProfileLoader(settings.profile_paths),
        profile_id=settings.default_profile,
        admission_timeout=settings.admission_timeout_seconds,
        history_max_chars=settings.history_max_chars,
    )


__all__ = ["TaskPipeline", "TaskRun", "build_pipeline", "compose_prompt", "render_history"]
