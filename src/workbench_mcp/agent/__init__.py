"""Agent CLI supervision utilities."""

from .runner import (
    AgentExecutionResult,
    AgentNotFoundError,
    AgentRunner,
    AgentRunnerError,
    ExecutionHandle,
)

__all__ = [
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "ExecutionHandle",
]
