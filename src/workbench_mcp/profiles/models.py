"""Profile models describing the instructions given to the agent."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class AgentProfile(BaseModel):
    """Configuration describing how Workbench should prime the agent."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(..., description="Display title for the agent profile.")
    persona: str = Field(default="", description="Narrative framing for the agent's tone and role.")
    system_prompt: str = Field(
        ...,
        description="System-level instructions prepended to every prompt composed for this agent.",
    )
    constraints: list[str] = Field(
        default_factory=list,
        description="Constraints or guardrails imposed on the agent.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata, e.g. tags shown in the agent catalog.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Agent profile id must not be empty")
        return normalized

    @field_validator("system_prompt")
    @classmethod
    def _require_prompt(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Agent profile system_prompt must not be empty")
        return value

    @field_validator("constraints", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("Constraints must be a sequence of strings")


WORKSPACE_PROFILE = AgentProfile(
    id="workspace",
    title="Workspace Architect",
    persona="Direct, clear and engaging; helpful without excessive warnings or disclaimers.",
    system_prompt=(
        "You are AI Architect working in a code workspace. You have access to powerful "
        "tools to help with coding tasks.\n\n"
        "When the user asks you to do something with files or code, use your tools. "
        "Don't just describe what you would do, actually do it: read files to view them, "
        "write or edit files to change them, and run shell commands when needed.\n\n"
        "Be proactive with tools. Take action rather than just explaining what could be done."
    ),
    constraints=[
        "Work only inside the current repository checkout.",
        "Do not commit or push; the user reviews and commits changes.",
    ],
    metadata={"tags": ["builtin"]},
)


__all__ = ["AgentProfile", "WORKSPACE_PROFILE"]
