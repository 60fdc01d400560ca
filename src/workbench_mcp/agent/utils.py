"""Utility helpers for the agent runner."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

# Keep agent output free of colour codes and never let a tool wait for input.
NON_INTERACTIVE_ENV = {
    "NO_COLOR": "1",
    "FORCE_COLOR": "0",
    "TERM": "dumb",
    "CI": "1",
    "GIT_TERMINAL_PROMPT": "0",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def agent_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Sanitized environment with colour and interactive prompts switched off."""

    env = sanitize_environment(NON_INTERACTIVE_ENV)
    if additional:
        env.update(additional)
    return env
