"""Agent profile models and loader exports."""

from .loader import BUILTIN_PROFILES, ProfileLoadError, ProfileLoader, read_profile
from .models import WORKSPACE_PROFILE, AgentProfile

__all__ = [
    "AgentProfile",
    "BUILTIN_PROFILES",
    "ProfileLoadError",
    "ProfileLoader",
    "WORKSPACE_PROFILE",
    "read_profile",
]
