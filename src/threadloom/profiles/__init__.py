"""Agent profile models and loader exports."""

from .loader import BUILTIN_PROFILE_PATH, ProfileLoadError, ProfileLoader
from .models import AgentProfile

__all__ = [
    "AgentProfile",
    "BUILTIN_PROFILE_PATH",
    "ProfileLoadError",
    "ProfileLoader",
]
