"""Thread orchestration: the single-writer service and its background loops."""

from .commands import agent_start_command, session_environment, shell_start_command
from .monitor import SessionMonitor
from .service import ThreadOrchestrator
from .writer import MutationQueue

__all__ = [
    "MutationQueue",
    "SessionMonitor",
    "ThreadOrchestrator",
    "agent_start_command",
    "session_environment",
    "shell_start_command",
]
