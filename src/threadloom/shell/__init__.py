"""Subprocess execution for external tools."""

from .runner import CommandResult, CommandRunner, FakeCommandRunner
from .utils import export_statement, sanitize_environment

__all__ = [
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
    "export_statement",
    "sanitize_environment",
]
