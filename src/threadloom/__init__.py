"""threadloom: parallel agent threads over git worktrees and tmux sessions."""

__version__ = "0.1.0"

__all__ = ["__version__"]
