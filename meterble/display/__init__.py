"""Terminal display of the latest meter reading."""

from .terminal_monitor import TerminalMonitor

__all__ = ["TerminalMonitor"]
