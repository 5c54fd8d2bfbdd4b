"""
CLI Tools

Command-line tools for interacting with the generation job server.

Tools:
- progress_monitor: Real-time progress for one job
"""

from .progress_monitor import ProgressMonitor, format_event

__all__ = ["ProgressMonitor", "format_event"]
