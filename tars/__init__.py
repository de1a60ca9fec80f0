"""Tars - a supervisor that keeps one long-lived Gemini CLI session at work."""

__version__ = "0.1.0"

from tars.config import TarsConfig
from tars.types import AgentEvent, DoneEvent, ErrorEvent, Task, TextEvent, UsageStats

__all__ = ["AgentEvent", "DoneEvent", "ErrorEvent", "Task", "TarsConfig", "TextEvent", "UsageStats", "__version__"]
