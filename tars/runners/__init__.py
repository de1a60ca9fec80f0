"""Agent CLI runners."""

from tars.runners.gemini import EventHandler, GeminiClient, StreamParser

__all__ = ["EventHandler", "GeminiClient", "StreamParser"]
