"""Gemini CLI runner."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from tars import transcript
from tars.config import TarsConfig
from tars.errors import AgentError, IdleTimeout, NonZeroExit
from tars.runners.base import (
    drain_stderr,
    kill,
    maybe_await,
    pump_lines,
    start_process,
    terminate,
)
from tars.types import (
    AgentEvent,
    DoneEvent,
    ErrorEvent,
    TextEvent,
    ThoughtEvent,
    ToolCallEvent,
    ToolResponseEvent,
    UsageStats,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[AgentEvent], Awaitable[None] | None]

# Field spellings seen across CLI versions for the same counter
_INPUT_KEYS = ("input_tokens", "inputTokens", "input", "prompt")
_OUTPUT_KEYS = ("output_tokens", "outputTokens", "output", "candidates")
_CACHED_KEYS = ("cached", "cached_tokens", "cachedTokens", "cached_input_tokens")
_CONTENT_TYPES = ("message", "text", "content", None)


class StreamParser:
    """Turns stream-json records from the Gemini CLI into AgentEvents.

    The parser keeps the state of one invocation: the session id announced
    by the CLI, the latest usage figures and whether completion has been
    seen. Once finished it ignores everything else it is fed.
    """

    def __init__(self) -> None:
        self.session_id: str | None = None
        self.usage = UsageStats()
        self.finished = False
        # Set when the CLI ends the stream with a failed result
        self.failure: str | None = None

    def parse_line(self, line: str) -> list[AgentEvent]:
        if self.finished or not line.strip():
            return []
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            # Status messages and hook logs share stdout with the JSON stream
            logger.debug("[Gemini CLI stdout] %s", line.strip())
            return []
        return self.normalize(record)

    def normalize(self, record: Any) -> list[AgentEvent]:
        if self.finished or not isinstance(record, dict):
            return []

        sid = record.get("session_id") or record.get("sessionId")
        if isinstance(sid, str) and sid:
            self.session_id = sid
        self._track_usage(record)

        kind = record.get("type")
        events: list[AgentEvent] = []

        thoughts = record.get("thoughts", record.get("thought"))
        if thoughts:
            events.append(ThoughtEvent(content=_as_text(thoughts), session_id=self.session_id))

        if kind == "tool_use":
            events.append(
                ToolCallEvent(
                    tool_name=record.get("tool_name") or record.get("name") or "unknown",
                    tool_id=record.get("tool_id") or record.get("id"),
                    args=_as_dict(record.get("parameters", record.get("args"))),
                    session_id=self.session_id,
                )
            )
        elif kind == "tool_result":
            result = record.get("output", record.get("result"))
            if result is None and record.get("error") is not None:
                result = record["error"]
            events.append(
                ToolResponseEvent(
                    tool_id=record.get("tool_id") or record.get("id"),
                    result=result,
                    status=record.get("status"),
                    session_id=self.session_id,
                )
            )
        elif kind == "error":
            events.append(ErrorEvent(message=_error_message(record), session_id=self.session_id))
        elif kind == "done" or (kind == "result" and record.get("status", "success") == "success"):
            events.append(self.finish())
        elif kind == "result":
            self.finished = True
            self.failure = _error_message(record)
        elif kind in _CONTENT_TYPES:
            content = record.get("content")
            if isinstance(content, str) and content:
                events.append(
                    TextEvent(
                        content=content,
                        role=record.get("role") or "assistant",
                        session_id=self.session_id,
                    )
                )
        return events

    def finish(self) -> DoneEvent:
        """Mark the stream complete and build its single DoneEvent."""
        self.finished = True
        return DoneEvent(usage=self.usage.model_copy(), session_id=self.session_id)

    def _track_usage(self, record: dict[str, Any]) -> None:
        for key in ("stats", "usage", "tokens"):
            stats = record.get(key)
            if isinstance(stats, dict):
                break
        else:
            return

        updates: dict[str, int] = {}
        for field, keys in (
            ("input_tokens", _INPUT_KEYS),
            ("output_tokens", _OUTPUT_KEYS),
            ("cached_tokens", _CACHED_KEYS),
        ):
            for k in keys:
                value = stats.get(k)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    updates[field] = value
                    break
        if updates:
            self.usage = UsageStats.model_validate({**self.usage.model_dump(), **updates})


class GeminiClient:
    """Runs the Gemini CLI once per prompt and streams its events."""

    def __init__(self, config: TarsConfig) -> None:
        self.config = config

    def build_command(
        self,
        prompt: str,
        session_id: str | None = None,
        extensions: Iterable[str] = (),
    ) -> list[str]:
        # --yolo auto-approves tool calls (required for headless execution)
        cmd = [
            *self.config.agent_command,
            "--output-format",
            "stream-json",
            "--yolo",
            "--include-directories",
            str(self.config.home_dir),
        ]
        if self.config.model and self.config.model != "auto":
            cmd.extend(["--model", self.config.model])
        if session_id:
            cmd.extend(["--resume", session_id])
        for ext in extensions:
            cmd.extend(["--extensions", ext])
        cmd.extend(["--prompt", prompt])
        return cmd

    async def run(
        self,
        prompt: str,
        on_event: EventHandler,
        session_id: str | None = None,
        extensions: Iterable[str] | None = None,
    ) -> None:
        """Run one invocation, delivering every event to ``on_event``.

        Returns after exactly one DoneEvent has been delivered. Raises
        SpawnFailure, IdleTimeout, AbsoluteTimeout or NonZeroExit otherwise,
        and AgentError when the CLI ends the stream with a failed result.

        The CLI runs with its working directory and HOME pointed at the tars
        home so it only sees tars' own context and settings.
        """
        home = self.config.home_dir
        home.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(
            prompt,
            session_id,
            self.config.extensions if extensions is None else extensions,
        )
        description = f"Gemini CLI (Session: {session_id or 'new'})"
        logger.info("Spawning %s", description)

        proc = await start_process(cmd, cwd=home, env={"HOME": str(home)})
        stderr_task = asyncio.create_task(drain_stderr(proc, description))
        parser = StreamParser()

        async def handle_line(line: str) -> bool:
            for event in parser.parse_line(line):
                await maybe_await(on_event(event))
            return parser.finished

        try:
            completed = await pump_lines(
                proc,
                handle_line,
                idle_timeout_s=self.config.idle_timeout_s,
                total_timeout_s=self.config.total_timeout_s,
                description=description,
            )
            if completed:
                # Some builds hold the pipe open after the result record
                exit_code = await terminate(proc)
                if parser.failure is not None:
                    raise AgentError(f"{description} failed: {parser.failure}")
                logger.info("%s completed (exit %s after teardown)", description, exit_code)
                return

            exit_code = await self._wait_exit(proc, description)
            logger.info("%s closed with code %s", description, exit_code)
            if exit_code != 0:
                raise NonZeroExit(exit_code, description)
            await maybe_await(on_event(parser.finish()))
        finally:
            if proc.returncode is None:
                await kill(proc)
            await asyncio.wait({stderr_task}, timeout=1.0)
            stderr_task.cancel()

    async def run_sync(self, prompt: str, session_id: str | None = None) -> str:
        """Run a prompt and return the concatenated assistant text."""
        chunks: list[str] = []

        def collect(event: AgentEvent) -> None:
            if isinstance(event, TextEvent) and event.role == "assistant":
                chunks.append(event.content)

        await self.run(prompt, collect, session_id)
        return "".join(chunks)

    async def prune_last_turn(self, session_id: str) -> bool:
        """Remove the latest user turn (and its replies) from the transcript."""
        path = transcript.find_transcript(self.config.home_dir, session_id)
        if path is None:
            logger.debug("No transcript found for session %s", session_id)
            return False
        return transcript.prune_last_turn(path)

    async def compact_session(self, session_id: str) -> bool:
        """Compact the session transcript if it exceeds the size threshold."""
        path = transcript.find_transcript(self.config.home_dir, session_id)
        if path is None:
            return False
        return transcript.compact_transcript(
            path,
            threshold_bytes=self.config.compaction_threshold_bytes,
            keep_thoughts=self.config.keep_thoughts,
        )

    async def _wait_exit(self, proc: asyncio.subprocess.Process, description: str) -> int:
        # stdout is closed; a process that lingers past the idle window is stuck
        try:
            return await asyncio.wait_for(proc.wait(), timeout=self.config.idle_timeout_s)
        except asyncio.TimeoutError:
            await kill(proc)
            raise IdleTimeout(f"{description} idle for {self.config.idle_timeout_s}s after closing stdout") from None


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        subject = value.get("subject")
        body = value.get("description") or value.get("text")
        if subject and body:
            return f"{subject}: {body}"
        if body or subject:
            return str(body or subject)
        return json.dumps(value)
    if isinstance(value, list):
        return "\n".join(_as_text(item) for item in value)
    return str(value)


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if value is None:
        return {}
    return {"value": value}


def _error_message(record: dict[str, Any]) -> str:
    error = record.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if message:
            return str(message)
    if isinstance(error, str) and error:
        return error
    message = record.get("message")
    if message:
        return str(message)
    return f"Gemini CLI reported {record.get('type', 'an error')}"
