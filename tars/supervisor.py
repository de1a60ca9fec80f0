"""Supervisor: the single entry point for running prompts through the agent."""

import logging
from typing import Literal, Protocol

from tars.config import TarsConfig
from tars.errors import NonZeroExit, SupervisorBusy
from tars.runners.base import maybe_await
from tars.runners.gemini import EventHandler
from tars.session import SessionStore
from tars.types import AgentEvent, DoneEvent, ErrorEvent, TextEvent

logger = logging.getLogger(__name__)

TaskMode = Literal["silent", "notify"]


class AgentClient(Protocol):
    async def run(
        self,
        prompt: str,
        on_event: EventHandler,
        session_id: str | None = None,
        extensions: list[str] | None = None,
    ) -> None: ...

    async def prune_last_turn(self, session_id: str) -> bool: ...

    async def compact_session(self, session_id: str) -> bool: ...


class Supervisor:
    """Serializes agent invocations and keeps the session record current.

    Only one invocation runs at a time. The busy flag is not a queue:
    interactive callers get an error event, background callers get
    SupervisorBusy.
    """

    def __init__(self, client: AgentClient, sessions: SessionStore, config: TarsConfig) -> None:
        self.client = client
        self.sessions = sessions
        self.config = config
        self._busy = False

    def is_busy(self) -> bool:
        return self._busy

    async def run(self, content: str, on_event: EventHandler, session_id: str | None = None) -> None:
        """Run an interactive prompt, streaming events to ``on_event``.

        Failures never raise; they arrive as a single terminal ErrorEvent.
        """
        preview = content[:50] + ("..." if len(content) > 50 else "")
        if self._busy:
            logger.warning("Rejecting request while busy: %s", preview)
            await maybe_await(on_event(ErrorEvent(message=str(SupervisorBusy()))))
            return

        logger.info("Supervisor processing request: %s", preview)
        self._busy = True
        effective: str | None = None
        try:
            effective = await self._invoke(content, on_event, session_id)
        except Exception as e:
            logger.error("Supervisor execution error: %s", e)
            await maybe_await(on_event(ErrorEvent(message=str(e))))
        finally:
            self._busy = False
            await self._compact(effective or self.sessions.session_id)

    async def execute_task(self, prompt: str, mode: TaskMode = "silent") -> str:
        """Run a background prompt and return the assistant's text.

        Fails fast with SupervisorBusy instead of waiting. In ``silent``
        mode the exchange is pruned from the transcript afterwards.
        """
        if self._busy:
            raise SupervisorBusy()

        logger.info("Executing background task (%s)...", mode)
        self._busy = True
        chunks: list[str] = []

        def collect(event: AgentEvent) -> None:
            if isinstance(event, TextEvent) and event.role == "assistant":
                chunks.append(event.content)

        try:
            effective = await self._invoke(prompt, collect)
            if effective:
                if mode == "silent":
                    await self.client.prune_last_turn(effective)
                await self.client.compact_session(effective)
        except Exception as e:
            logger.error("Background task failed: %s", e)
            raise
        finally:
            self._busy = False
        return "".join(chunks)

    async def prune_last_turn(self) -> bool:
        """Drop the latest exchange from the active session's transcript."""
        session_id = self.sessions.session_id or self.sessions.load()
        if not session_id:
            logger.debug("No active session to prune")
            return False
        return await self.client.prune_last_turn(session_id)

    async def _invoke(
        self,
        content: str,
        on_event: EventHandler,
        session_id: str | None = None,
        retry_on_corruption: bool = True,
    ) -> str | None:
        stored = self.sessions.load()
        effective = session_id or stored
        if effective and effective != stored:
            # Switch the record first so this invocation's usage lands on it
            self.sessions.save(effective)

        async def handle(event: AgentEvent) -> None:
            nonlocal effective
            # The CLI mints its own id for a fresh session
            if event.session_id and event.session_id != effective:
                effective = event.session_id
                self.sessions.save(effective)
            if isinstance(event, DoneEvent):
                if event.usage:
                    self.sessions.update_usage(event.usage)
                if effective:
                    self.sessions.save(effective)
            await maybe_await(on_event(event))

        try:
            await self.client.run(content, handle, effective)
        except NonZeroExit as e:
            if not retry_on_corruption or e.exit_code != self.config.session_corruption_exit_code:
                raise
            logger.warning("Session %s looks corrupted (%s); retrying with a fresh session", effective, e)
            self.sessions.clear()
            return await self._invoke(content, on_event, None, retry_on_corruption=False)
        return effective

    async def _compact(self, session_id: str | None) -> None:
        if not session_id:
            return
        try:
            await self.client.compact_session(session_id)
        except Exception as e:
            logger.error("Compaction failed for session %s: %s", session_id, e)
