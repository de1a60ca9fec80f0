"""Heartbeat scheduler: runs due tasks or an autonomous self-check."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from tars.config import TarsConfig
from tars.errors import TarsError
from tars.maintenance import expire_ephemeral_files
from tars.runners.base import maybe_await
from tars.schedule import calculate_next_run, is_one_shot
from tars.supervisor import Supervisor
from tars.tasks import TaskStore
from tars.types import Task, utc_now

logger = logging.getLogger(__name__)

SILENT_ACK = "SILENT_ACK"

SELF_CHECK_PROMPT = f"""Self-Correction and Autonomous Heartbeat:
Review your current objectives in GEMINI.md and any pending tasks.
If everything is on track and no immediate action is required, reply exactly with '{SILENT_ACK}'.
If you detect an issue, a missed deadline, or a high-priority task that needs starting, provide a short internal reasoning and then describe the action you are taking."""

KnowledgeSync = Callable[[], Awaitable[None] | None]


class HeartbeatScheduler:
    """Wakes up every ``heartbeat_interval_s`` seconds and does one tick.

    Ticks never overlap: a tick that fires while the previous one is still
    running is dropped, not queued.
    """

    def __init__(
        self,
        supervisor: Supervisor,
        config: TarsConfig,
        tasks: TaskStore | None = None,
        knowledge_sync: KnowledgeSync | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.supervisor = supervisor
        self.config = config
        self.tasks = tasks or TaskStore(config.task_file)
        self.knowledge_sync = knowledge_sync
        self.clock = clock
        self._timer: asyncio.Task[None] | None = None
        self._ticks: set[asyncio.Task[bool]] = set()
        self._ticking = False

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def start(self) -> None:
        if self.running:
            return
        logger.info("Heartbeat service started (interval: %ss)", self.config.heartbeat_interval_s)
        self._timer = asyncio.create_task(self._run_timer(), name="tars-heartbeat")

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for tick in self._ticks:
            tick.cancel()
        logger.info("Heartbeat service stopped")

    async def _run_timer(self) -> None:
        # First tick immediately, then one per period regardless of tick duration
        while True:
            tick = asyncio.create_task(self.tick())
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)
            await asyncio.sleep(self.config.heartbeat_interval_s)

    async def tick(self) -> bool:
        """Run one heartbeat. Returns False if the tick was skipped."""
        if self._ticking:
            logger.debug("Previous heartbeat still running; skipping tick")
            return False
        if self.supervisor.is_busy():
            logger.debug("Supervisor busy; skipping tick")
            return False

        self._ticking = True
        try:
            await self._maintenance()

            try:
                tasks = self.tasks.load()
            except TarsError as e:
                logger.error("Heartbeat could not load tasks: %s", e)
                return True

            now = self.clock()
            due = [t for t in tasks if t.enabled and t.next_run <= now]
            if not due:
                await self.autonomous_check()
                return True

            logger.info("Found %d due task(s)", len(due))
            changes = {task.id: await self.run_task(task) for task in due}
            # The agent may have edited tasks while they ran; merge, don't overwrite
            try:
                self.tasks.apply(changes)
            except TarsError as e:
                logger.error("Heartbeat could not save tasks: %s", e)
            return True
        except Exception:
            logger.exception("Heartbeat tick error")
            return True
        finally:
            self._ticking = False

    async def run_task(self, task: Task) -> dict[str, Any]:
        """Execute one task and return its bookkeeping field updates.

        The task itself is left untouched; the caller merges the returned
        fields into the store.
        """
        logger.info("Running task: %s (%s)", task.title, task.id)
        changes: dict[str, Any] = {}
        succeeded = False
        try:
            result = await self.supervisor.execute_task(task.prompt, task.mode)
            logger.info("Task %s completed. Result length: %d", task.id, len(result))
            changes["last_run"] = self.clock()
            changes["failed_count"] = 0
            succeeded = True
        except Exception as e:
            logger.error("Task %s failed: %s", task.id, e)
            changes["failed_count"] = task.failed_count + 1
        finally:
            now = self.clock()
            changes["next_run"] = calculate_next_run(task.schedule, now)
            changes["updated_at"] = now
            if succeeded and is_one_shot(task.schedule) and changes["next_run"] <= now:
                changes["enabled"] = False
                logger.info("One-shot task %s done; disabled", task.id)
        return changes

    async def autonomous_check(self) -> str | None:
        """Ask the agent whether anything needs doing.

        A reply containing SILENT_ACK is pruned from the transcript; anything
        else is real agent-initiated work and stays in history.
        """
        try:
            response = await self.supervisor.execute_task(SELF_CHECK_PROMPT, mode="notify")
        except Exception as e:
            logger.error("Autonomous check failed: %s", e)
            return None

        if SILENT_ACK in response:
            await self.supervisor.prune_last_turn()
            return response

        logger.info("Heartbeat initiated action: %s...", response[:100])
        return response

    async def _maintenance(self) -> None:
        try:
            removed = expire_ephemeral_files(self.config)
            if removed:
                logger.debug("Expired %d ephemeral file(s)", removed)
        except Exception as e:
            logger.error("Ephemeral file cleanup failed: %s", e)

        if self.knowledge_sync is None:
            return
        try:
            await maybe_await(self.knowledge_sync())
        except Exception as e:
            logger.error("Knowledge sync failed: %s", e)
