"""Task collection storage (``<home>/data/tasks.json``)."""

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Literal

from pydantic import ValidationError

from tars.errors import TaskStoreError
from tars.fs import atomic_write_text
from tars.schedule import calculate_next_run
from tars.types import Task, task_list_adapter, utc_now

logger = logging.getLogger(__name__)


class TaskStore:
    """Reads and rewrites the task collection as a whole.

    Access from this process is serialized by a lock. Other processes that
    write the same file (the tasks MCP server) replace it atomically, so
    readers never see a partial document, but a load-modify-save that spans
    an agent run would drop their writes. Long-running callers re-read and
    merge their changes by id with ``apply``.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()

    def load(self) -> list[Task]:
        with self._lock:
            try:
                raw = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return []
            except OSError as e:
                raise TaskStoreError(f"Could not read {self.path}: {e}") from e

            try:
                return task_list_adapter.validate_python(json.loads(raw))
            except (json.JSONDecodeError, ValidationError) as e:
                raise TaskStoreError(f"Invalid task file {self.path}: {e}") from e

    def save(self, tasks: list[Task]) -> None:
        data = [task.model_dump(mode="json", by_alias=True) for task in tasks]
        with self._lock:
            try:
                atomic_write_text(self.path, json.dumps(data, indent=2))
            except OSError as e:
                raise TaskStoreError(f"Could not write {self.path}: {e}") from e

    def add(self, task: Task) -> Task:
        with self._lock:
            tasks = self.load()
            tasks.append(task)
            self.save(tasks)
        logger.info("Task added: %s (%s)", task.title, task.id)
        return task

    def update(self, task_id: str, **changes: Any) -> Task | None:
        with self._lock:
            tasks = self.load()
            for i, task in enumerate(tasks):
                if task.id == task_id:
                    tasks[i] = task.model_copy(update={**changes, "updated_at": utc_now()})
                    self.save(tasks)
                    return tasks[i]
        return None

    def apply(self, changes: dict[str, dict[str, Any]]) -> list[Task]:
        """Merge per-task field changes into the current file contents.

        ``changes`` maps task ids to field updates. Tasks that were deleted
        in the meantime are skipped; every other task is kept as found.
        Returns the tasks that were updated.
        """
        updated: list[Task] = []
        with self._lock:
            tasks = self.load()
            for i, task in enumerate(tasks):
                if task.id in changes:
                    tasks[i] = task.model_copy(update=changes[task.id])
                    updated.append(tasks[i])
            if updated:
                self.save(tasks)
        missing = set(changes) - {t.id for t in updated}
        if missing:
            logger.info("Skipped changes for deleted task(s): %s", ", ".join(sorted(missing)))
        return updated

    def delete(self, task_id: str) -> bool:
        with self._lock:
            tasks = self.load()
            remaining = [t for t in tasks if t.id != task_id]
            if len(remaining) == len(tasks):
                return False
            self.save(remaining)
        logger.info("Task deleted: %s", task_id)
        return True


def new_task(
    title: str,
    prompt: str,
    schedule: str,
    mode: Literal["silent", "notify"] = "silent",
    source: Literal["user", "system"] = "user",
) -> Task:
    """Build a task whose first run is computed from its schedule."""
    now = utc_now()
    return Task(
        id=str(uuid.uuid4()),
        title=title,
        prompt=prompt,
        schedule=schedule,
        next_run=calculate_next_run(schedule, now),
        mode=mode,
        source=source,
        created_at=now,
        updated_at=now,
    )
