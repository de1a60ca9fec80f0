"""MCP server exposing the tars task store for stdio transport.

The agent loads this as an extension so it can schedule its own work. Tasks
written here are picked up by the heartbeat on its next tick.
"""

import asyncio
import json
from typing import Annotated, Literal

from mcp.server.fastmcp import FastMCP

from tars.config import TarsConfig
from tars.errors import TaskStoreError
from tars.log import setup_logging
from tars.schedule import calculate_next_run
from tars.tasks import TaskStore, new_task

mcp = FastMCP(
    name="tars-tasks",
    instructions="Schedule, inspect and cancel tasks that the tars heartbeat runs in the background.",
)


def _store() -> TaskStore:
    return TaskStore(TarsConfig.load().task_file)


@mcp.tool()
async def create_task(
    title: Annotated[str, "Short human-readable name for the task"],
    prompt: Annotated[str, "The prompt to run when the task is due"],
    schedule: Annotated[str, "Cron expression (e.g. '0 9 * * *') or ISO timestamp for a one-off run"],
    mode: Annotated[Literal["silent", "notify"], "silent: drop the exchange from history afterwards; notify: keep it"] = "silent",
) -> str:
    """Schedule a new background task. Returns the created task as JSON."""
    task = new_task(title, prompt, schedule, mode=mode)
    try:
        _store().add(task)
    except TaskStoreError as e:
        return json.dumps({"error": str(e)})
    return task.to_json()


@mcp.tool()
async def list_tasks(
    include_disabled: Annotated[bool, "Also list tasks that will not run again"] = True,
) -> str:
    """List scheduled tasks as a JSON array."""
    try:
        tasks = _store().load()
    except TaskStoreError as e:
        return json.dumps({"error": str(e)})
    if not include_disabled:
        tasks = [t for t in tasks if t.enabled]
    return json.dumps([t.model_dump(mode="json", by_alias=True) for t in tasks], indent=2)


@mcp.tool()
async def update_task(
    task_id: Annotated[str, "ID of the task to change"],
    title: Annotated[str | None, "New title"] = None,
    prompt: Annotated[str | None, "New prompt"] = None,
    schedule: Annotated[str | None, "New schedule; the next run is recomputed"] = None,
    enabled: Annotated[bool | None, "Enable or disable the task"] = None,
) -> str:
    """Change fields of an existing task. Returns the updated task as JSON."""
    changes: dict = {}
    if title is not None:
        changes["title"] = title
    if prompt is not None:
        changes["prompt"] = prompt
    if schedule is not None:
        changes["schedule"] = schedule
        changes["next_run"] = calculate_next_run(schedule)
    if enabled is not None:
        changes["enabled"] = enabled

    try:
        task = _store().update(task_id, **changes)
    except TaskStoreError as e:
        return json.dumps({"error": str(e)})
    if task is None:
        return json.dumps({"error": f"Task {task_id} not found"})
    return task.to_json()


@mcp.tool()
async def delete_task(
    task_id: Annotated[str, "ID of the task to delete"],
) -> str:
    """Delete a task."""
    try:
        deleted = _store().delete(task_id)
    except TaskStoreError as e:
        return json.dumps({"error": str(e)})
    return json.dumps({"deleted": deleted, "id": task_id})


def main():
    """Run the MCP server on stdio."""
    # Logs must stay off stdout, which carries the protocol
    setup_logging(TarsConfig.load().log_level)
    asyncio.run(mcp.run_stdio_async())


if __name__ == "__main__":
    main()
