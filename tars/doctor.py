"""Doctor/smoke checks for tars."""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

from tars.config import TarsConfig
from tars.errors import TarsError
from tars.session import SessionStore
from tars.tasks import TaskStore

MCP_TOOLS = {"create_task", "list_tasks", "update_task", "delete_task"}


@dataclass(frozen=True)
class BinaryCheck:
    name: str
    ok: bool
    path: str | None = None
    version: str | None = None
    warning: str | None = None


@dataclass(frozen=True)
class HomeCheck:
    ok: bool
    path: str
    session_id: str | None = None
    task_count: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class McpCheck:
    ok: bool
    tools: list[str] = field(default_factory=list)
    error: str | None = None


def _run_version(cmd: list[str]) -> str | None:
    try:
        proc = subprocess.run(
            [*cmd, "--version"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    out = (proc.stdout or proc.stderr).strip()
    return out.splitlines()[0].strip() if out else None


def check_binary(config: TarsConfig) -> BinaryCheck:
    name = config.agent_command[0]
    path = shutil.which(name)
    if not path:
        return BinaryCheck(name=name, ok=False, warning="not found on PATH")

    warning = None
    if not (os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")):
        warning = "GEMINI_API_KEY is not set (fine if the CLI is logged in another way)"
    return BinaryCheck(name=name, ok=True, path=path, version=_run_version(config.agent_command), warning=warning)


def check_home(config: TarsConfig) -> HomeCheck:
    """Verify the home directory is usable and its state files parse."""
    home = config.home_dir
    try:
        config.ensure_dirs()
    except OSError as e:
        return HomeCheck(ok=False, path=str(home), error=f"cannot create directories: {e}")
    if not os.access(home, os.W_OK):
        return HomeCheck(ok=False, path=str(home), error="home directory is not writable")

    session_id = SessionStore(config.session_file).load()
    try:
        tasks = TaskStore(config.task_file).load()
    except TarsError as e:
        return HomeCheck(ok=False, path=str(home), session_id=session_id, error=str(e))
    return HomeCheck(ok=True, path=str(home), session_id=session_id, task_count=len(tasks))


async def check_mcp_server_tools(config: TarsConfig, timeout_s: int = 5) -> McpCheck:
    """Start the tasks MCP server and validate it responds to initialize + tools/list."""
    proc = await asyncio.create_subprocess_exec(
        sys.executable,
        "-m",
        "tars.mcp_server",
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(Path.cwd()),
        env={**os.environ, "TARS_HOME": str(config.home_dir)},
    )

    async def _send(msg: dict) -> None:
        assert proc.stdin is not None
        proc.stdin.write((json.dumps(msg) + "\n").encode())
        await proc.stdin.drain()

    async def _recv() -> dict:
        assert proc.stdout is not None
        line = await asyncio.wait_for(proc.stdout.readline(), timeout=timeout_s)
        return json.loads(line)

    try:
        await _send(
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "initialize",
                "params": {
                    "protocolVersion": "2024-11-05",
                    "capabilities": {},
                    "clientInfo": {"name": "tars-doctor", "version": "0"},
                },
            }
        )
        init_resp = await _recv()
        if "result" not in init_resp:
            return McpCheck(ok=False, tools=[], error=f"initialize failed: {init_resp}")
        await _send({"jsonrpc": "2.0", "method": "notifications/initialized"})

        await _send({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
        tools_resp = await _recv()
        if "result" not in tools_resp:
            return McpCheck(ok=False, tools=[], error=f"tools/list failed: {tools_resp}")

        tools = [t["name"] for t in tools_resp["result"]["tools"]]
        missing = sorted(MCP_TOOLS - set(tools))
        if missing:
            return McpCheck(ok=False, tools=tools, error=f"missing tools: {missing}")

        return McpCheck(ok=True, tools=sorted(tools))
    except asyncio.TimeoutError:
        return McpCheck(ok=False, tools=[], error="timeout waiting for MCP response")
    except (OSError, ValueError, KeyError) as e:
        return McpCheck(ok=False, tools=[], error=str(e))
    finally:
        if proc.stdin:
            proc.stdin.close()
        try:
            await asyncio.wait_for(proc.wait(), timeout=2)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()


async def run_smoke(config: TarsConfig) -> dict:
    """Make one real call in a throwaway session."""
    from tars.runners.gemini import GeminiClient

    prompt = "What is 2+2? Reply with just: 4"
    started = time.monotonic()
    try:
        response = await GeminiClient(config).run_sync(prompt)
    except TarsError as e:
        return {
            "ok": False,
            "duration_ms": int((time.monotonic() - started) * 1000),
            "response": None,
            "error": str(e),
        }
    return {
        "ok": "4" in response,
        "duration_ms": int((time.monotonic() - started) * 1000),
        "response": response.strip(),
        "error": None,
    }
