"""CLI for tars."""

from typing import Annotated

import typer

from tars import __version__

app = typer.Typer(
    name="tars",
    help="Supervisor for a long-lived, headless Gemini CLI agent session.",
    no_args_is_help=True,
)


def _load_config(home: str | None = None):
    import os

    from dotenv import load_dotenv

    from tars.config import TarsConfig
    from tars.log import setup_logging

    load_dotenv()
    environ = {**os.environ, "TARS_HOME": home} if home else None
    config = TarsConfig.load(environ)
    config.ensure_dirs()
    setup_logging(config.log_level, config.logs_dir / "tars.log")
    return config


def _build_supervisor(config):
    from tars.runners.gemini import GeminiClient
    from tars.session import SessionStore
    from tars.supervisor import Supervisor

    return Supervisor(GeminiClient(config), SessionStore(config.session_file), config)


HomeOption = Annotated[str | None, typer.Option("--home", help="Tars home directory (default: $TARS_HOME or ~/.tars)")]


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"tars {__version__}")


@app.command()
def doctor(
    home: HomeOption = None,
    mcp: Annotated[bool, typer.Option("--mcp/--no-mcp", help="Validate the tasks MCP server responds to tools/list")] = True,
    smoke: Annotated[bool, typer.Option("--smoke/--no-smoke", help="Make a real LLM call (costs money)")] = False,
    json_out: Annotated[bool, typer.Option("--json", help="Emit machine-readable JSON")] = False,
) -> None:
    """Sanity-check the agent binary, the home directory and (optionally) a real call."""
    import asyncio
    import json

    from tars.doctor import check_binary, check_home, check_mcp_server_tools, run_smoke

    config = _load_config(home)
    binary = check_binary(config)
    home_result = check_home(config)
    mcp_result = asyncio.run(check_mcp_server_tools(config, timeout_s=5)) if mcp else None
    smoke_result = asyncio.run(run_smoke(config)) if smoke and binary.ok else None

    payload = {
        "binary": binary.__dict__,
        "home": home_result.__dict__,
        "mcp": (mcp_result.__dict__ if mcp_result else None),
        "smoke": smoke_result,
    }

    if json_out:
        typer.echo(json.dumps(payload, indent=2))
    else:
        details = [d for d in (binary.version, binary.path) if d]
        typer.echo(f"{binary.name}: {'ok' if binary.ok else 'FAIL'}" + (f" ({' | '.join(details)})" if details else ""))
        if binary.warning:
            typer.echo(f"  warning: {binary.warning}")

        typer.echo(f"home: {'ok' if home_result.ok else 'FAIL'} ({home_result.path})")
        if home_result.error:
            typer.echo(f"  error: {home_result.error}")
        else:
            typer.echo(f"  session: {home_result.session_id or 'none'}, tasks: {home_result.task_count}")

        if mcp_result:
            typer.echo(f"mcp: {'ok' if mcp_result.ok else 'FAIL'}")
            if mcp_result.ok:
                typer.echo(f"  tools: {', '.join(mcp_result.tools)}")
            elif mcp_result.error:
                typer.echo(f"  error: {mcp_result.error}")

        if smoke_result:
            status = "ok" if smoke_result["ok"] else "FAIL"
            extra = f"{smoke_result['duration_ms']}ms"
            if smoke_result.get("response"):
                extra += f", response={smoke_result['response'][:60]!r}"
            typer.echo(f"smoke: {status} ({extra})")
            if smoke_result.get("error"):
                typer.echo(f"  error: {smoke_result['error']}")
        elif not smoke:
            typer.echo("hint: run `tars doctor --smoke` to make a real call")

    ok = binary.ok and home_result.ok
    if mcp_result and not mcp_result.ok:
        ok = False
    if smoke_result and not smoke_result["ok"]:
        ok = False
    if not ok:
        raise typer.Exit(1)


@app.command()
def ask(
    prompt: Annotated[str, typer.Argument(help="Prompt to send to the agent")],
    home: HomeOption = None,
    session: Annotated[str | None, typer.Option("--session", "-s", help="Resume this session instead of the stored one")] = None,
    show_thoughts: Annotated[bool, typer.Option("--thoughts", help="Print the agent's thoughts to stderr")] = False,
) -> None:
    """Send one prompt through the supervisor and stream the reply."""
    import asyncio

    from tars.types import AgentEvent, DoneEvent, ErrorEvent, TextEvent, ThoughtEvent, ToolCallEvent

    config = _load_config(home)
    supervisor = _build_supervisor(config)
    failed = False

    def on_event(event: AgentEvent) -> None:
        nonlocal failed
        if isinstance(event, TextEvent) and event.role == "assistant":
            typer.echo(event.content, nl=False)
        elif isinstance(event, ThoughtEvent) and show_thoughts:
            typer.echo(f"[thought] {event.content}", err=True)
        elif isinstance(event, ToolCallEvent):
            typer.echo(f"[tool] {event.tool_name}", err=True)
        elif isinstance(event, ErrorEvent):
            failed = True
            typer.echo(f"\nerror: {event.message}", err=True)
        elif isinstance(event, DoneEvent):
            typer.echo("")

    asyncio.run(supervisor.run(prompt, on_event, session))
    if failed:
        raise typer.Exit(1)


@app.command()
def status(
    home: HomeOption = None,
    json_out: Annotated[bool, typer.Option("--json", help="Emit machine-readable JSON")] = False,
) -> None:
    """Show the stored session and its token usage."""
    from tars.session import SessionStore

    config = _load_config(home)
    sessions = SessionStore(config.session_file)
    sessions.load()
    stats = sessions.get_stats()

    if json_out:
        typer.echo(stats.to_json() if stats else "null")
        return
    if stats is None:
        typer.echo("No active session")
        return
    typer.echo(f"session: {stats.session_id}")
    typer.echo(f"  created: {stats.created_at.isoformat()}")
    typer.echo(f"  interactions: {stats.interaction_count}")
    typer.echo(f"  context: {stats.total_input_tokens} input, {stats.total_cached_tokens} cached")
    typer.echo(f"  output: {stats.total_output_tokens}, net input: {stats.total_net_tokens}")


@app.command()
def reset(home: HomeOption = None) -> None:
    """Forget the stored session so the next prompt starts fresh."""
    from tars.session import SessionStore

    config = _load_config(home)
    SessionStore(config.session_file).clear()
    typer.echo("Session cleared")


@app.command()
def tick(home: HomeOption = None) -> None:
    """Run a single heartbeat now (due tasks or the self-check)."""
    import asyncio

    from tars.heartbeat import HeartbeatScheduler

    config = _load_config(home)
    scheduler = HeartbeatScheduler(_build_supervisor(config), config)
    ran = asyncio.run(scheduler.tick())
    typer.echo("Heartbeat complete" if ran else "Heartbeat skipped")


@app.command()
def start(home: HomeOption = None) -> None:
    """Run the heartbeat loop until interrupted."""
    import asyncio

    from tars.heartbeat import HeartbeatScheduler

    config = _load_config(home)
    scheduler = HeartbeatScheduler(_build_supervisor(config), config)

    async def _serve() -> None:
        await scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.stop()

    typer.echo(f"tars running from {config.home_dir} (Ctrl-C to stop)", err=True)
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        typer.echo("Stopped", err=True)


@app.command()
def tasks(
    home: HomeOption = None,
    json_out: Annotated[bool, typer.Option("--json", help="Emit machine-readable JSON")] = False,
) -> None:
    """List scheduled tasks."""
    import json

    from tars.errors import TaskStoreError
    from tars.tasks import TaskStore

    config = _load_config(home)
    try:
        items = TaskStore(config.task_file).load()
    except TaskStoreError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from e

    if json_out:
        typer.echo(json.dumps([t.model_dump(mode="json", by_alias=True) for t in items], indent=2))
        return
    if not items:
        typer.echo("No tasks")
        return
    for t in items:
        state = "on" if t.enabled else "off"
        typer.echo(f"{t.id}  [{state}] {t.title}  schedule={t.schedule!r} next={t.next_run.isoformat()} mode={t.mode}")
        if t.failed_count:
            typer.echo(f"  failed {t.failed_count} time(s) in a row")


if __name__ == "__main__":
    app()
