"""Tests for the Gemini CLI runner, driven by tests/fake_agent.py."""

import asyncio
import json
import os
import signal
import sys
import time
from pathlib import Path

import pytest

from tars.config import TarsConfig
from tars.errors import AbsoluteTimeout, AgentError, IdleTimeout, NonZeroExit, SpawnFailure
from tars.runners.base import kill
from tars.runners.gemini import GeminiClient, StreamParser
from tars.types import DoneEvent, ErrorEvent, TextEvent, ThoughtEvent, ToolCallEvent, ToolResponseEvent

FAKE_AGENT = str(Path(__file__).parent / "fake_agent.py")
SESSION_ID = "5e55a0b1-aaaa-bbbb-cccc-000000000001"


@pytest.fixture
def config(tmp_path: Path) -> TarsConfig:
    return TarsConfig(
        home_dir=tmp_path,
        agent_command=[sys.executable, FAKE_AGENT],
        idle_timeout_s=10,
        total_timeout_s=30,
    )


async def collect(client: GeminiClient, prompt: str, session_id: str | None = None) -> list:
    events = []
    await client.run(prompt, events.append, session_id)
    return events


# ---------------------------------------------------------------------------
# StreamParser
# ---------------------------------------------------------------------------


def test_message_record_becomes_text_event():
    parser = StreamParser()
    events = parser.parse_line('{"type":"message","role":"assistant","content":"hello "}')
    assert events == [TextEvent(content="hello ")]


def test_result_record_finishes_with_usage():
    parser = StreamParser()
    events = parser.parse_line(
        '{"type":"result","status":"success","stats":{"input_tokens":10,"output_tokens":20,"cached":5}}'
    )
    assert len(events) == 1
    done = events[0]
    assert isinstance(done, DoneEvent)
    assert (done.usage.input_tokens, done.usage.output_tokens, done.usage.cached_tokens) == (10, 20, 5)
    assert parser.finished


def test_records_after_finish_are_ignored():
    parser = StreamParser()
    parser.parse_line('{"type":"result","status":"success"}')
    assert parser.parse_line('{"type":"message","content":"late"}') == []
    assert parser.parse_line('{"type":"result","status":"success"}') == []


def test_malformed_line_is_skipped():
    parser = StreamParser()
    assert parser.parse_line("Loaded cached credentials.") == []
    assert parser.parse_line("") == []
    events = parser.parse_line('{"type":"message","content":"still parsing"}')
    assert events == [TextEvent(content="still parsing")]


def test_session_id_is_stamped_on_later_events():
    parser = StreamParser()
    assert parser.parse_line(json.dumps({"type": "init", "session_id": "abc"})) == []
    (event,) = parser.parse_line('{"type":"message","content":"hi"}')
    assert event.session_id == "abc"
    assert parser.session_id == "abc"


def test_tool_and_thought_records():
    parser = StreamParser()
    (thought,) = parser.normalize({"type": "thought", "thought": {"subject": "Plan", "description": "look"}})
    assert thought == ThoughtEvent(content="Plan: look")

    (call,) = parser.normalize({"type": "tool_use", "tool_name": "read_file", "tool_id": "t1", "parameters": {"p": 1}})
    assert isinstance(call, ToolCallEvent)
    assert call.tool_name == "read_file"
    assert call.args == {"p": 1}

    (response,) = parser.normalize({"type": "tool_result", "tool_id": "t1", "status": "error", "error": {"message": "nope"}})
    assert isinstance(response, ToolResponseEvent)
    assert response.status == "error"
    assert response.result == {"message": "nope"}


def test_error_records():
    parser = StreamParser()
    (error,) = parser.normalize({"type": "error", "message": "rate limited"})
    assert error == ErrorEvent(message="rate limited")
    assert not parser.finished


def test_failed_result_ends_stream_without_events():
    parser = StreamParser()
    assert parser.normalize({"type": "result", "status": "error", "error": {"message": "boom"}}) == []
    assert parser.finished
    assert parser.failure == "boom"
    assert parser.parse_line('{"type": "message", "content": "late"}') == []


def test_usage_is_clamped_and_last_value_wins():
    parser = StreamParser()
    parser.normalize({"type": "message", "content": "a", "usage": {"inputTokens": 7, "outputTokens": -3}})
    parser.normalize({"type": "message", "content": "b", "stats": {"input_tokens": 9}})
    done = parser.finish()
    assert (done.usage.input_tokens, done.usage.output_tokens, done.usage.cached_tokens) == (9, 0, 0)


# ---------------------------------------------------------------------------
# GeminiClient against a real subprocess
# ---------------------------------------------------------------------------


def test_build_command(config: TarsConfig):
    client = GeminiClient(config.model_copy(update={"model": "gemini-2.5-pro"}))
    cmd = client.build_command("hi", "sid-1", ["tasks"])
    assert cmd[:2] == [sys.executable, FAKE_AGENT]
    assert cmd[cmd.index("--output-format") + 1] == "stream-json"
    assert "--yolo" in cmd
    assert cmd[cmd.index("--include-directories") + 1] == str(config.home_dir)
    assert cmd[cmd.index("--model") + 1] == "gemini-2.5-pro"
    assert cmd[cmd.index("--resume") + 1] == "sid-1"
    assert cmd[cmd.index("--extensions") + 1] == "tasks"
    assert cmd[-2:] == ["--prompt", "hi"]


def test_build_command_new_session_auto_model(config: TarsConfig):
    cmd = GeminiClient(config).build_command("hi")
    assert "--resume" not in cmd
    assert "--model" not in cmd


async def test_run_streams_events_then_done(config: TarsConfig):
    events = await collect(GeminiClient(config), "say hello")

    texts = [e.content for e in events if isinstance(e, TextEvent)]
    assert texts == ["hello ", "world"]
    assert isinstance(events[-1], DoneEvent)
    assert sum(isinstance(e, DoneEvent) for e in events) == 1
    usage = events[-1].usage
    assert (usage.input_tokens, usage.output_tokens, usage.cached_tokens) == (10, 20, 5)
    assert all(e.session_id == SESSION_ID for e in events)


async def test_run_points_home_and_cwd_at_tars_home(config: TarsConfig):
    events = await collect(GeminiClient(config), "show argv", session_id="sid-42")

    payload = json.loads(next(e.content for e in events if isinstance(e, TextEvent)))
    assert payload["home"] == str(config.home_dir)
    assert os.path.realpath(payload["cwd"]) == os.path.realpath(config.home_dir)
    assert payload["argv"][payload["argv"].index("--resume") + 1] == "sid-42"


async def test_malformed_line_between_valid_lines(config: TarsConfig):
    events = await collect(GeminiClient(config), "malformed please")
    texts = [e.content for e in events if isinstance(e, TextEvent)]
    assert texts == ["first", "second"]
    assert isinstance(events[-1], DoneEvent)


async def test_line_split_across_chunks(config: TarsConfig):
    events = await collect(GeminiClient(config), "split it")
    assert [e.content for e in events if isinstance(e, TextEvent)] == ["in pieces"]


async def test_tool_events_are_forwarded(config: TarsConfig):
    events = await collect(GeminiClient(config), "use tools")
    kinds = [e.type for e in events]
    assert kinds == ["text", "thought", "tool_call", "tool_response", "text", "done"]
    assert events[0].role == "user"


async def test_done_mid_stream_finalizes_once(config: TarsConfig):
    started = time.monotonic()
    events = await collect(GeminiClient(config), "after-done")

    assert time.monotonic() - started < 10
    dones = [e for e in events if isinstance(e, DoneEvent)]
    assert len(dones) == 1
    assert dones[0].usage.input_tokens == 10
    assert "late" not in [e.content for e in events if isinstance(e, TextEvent)]


async def test_exit_code_after_result_is_ignored(config: TarsConfig):
    events = await collect(GeminiClient(config), "exit-after-result")
    assert isinstance(events[-1], DoneEvent)


async def test_clean_exit_without_result_synthesizes_done(config: TarsConfig):
    events = await collect(GeminiClient(config), "no-result")
    assert isinstance(events[-1], DoneEvent)
    assert events[-1].usage.input_tokens == 3
    assert events[-1].usage.output_tokens == 4


async def test_nonzero_exit_raises(config: TarsConfig):
    with pytest.raises(NonZeroExit) as excinfo:
        await collect(GeminiClient(config), "fail now")
    assert excinfo.value.exit_code == 3


async def test_failed_result_raises_once(config: TarsConfig):
    events = []
    with pytest.raises(AgentError, match="quota exhausted") as excinfo:
        await GeminiClient(config).run("failed-result", events.append)
    assert not isinstance(excinfo.value, NonZeroExit)
    assert [e.type for e in events] == ["text"]


async def test_large_unterminated_stderr_does_not_stall(config: TarsConfig):
    client = GeminiClient(config.model_copy(update={"idle_timeout_s": 2, "total_timeout_s": 5}))
    started = time.monotonic()
    events = await collect(client, "stderr-flood")

    assert time.monotonic() - started < 10
    assert [e.content for e in events if isinstance(e, TextEvent)] == ["still here"]
    assert isinstance(events[-1], DoneEvent)


class UnreapableProcess:
    """A process whose wait() never returns, as when a grandchild holds its pipes."""

    pid = 4242
    returncode = None
    stdout = None

    def __init__(self):
        self.killed = False

    def kill(self):
        self.killed = True

    async def wait(self):
        await asyncio.Event().wait()


async def test_kill_gives_up_on_unreapable_process():
    proc = UnreapableProcess()
    started = time.monotonic()
    assert await kill(proc, timeout=0.2) == -signal.SIGKILL
    assert proc.killed
    assert time.monotonic() - started < 5


async def test_idle_timeout(config: TarsConfig):
    client = GeminiClient(config.model_copy(update={"idle_timeout_s": 0.5, "total_timeout_s": 20}))
    started = time.monotonic()
    with pytest.raises(IdleTimeout):
        await collect(client, "hang")
    assert time.monotonic() - started < 10


async def test_total_timeout_despite_steady_output(config: TarsConfig):
    client = GeminiClient(config.model_copy(update={"idle_timeout_s": 5, "total_timeout_s": 0.5}))
    with pytest.raises(AbsoluteTimeout):
        await collect(client, "chatter")


async def test_missing_binary_is_spawn_failure(config: TarsConfig, tmp_path: Path):
    client = GeminiClient(config.model_copy(update={"agent_command": [str(tmp_path / "no-such-gemini")]}))
    with pytest.raises(SpawnFailure):
        await collect(client, "hi")


async def test_run_sync_returns_assistant_text(config: TarsConfig):
    assert await GeminiClient(config).run_sync("say hello") == "hello world"
