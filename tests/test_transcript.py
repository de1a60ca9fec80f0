"""Tests for transcript pruning and compaction."""

import json
import os
from pathlib import Path

from tars import transcript


def write_chat(home: Path, name: str, session: dict) -> Path:
    directory = transcript.chats_dir(home)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(json.dumps(session))
    return path


def read(path: Path) -> dict:
    return json.loads(path.read_text())


def test_chats_dir_is_keyed_by_home_hash(tmp_path: Path):
    d = transcript.chats_dir(tmp_path)
    assert d.parent.parent == tmp_path / ".gemini" / "tmp"
    assert len(d.parent.name) == 64
    assert d.name == "chats"


def test_find_transcript_prefers_newest(tmp_path: Path):
    sid = "abcdef12-3456-7890"
    old = write_chat(tmp_path, "session-2024-01-01-abcdef12.json", {"messages": []})
    new = write_chat(tmp_path, "session-2024-02-01-abcdef12.json", {"messages": []})
    write_chat(tmp_path, "session-2024-03-01-99999999.json", {"messages": []})
    os.utime(old, (1_000_000, 1_000_000))
    os.utime(new, (2_000_000, 2_000_000))

    assert transcript.find_transcript(tmp_path, sid) == new


def test_find_transcript_missing(tmp_path: Path):
    assert transcript.find_transcript(tmp_path, "abcdef12") is None
    write_chat(tmp_path, "session-x-11111111.json", {})
    assert transcript.find_transcript(tmp_path, "abcdef12") is None


def test_prune_truncates_from_last_user_entry(tmp_path: Path):
    path = write_chat(
        tmp_path,
        "session-a.json",
        {
            "sessionId": "a",
            "messages": [
                {"type": "gemini", "content": "A1"},
                {"type": "user", "content": "U"},
                {"type": "gemini", "content": "A2"},
            ],
        },
    )

    assert transcript.prune_last_turn(path) is True
    session = read(path)
    assert session["messages"] == [{"type": "gemini", "content": "A1"}]
    assert session["sessionId"] == "a"


def test_prune_history_layout(tmp_path: Path):
    path = write_chat(
        tmp_path,
        "session-b.json",
        {
            "history": [
                {"role": "user", "parts": [{"text": "first"}]},
                {"role": "model", "parts": [{"text": "reply"}]},
                {"role": "user", "parts": [{"text": "heartbeat"}]},
                {"role": "model", "parts": [{"text": "SILENT_ACK"}]},
            ]
        },
    )

    assert transcript.prune_last_turn(path) is True
    assert [t["parts"][0]["text"] for t in read(path)["history"]] == ["first", "reply"]


def test_prune_without_user_entry_is_noop(tmp_path: Path):
    before = {"messages": [{"type": "gemini", "content": "only"}]}
    path = write_chat(tmp_path, "session-c.json", before)
    assert transcript.prune_last_turn(path) is False
    assert read(path) == before


def test_prune_unreadable_file(tmp_path: Path):
    directory = transcript.chats_dir(tmp_path)
    directory.mkdir(parents=True)
    path = directory / "session-d.json"
    path.write_text("{not json")
    assert transcript.prune_last_turn(path) is False
    assert path.read_text() == "{not json"


def test_compact_below_threshold_leaves_file(tmp_path: Path):
    path = write_chat(tmp_path, "session-e.json", {"messages": [{"type": "user", "resultDisplay": "x"}]})
    before = path.read_text()
    assert transcript.compact_transcript(path, threshold_bytes=1024 * 1024) is False
    assert path.read_text() == before


def test_compact_strips_display_and_old_thoughts(tmp_path: Path):
    big = "x" * 2000
    session = {
        "sessionId": "s",
        "messages": [
            {"type": "user", "content": "do it"},
            {
                "type": "gemini",
                "content": "done",
                "thoughts": [{"subject": f"t{i}"} for i in range(6)],
                "toolCalls": [{"name": "read_file", "result": "ok", "resultDisplay": big}],
            },
        ],
    }
    path = write_chat(tmp_path, "session-f.json", session)

    assert transcript.compact_transcript(path, threshold_bytes=1000, keep_thoughts=3) is True
    compacted = read(path)
    reply = compacted["messages"][1]
    assert [t["subject"] for t in reply["thoughts"]] == ["t3", "t4", "t5"]
    assert reply["toolCalls"] == [{"name": "read_file", "result": "ok"}]
    assert reply["content"] == "done"
    assert compacted["messages"][0] == {"type": "user", "content": "do it"}
    assert path.stat().st_size < len(big)
