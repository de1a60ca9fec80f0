"""Transcript hygiene: locate, prune and compact the agent's chat files.

The Gemini CLI stores each conversation as a JSON document under
``<home>/.gemini/tmp/<sha256(home)>/chats/session-<...>.json``. Depending on
the CLI version the turns live in a ``messages`` list (entries tagged with
``type``) or a ``history`` list (entries tagged with ``role``).

None of these helpers raise: read/write problems are logged and the
operation is skipped, leaving the file for the next pass.
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Any

from tars.fs import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_COMPACTION_THRESHOLD = 50 * 1024
DEFAULT_KEEP_THOUGHTS = 3

# (list key, entry tag, value marking a user-authored entry)
_TURN_LAYOUTS = (
    ("messages", "type", "user"),
    ("history", "role", "user"),
)


def chats_dir(home: Path) -> Path:
    project_hash = hashlib.sha256(str(home).encode()).hexdigest()
    return home / ".gemini" / "tmp" / project_hash / "chats"


def find_transcript(home: Path, session_id: str) -> Path | None:
    """Return the most recently modified chat file for a session."""
    directory = chats_dir(home)
    if not session_id or not directory.is_dir():
        return None

    prefix = session_id[:8]
    try:
        candidates = [
            p
            for p in directory.iterdir()
            if p.name.startswith("session-") and prefix in p.name and p.suffix == ".json"
        ]
        candidates.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    except OSError as e:
        logger.warning("Could not scan %s: %s", directory, e)
        return None
    return candidates[0] if candidates else None


def prune_last_turn(path: Path) -> bool:
    """Drop the most recent user turn and everything after it.

    Returns True if the transcript was rewritten.
    """
    session = _read(path)
    if session is None:
        return False

    for key, tag, user_value in _TURN_LAYOUTS:
        turns = session.get(key)
        if not isinstance(turns, list) or not turns:
            continue
        last_user = _last_index(turns, tag, user_value)
        if last_user is None:
            return False
        session[key] = turns[:last_user]
        if _write(path, session):
            logger.debug("Pruned %s at index %d", path.name, last_user)
            return True
        return False
    return False


def compact_transcript(
    path: Path,
    threshold_bytes: int = DEFAULT_COMPACTION_THRESHOLD,
    keep_thoughts: int = DEFAULT_KEEP_THOUGHTS,
) -> bool:
    """Strip display-only metadata from a transcript that grew too large.

    Conversation content is preserved; ``resultDisplay`` blobs are removed
    and reasoning history is cut to the last ``keep_thoughts`` entries.
    Returns True if the file was rewritten.
    """
    try:
        size = path.stat().st_size
    except OSError as e:
        logger.warning("Could not stat transcript %s: %s", path, e)
        return False
    if size < threshold_bytes:
        return False

    logger.info("Compacting bloated session (%.1f KB)...", size / 1024)
    session = _read(path)
    if session is None:
        return False

    for key, _, _ in _TURN_LAYOUTS:
        turns = session.get(key)
        if isinstance(turns, list):
            session[key] = [_compact_turn(turn, keep_thoughts) for turn in turns]

    if not _write(path, session):
        return False
    try:
        new_size = path.stat().st_size
    except OSError:
        return True
    logger.info("Compacted: %.1f KB -> %.1f KB", size / 1024, new_size / 1024)
    return True


def _compact_turn(turn: Any, keep_thoughts: int) -> Any:
    if not isinstance(turn, dict):
        return turn
    turn = _strip_key(turn, "resultDisplay")
    thoughts = turn.get("thoughts")
    if isinstance(thoughts, list) and len(thoughts) > keep_thoughts:
        turn["thoughts"] = thoughts[-keep_thoughts:] if keep_thoughts else []
    return turn


def _strip_key(node: Any, key: str) -> Any:
    if isinstance(node, dict):
        return {k: _strip_key(v, key) for k, v in node.items() if k != key}
    if isinstance(node, list):
        return [_strip_key(item, key) for item in node]
    return node


def _last_index(turns: list[Any], tag: str, value: str) -> int | None:
    for i in range(len(turns) - 1, -1, -1):
        turn = turns[i]
        if isinstance(turn, dict) and turn.get(tag) == value:
            return i
    return None


def _read(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Could not read transcript %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.error("Unexpected transcript layout in %s", path)
        return None
    return data


def _write(path: Path, session: dict[str, Any]) -> bool:
    try:
        atomic_write_text(path, json.dumps(session, indent=2))
    except OSError as e:
        logger.error("Could not write transcript %s: %s", path, e)
        return False
    return True
