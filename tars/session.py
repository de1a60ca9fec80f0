"""Persistence of the active conversation and its token usage."""

import json
import logging
import threading
from pathlib import Path

from pydantic import ValidationError

from tars.fs import atomic_write_text
from tars.types import SessionRecord, UsageStats, utc_now

logger = logging.getLogger(__name__)


class SessionStore:
    """Owns the single session record stored under the tars home directory.

    Every read and write of the backing file goes through this class and is
    serialized by an internal lock. Failures to read are reported as "no
    session"; failures to write are logged and skipped.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._record: SessionRecord | None = None
        self._lock = threading.Lock()

    @property
    def session_id(self) -> str | None:
        return self._record.session_id if self._record else None

    def load(self) -> str | None:
        """Load the stored session, returning its id or None."""
        with self._lock:
            if not self.path.exists():
                return None
            try:
                raw = json.loads(self.path.read_text())
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load session from %s: %s", self.path, e)
                return None

            if not isinstance(raw, dict) or not raw.get("sessionId"):
                return None

            # Records written before net accounting existed
            if raw.get("totalNetTokens") is None:
                raw["totalNetTokens"] = raw.get("totalInputTokens") or 0

            try:
                self._record = SessionRecord.model_validate(raw)
            except ValidationError as e:
                logger.warning("Ignoring malformed session record %s: %s", self.path, e)
                return None
            return self._record.session_id

    def save(self, session_id: str) -> None:
        """Persist the session, starting a fresh record if the id changed."""
        with self._lock:
            if self._record is None or self._record.session_id != session_id:
                self._record = SessionRecord(session_id=session_id)
            self._write()
        logger.info("Session saved: %s", session_id)

    def update_usage(self, usage: UsageStats) -> None:
        """Fold one invocation's usage into the record.

        Input and cached counts describe the current context window and are
        overwritten; output, net input and the interaction count accumulate.
        """
        with self._lock:
            record = self._record
            if record is None:
                logger.warning("Cannot update usage - no active session")
                return

            record.total_net_tokens += usage.net_input_tokens
            record.total_input_tokens = usage.input_tokens
            record.total_output_tokens += usage.output_tokens
            record.total_cached_tokens = usage.cached_tokens
            record.interaction_count += 1
            record.last_interaction_at = utc_now()
            record.last_input_tokens = usage.input_tokens
            self._write()

    def get_stats(self) -> SessionRecord | None:
        with self._lock:
            return self._record.model_copy() if self._record else None

    def clear(self) -> None:
        """Forget the session and delete the backing file."""
        with self._lock:
            self._record = None
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                logger.error("Failed to clear session %s: %s", self.path, e)
                return
        logger.info("Session cleared")

    def _write(self) -> None:
        assert self._record is not None
        try:
            atomic_write_text(self.path, self._record.to_json())
        except OSError as e:
            logger.error("Failed to write session %s: %s", self.path, e)
