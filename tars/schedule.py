"""Next-run computation for task schedules."""

import logging
from datetime import datetime, timedelta, timezone

from croniter import croniter

logger = logging.getLogger(__name__)

FALLBACK_DELAY = timedelta(hours=24)
_DATE_SEPARATORS = ("-", "/")


def calculate_next_run(schedule: str, now: datetime | None = None) -> datetime:
    """Return the next time a task with ``schedule`` should run.

    ``schedule`` is tried as a cron expression first, then as an ISO
    timestamp (returned as-is, even if it is in the past). Anything else
    falls back to ``now + 24h`` so a malformed schedule never leaves a task
    stuck.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    try:
        return croniter(schedule, now).get_next(datetime)
    except (ValueError, TypeError, KeyError):
        pass

    when = parse_timestamp(schedule)
    if when is not None:
        return when

    logger.warning("Unparseable schedule %r; retrying in 24h", schedule)
    return now + FALLBACK_DELAY


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO timestamp, requiring a date separator.

    Bare numbers like ``20260101`` are rejected even though
    ``fromisoformat`` accepts them.
    """
    if not isinstance(value, str) or not any(sep in value for sep in _DATE_SEPARATORS):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        when = datetime.fromisoformat(text)
    except ValueError:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when


def is_one_shot(schedule: str) -> bool:
    """True if the schedule names a single instant rather than a recurrence."""
    return not croniter.is_valid(schedule) and parse_timestamp(schedule) is not None
