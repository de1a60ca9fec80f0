"""Housekeeping for ephemeral files under the tars data directory."""

import logging
import time
from pathlib import Path

from tars.config import TarsConfig

logger = logging.getLogger(__name__)

TMP_MAX_AGE_S = 60 * 60
UPLOAD_MAX_AGE_S = 24 * 60 * 60


def expire_ephemeral_files(config: TarsConfig, now: float | None = None) -> int:
    """Delete saved responses older than an hour and uploads older than a day.

    Returns the number of files removed.
    """
    now = time.time() if now is None else now
    return _expire(config.tmp_dir, TMP_MAX_AGE_S, now) + _expire(config.uploads_dir, UPLOAD_MAX_AGE_S, now)


def _expire(directory: Path, max_age_s: float, now: float) -> int:
    if not directory.is_dir():
        return 0
    removed = 0
    try:
        for path in directory.iterdir():
            if not path.is_file():
                continue
            if now - path.stat().st_mtime > max_age_s:
                path.unlink()
                removed += 1
                logger.debug("Deleted old file: %s", path)
    except OSError as e:
        logger.error("Cleanup failed for %s: %s", directory, e)
    return removed
