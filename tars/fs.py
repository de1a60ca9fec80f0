"""Filesystem helpers shared by the session, task and transcript stores."""

import os
import tempfile
from pathlib import Path


def atomic_write_text(path: Path, content: str) -> Path:
    """Write content to path atomically (write-to-temp, then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
    return path
