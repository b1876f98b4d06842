"""
Atomic file writes.

Content is written to a uniquely named hidden temp file in the target's
directory and then renamed over the target, so a crash mid-write leaves the
target either fully old or fully new.
"""
import os
import secrets
from pathlib import Path
from typing import Union

import structlog

logger = structlog.get_logger()


def atomic_write(path: Union[str, Path], content: str) -> None:
    """Replace ``path`` with ``content`` atomically."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.parent / f".{target.name}.{secrets.token_hex(4)}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        logger.error("Atomic write failed", path=str(target))
        raise
