"""
Append-only ledger of every classified message (emails.jsonl).

Used for cross-cycle deduplication and audit. Rotation rewrites the file
through :func:`atomic_write` and must only run between cycles. Appends and
rotation share a lock file, so a rotation started from the CLI cannot drop
lines the daemon appends meanwhile.
"""
import json
import time
from pathlib import Path
from typing import List, Optional, Set

import structlog
from filelock import FileLock
from pydantic import ValidationError

from inbox_digest.schemas import LedgerEntry
from inbox_digest.storage.atomic import atomic_write

logger = structlog.get_logger()

EMAILS_FILE = "emails.jsonl"
DEFAULT_MAX_ENTRIES = 10_000
MAX_AGE_SECONDS = 30 * 24 * 60 * 60


class EmailLog:
    """JSON-lines event ledger stored under the state directory."""

    def __init__(self, state_dir: str):
        self.file_path = Path(state_dir) / EMAILS_FILE
        self._file_lock = FileLock(str(self.file_path) + ".lock")

    def append(self, entry: LedgerEntry) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        line = entry.model_dump_json(by_alias=True) + "\n"
        with self._file_lock, open(self.file_path, "a", encoding="utf-8") as f:
            f.write(line)

    def read_all(self) -> List[LedgerEntry]:
        """Return every entry in file order; an absent file yields an empty list."""
        try:
            raw = self.file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []

        entries = []
        for line_no, line in enumerate(raw.splitlines(), 1):
            if not line.strip():
                continue
            try:
                entries.append(LedgerEntry.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("Skipping corrupt ledger line",
                               path=str(self.file_path),
                               line_no=line_no,
                               error=str(e)[:200])
        return entries

    def seen_ids(self) -> Set[str]:
        return {e.email.id for e in self.read_all()}

    def has_message_id(self, message_id: str) -> bool:
        return any(e.email.id == message_id for e in self.read_all())

    def rotate(self, max_entries: int = DEFAULT_MAX_ENTRIES, now: Optional[float] = None) -> int:
        """
        Trim the ledger when it grows past ``max_entries``.

        Keeps the newest ``max_entries`` entries that are also younger than
        30 days. Returns the number of entries removed (0 when under the limit).
        """
        if not self.file_path.exists():
            return 0

        with self._file_lock:
            entries = self.read_all()
            if len(entries) <= max_entries:
                return 0

            now = time.time() if now is None else now
            cutoff = now - MAX_AGE_SECONDS
            kept = [e for e in entries if e.timestamp >= cutoff][-max_entries:]
            removed = len(entries) - len(kept)

            content = "".join(e.model_dump_json(by_alias=True) + "\n" for e in kept)
            atomic_write(self.file_path, content)

        logger.info("Ledger rotated", kept=len(kept), removed=removed)
        return removed
