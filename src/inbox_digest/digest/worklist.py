"""
Digest worklist state machine (digest.json).

Lifecycle::

    new --read--> surfaced --resolve--> handled
    new/surfaced --dismiss--> dismissed
    new/surfaced --defer N min--> deferred --expiry--> new
    surfaced/deferred --owner reply--> handled

The store performs raw mutations only. Rejecting illegal transitions (e.g.
deferring an entry that is already deferred) is the job of
:mod:`inbox_digest.digest.actions`.
"""
import json
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

import structlog
from filelock import FileLock
from pydantic import ValidationError

from inbox_digest.schemas import ACTIVE_STATUSES, DigestEntry, DigestState, DigestStatus
from inbox_digest.storage.atomic import atomic_write
from inbox_digest.utils.tz import parse_iso, to_iso, utc_now

logger = structlog.get_logger()

DIGEST_FILE = "digest.json"

StatusFilter = Union[DigestStatus, str]


class DigestStore:
    """
    Owns the in-memory worklist and its on-disk snapshot.

    Mutations and saves share one re-entrant lock, so a consumer action that
    saves while a poll cycle is persisting waits for the in-flight write and
    then writes its own complete snapshot.

    Read-modify-write sequences go through :meth:`locked`, which also holds a
    lock file next to the snapshot so that a CLI process and the daemon never
    overwrite each other.
    """

    def __init__(self, state_dir: str):
        self.file_path = Path(state_dir) / DIGEST_FILE
        self.state = DigestState()
        self._lock = threading.RLock()
        self._file_lock = FileLock(str(self.file_path) + ".lock")

    def load(self) -> None:
        with self._lock:
            try:
                raw = self.file_path.read_text(encoding="utf-8")
            except FileNotFoundError:
                self.state = DigestState()
                return
            try:
                self.state = DigestState.model_validate(json.loads(raw))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("Digest file unreadable, starting empty",
                               path=str(self.file_path), error=str(e)[:200])
                self.state = DigestState()

    def save(self) -> None:
        with self._lock:
            payload = self.state.model_dump(mode="json", by_alias=True, exclude_none=True)
            atomic_write(self.file_path, json.dumps(payload, indent=2) + "\n")
            logger.debug("Digest saved", entries=len(self.state.entries))

    @contextmanager
    def locked(self) -> Iterator["DigestStore"]:
        """Hold the state lock and re-read the snapshot; callers save before leaving."""
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, self._file_lock:
            self.load()
            yield self

    # Queries

    def add(self, entry: DigestEntry) -> None:
        with self._lock:
            self.state.entries[entry.id] = entry

    def get(self, entry_id: str) -> Optional[DigestEntry]:
        return self.state.entries.get(entry_id)

    def has(self, entry_id: str) -> bool:
        return entry_id in self.state.entries

    def get_by_status(self, status: StatusFilter) -> List[DigestEntry]:
        with self._lock:
            entries = list(self.state.entries.values())
        if status == "all":
            return entries
        return [e for e in entries if e.status == status]

    def get_grouped_by_account(self, status: StatusFilter) -> Dict[str, List[DigestEntry]]:
        grouped: Dict[str, List[DigestEntry]] = defaultdict(list)
        for entry in self.get_by_status(status):
            grouped[entry.account].append(entry)
        return dict(grouped)

    def get_active_entries(self) -> List[DigestEntry]:
        """Entries eligible for automatic resolution (surfaced or deferred)."""
        with self._lock:
            return [e for e in self.state.entries.values() if e.status in ACTIVE_STATUSES]

    # Transitions

    def mark_surfaced(self, entry_id: str, now: Optional[datetime] = None) -> None:
        with self._lock:
            entry = self.state.entries.get(entry_id)
            if entry:
                entry.status = "surfaced"
                entry.surfaced_at = to_iso(now or utc_now())

    def mark_handled(self, entry_id: str, now: Optional[datetime] = None) -> None:
        with self._lock:
            entry = self.state.entries.get(entry_id)
            if entry:
                entry.status = "handled"
                entry.resolved_at = to_iso(now or utc_now())

    def defer(self, entry_id: str, minutes: float, now: Optional[datetime] = None) -> None:
        with self._lock:
            entry = self.state.entries.get(entry_id)
            if entry:
                entry.status = "deferred"
                entry.deferred_until = to_iso((now or utc_now()) + timedelta(minutes=minutes))

    def dismiss(self, entry_id: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> None:
        with self._lock:
            entry = self.state.entries.get(entry_id)
            if entry:
                entry.status = "dismissed"
                entry.resolved_at = to_iso(now or utc_now())
                if reason:
                    entry.dismiss_reason = reason

    def expire_deferrals(self, now: Optional[datetime] = None) -> List[DigestEntry]:
        """Move every deferred entry whose deadline has passed back to ``new``."""
        now = now or utc_now()
        expired = []
        with self._lock:
            for entry in self.state.entries.values():
                if entry.status != "deferred" or not entry.deferred_until:
                    continue
                until = parse_iso(entry.deferred_until)
                if until is not None and until <= now:
                    entry.status = "new"
                    entry.deferred_until = None
                    expired.append(entry)
        return expired
