"""
Per-account sync checkpoints (state.json).
"""
import json
from pathlib import Path
from typing import Dict, Optional

import structlog
from pydantic import ValidationError

from inbox_digest.schemas import CheckpointRecord, CheckpointState
from inbox_digest.storage.atomic import atomic_write
from inbox_digest.utils.tz import to_iso, utc_now

logger = structlog.get_logger()

STATE_FILE = "state.json"


class CheckpointStore:
    """Cursor and consecutive-failure tracking for every source account."""

    def __init__(self, state_dir: str):
        self.file_path = Path(state_dir) / STATE_FILE
        self.state = CheckpointState()

    def load(self) -> None:
        try:
            raw = self.file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self.state = CheckpointState()
            return
        try:
            self.state = CheckpointState.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Checkpoint file unreadable, starting fresh",
                           path=str(self.file_path), error=str(e)[:200])
            self.state = CheckpointState()

    def save(self) -> None:
        payload = self.state.model_dump(mode="json", by_alias=True)
        atomic_write(self.file_path, json.dumps(payload, indent=2) + "\n")

    def get(self, account: str) -> Optional[CheckpointRecord]:
        return self.state.accounts.get(account)

    @property
    def accounts(self) -> Dict[str, CheckpointRecord]:
        return self.state.accounts

    def record_success(self, account: str, cursor: str) -> None:
        """Replace the cursor, stamp the poll time and reset the failure counter."""
        self.state.accounts[account] = CheckpointRecord(
            history_id=cursor,
            last_poll_at=to_iso(utc_now()),
            consecutive_failures=0,
        )

    def record_failure(self, account: str) -> int:
        """Increment the failure counter, keeping the last known-good cursor."""
        existing = self.state.accounts.get(account)
        failures = (existing.consecutive_failures if existing else 0) + 1
        self.state.accounts[account] = CheckpointRecord(
            history_id=existing.history_id if existing else "",
            last_poll_at=existing.last_poll_at if existing else "",
            consecutive_failures=failures,
        )
        return failures

    def mark_classifier_run(self) -> None:
        self.state.last_classifier_run_at = to_iso(utc_now())
