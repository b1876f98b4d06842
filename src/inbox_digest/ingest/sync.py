"""
Incremental per-account synchronization.

With a stored cursor the gateway is asked for changes since that cursor; if
that request fails the account falls back to a bounded rescan of recent mail.
Messages whose thread already contains a reply from one of the owner's
accounts are treated as handled and dropped.
"""
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

import structlog

from inbox_digest.errors import GatewayError, SyncError
from inbox_digest.ingest.gog import GogClient, RawMessage, parse_history, parse_messages, parse_thread
from inbox_digest.normalize import DEFAULT_MAX_LENGTH, clean_body
from inbox_digest.schemas import MessageRecord
from inbox_digest.utils.tz import to_iso, utc_now

logger = structlog.get_logger()

ANGLE_ADDRESS_RE = re.compile(r'<([^>]+)>')


def _text(value) -> str:
    return value if isinstance(value, str) else ("" if value is None else str(value))


def extract_address(from_field: str) -> str:
    """Bare lower-cased address from ``Name <addr>`` or a plain address."""
    match = ANGLE_ADDRESS_RE.search(from_field)
    return (match.group(1) if match else from_field).lower().strip()


def detect_owner_reply(thread: dict, owner_accounts: Iterable[str]) -> bool:
    """True if any message in the thread was sent from an owner account."""
    owners = {a.lower().strip() for a in owner_accounts}
    for msg in thread.get("messages", []):
        if not isinstance(msg, dict):
            continue
        sender = msg.get("from")
        if isinstance(sender, str) and sender and extract_address(sender) in owners:
            return True
    return False


@dataclass
class SyncResult:
    messages: List[MessageRecord] = field(default_factory=list)
    cursor: Optional[str] = None
    fetched: int = 0
    dropped_replied: int = 0
    used_rescan: bool = False


class Synchronizer:
    """Fetches new, still-unanswered messages for one account at a time."""

    def __init__(
        self,
        client: GogClient,
        owner_accounts: List[str],
        rescan_days: int = 7,
        body_max_chars: int = DEFAULT_MAX_LENGTH,
        metrics=None,
    ):
        self.client = client
        self.owner_accounts = list(owner_accounts)
        self.rescan_days = rescan_days
        self.body_max_chars = body_max_chars
        self.metrics = metrics

    def _rescan(self, account: str) -> List[RawMessage]:
        try:
            stdout = self.client.search_recent(account, self.rescan_days)
        except GatewayError as e:
            raise SyncError(account, f"rescan failed: {e}") from e
        return parse_messages(stdout)

    def _fetch_thread(self, account: str, thread_id: str) -> Optional[dict]:
        if not thread_id:
            return None
        try:
            return parse_thread(self.client.thread(account, thread_id))
        except GatewayError as e:
            logger.info("Thread fetch failed, reply detection skipped",
                        account=account, thread_id=thread_id, error=str(e)[:200])
            return None

    def sync_account(self, account: str, cursor: Optional[str],
                     seen_ids: Optional[Set[str]] = None) -> SyncResult:
        """
        Fetch messages for ``account`` that are neither seen nor already answered.

        Returns a :class:`SyncResult` whose ``cursor`` is only set when the
        gateway reported a new one; a rescan never invents a cursor.

        Raises:
            SyncError: If no listing could be fetched for the account
        """
        seen_ids = seen_ids or set()
        result = SyncResult()

        if cursor:
            try:
                raw, result.cursor = parse_history(self.client.history(account, cursor))
            except GatewayError as e:
                logger.info("History fetch failed, falling back to rescan",
                            account=account, rescan_days=self.rescan_days, error=str(e)[:200])
                raw = self._rescan(account)
                result.used_rescan = True
        else:
            raw = self._rescan(account)
            result.used_rescan = True

        result.fetched = len(raw)

        for msg in raw:
            if str(msg["id"]) in seen_ids:
                continue

            thread = self._fetch_thread(account, _text(msg.get("threadId")))
            if thread and detect_owner_reply(thread, self.owner_accounts):
                result.dropped_replied += 1
                continue

            result.messages.append(self._to_record(msg, account, thread))

        logger.info("Account synchronized",
                    account=account,
                    fetched=result.fetched,
                    new=len(result.messages),
                    dropped_replied=result.dropped_replied,
                    rescan=result.used_rescan)
        return result

    def _to_record(self, msg: RawMessage, account: str, thread: Optional[dict]) -> MessageRecord:
        labels = msg.get("labelIds")
        return MessageRecord(
            id=str(msg["id"]),
            thread_id=_text(msg.get("threadId")),
            account=account,
            sender=_text(msg.get("from")) or "unknown",
            recipient=_text(msg.get("to")) or account,
            subject=_text(msg.get("subject")) or "(no subject)",
            date=_text(msg.get("date")) or to_iso(utc_now()),
            body=clean_body(msg.get("body"), self.body_max_chars, metrics=self.metrics),
            thread_length=len(thread["messages"]) if thread else 1,
            has_attachments=isinstance(labels, list) and "ATTACHMENT" in labels,
        )

    def check_thread_for_reply(self, thread_id: str, account: str) -> bool:
        """Has the owner replied in this thread? False on any fetch or parse failure."""
        thread = self._fetch_thread(account, thread_id)
        if thread is None:
            return False
        return detect_owner_reply(thread, self.owner_accounts)
