"""
Consumer-facing digest actions.

These are the entry points used by the CLI (and any agent tooling): they
validate input, enforce which lifecycle transitions are legal and persist the
worklist after a successful change. Each action re-reads the worklist under
the state lock, so a change made while a poll cycle runs is never lost.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from inbox_digest.digest.worklist import DigestStore
from inbox_digest.errors import InvalidRequestError
from inbox_digest.schemas import TERMINAL_STATUSES
from inbox_digest.utils.tz import format_age, utc_now

logger = structlog.get_logger()

DIGEST_QUERY_STATUSES = ("new", "surfaced", "deferred", "all")


@dataclass
class ActionResult:
    ok: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


def _not_found(message_id: str) -> ActionResult:
    return ActionResult(ok=False, message=f"Email {message_id} not found in digest.")


def get_digest(
    store: DigestStore,
    status: str = "new",
    account: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Return digest entries grouped by account and mark listed ``new`` ones surfaced.

    The summary is built before the status change, so entries read in this
    call still report ``new``.

    Raises:
        InvalidRequestError: If ``status`` is not one of new/surfaced/deferred/all
    """
    if status not in DIGEST_QUERY_STATUSES:
        raise InvalidRequestError(f"status must be one of: {', '.join(DIGEST_QUERY_STATUSES)}")

    now = now or utc_now()
    with store.locked():
        grouped = store.get_grouped_by_account(status)
        if account:
            grouped = {account: grouped.get(account, [])}

        summary: Dict[str, List[Dict[str, Any]]] = {}
        for acc, entries in grouped.items():
            summary[acc] = []
            for e in entries:
                item = {
                    "messageId": e.id,
                    "from": e.sender,
                    "subject": e.subject,
                    "importance": e.importance,
                    "reason": e.reason,
                    "status": e.status,
                    "date": e.date,
                    "age": format_age(e.first_seen_at, now),
                    "body": e.body,
                }
                if e.deferred_until:
                    item["deferredUntil"] = e.deferred_until
                summary[acc].append(item)

        surfaced = 0
        for entries in grouped.values():
            for entry in entries:
                if entry.status == "new":
                    store.mark_surfaced(entry.id, now=now)
                    surfaced += 1

        store.save()
    logger.info("Digest read", status=status, accounts=len(summary), surfaced=surfaced)
    return summary


def defer_email(store: DigestStore, message_id: str, minutes: float,
                now: Optional[datetime] = None) -> ActionResult:
    if not isinstance(message_id, str) or not message_id:
        return ActionResult(ok=False, message="Error: messageId must be a non-empty string.")
    if (isinstance(minutes, bool) or not isinstance(minutes, (int, float))
            or not math.isfinite(minutes) or minutes <= 0):
        return ActionResult(ok=False, message="Error: minutes must be a positive number.")

    with store.locked():
        entry = store.get(message_id)
        if entry is None:
            return _not_found(message_id)
        if entry.status in TERMINAL_STATUSES or entry.status == "deferred":
            return ActionResult(ok=False, message=f'Cannot defer: email is already "{entry.status}".')

        store.defer(message_id, minutes, now=now)
        store.save()
    logger.info("Email deferred", message_id=message_id, minutes=minutes)
    return ActionResult(
        ok=True,
        message=f'Deferred "{entry.subject}" - will re-surface in {minutes:g} minutes.',
        data={"deferredUntil": entry.deferred_until},
    )


def dismiss_email(store: DigestStore, message_id: str, reason: Optional[str] = None,
                  now: Optional[datetime] = None) -> ActionResult:
    with store.locked():
        entry = store.get(message_id)
        if entry is None:
            return _not_found(message_id)
        if entry.status in TERMINAL_STATUSES:
            return ActionResult(ok=False, message=f'Cannot dismiss: email is already "{entry.status}".')

        store.dismiss(message_id, reason, now=now)
        store.save()
    logger.info("Email dismissed", message_id=message_id, has_reason=bool(reason))
    return ActionResult(
        ok=True,
        message=f'Dismissed "{entry.subject}" from {entry.sender}. It won\'t be flagged again.',
    )


def mark_email_handled(store: DigestStore, message_id: str,
                       now: Optional[datetime] = None) -> ActionResult:
    with store.locked():
        entry = store.get(message_id)
        if entry is None:
            return _not_found(message_id)
        if entry.status in TERMINAL_STATUSES:
            return ActionResult(ok=False, message=f'Cannot mark handled: email is already "{entry.status}".')

        store.mark_handled(message_id, now=now)
        store.save()
    logger.info("Email marked handled", message_id=message_id)
    return ActionResult(ok=True, message=f'Marked "{entry.subject}" from {entry.sender} as handled.')
