"""
Plain-text status view of the worklist, one block per account.
"""
from datetime import datetime
from typing import List, Optional

from inbox_digest.digest.worklist import DigestStore
from inbox_digest.schemas import DigestEntry
from inbox_digest.utils.tz import format_age, parse_iso, utc_now

RULE = "─" * 40


def _handled_today(entries: List[DigestEntry], now: datetime) -> List[DigestEntry]:
    today = now.date()
    result = []
    for e in entries:
        if e.status != "handled" or not e.resolved_at:
            continue
        resolved = parse_iso(e.resolved_at)
        if resolved is not None and resolved.date() == today:
            result.append(e)
    return result


def format_status(store: DigestStore, now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    lines = ["Email Digest", RULE]
    has_content = False

    for account, entries in store.get_grouped_by_account("all").items():
        new_entries = [e for e in entries if e.status == "new"]
        surfaced = [e for e in entries if e.status == "surfaced"]
        deferred = [e for e in entries if e.status == "deferred"]
        handled_today = _handled_today(entries, now)

        active = new_entries + surfaced
        if not active and not deferred:
            lines.append(f"\n{account} — nothing new")
            continue

        has_content = True
        lines.append(f"\n{account} ({len(new_entries)} new)")
        for entry in active:
            tag = "[HIGH]" if entry.importance == "high" else "[MED] "
            age = format_age(entry.first_seen_at, now)
            lines.append(f"  {tag} {entry.subject} from {entry.sender} — {age}")

        if deferred:
            lines.append(f"  {len(deferred)} deferred")
        if handled_today:
            lines.append(f"  {len(handled_today)} handled today")

    if not has_content:
        lines.append("\nNo pending emails across all accounts.")

    return "\n".join(lines)
