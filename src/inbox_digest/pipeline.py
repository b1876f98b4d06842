"""
One poll cycle: sync every account, classify what is new, fan out the verdicts.

Collaborators are passed in through :class:`PipelineDeps` and only need to
satisfy the small protocols below, so tests can drive a full cycle with
in-memory fakes.
"""
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, ContextManager, Dict, List, Optional, Protocol, Sequence, Set, Tuple

import structlog

from inbox_digest.ingest.sync import SyncResult
from inbox_digest.notify import format_failure_alert, format_push_message
from inbox_digest.schemas import (
    ACTIVE_STATUSES,
    DigestEntry,
    LedgerEntry,
    MessageRecord,
    Verdict,
)
from inbox_digest.utils.tz import to_iso, utc_now

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 10
DIGEST_TIERS = ("high", "medium")


class SourceSync(Protocol):
    def sync_account(self, account: str, cursor: Optional[str],
                     seen_ids: Optional[Set[str]] = None) -> SyncResult: ...

    def check_thread_for_reply(self, thread_id: str, account: str) -> bool: ...


class CheckpointSink(Protocol):
    def load(self) -> None: ...

    def save(self) -> None: ...

    def get(self, account: str): ...

    def record_success(self, account: str, cursor: str) -> None: ...

    def record_failure(self, account: str) -> int: ...

    def mark_classifier_run(self) -> None: ...


class JudgmentBatcher(Protocol):
    def classify(self, emails: Sequence[MessageRecord]) -> List[Verdict]: ...


class Worklist(Protocol):
    def locked(self) -> ContextManager: ...

    def save(self) -> None: ...

    def add(self, entry: DigestEntry) -> None: ...

    def get(self, entry_id: str) -> Optional[DigestEntry]: ...

    def has(self, entry_id: str) -> bool: ...

    def get_active_entries(self) -> List[DigestEntry]: ...

    def mark_handled(self, entry_id: str, now: Optional[datetime] = None) -> None: ...

    def expire_deferrals(self, now: Optional[datetime] = None) -> List[DigestEntry]: ...


class Ledger(Protocol):
    def append(self, entry: LedgerEntry) -> None: ...

    def seen_ids(self) -> Set[str]: ...


class PushNotifier(Protocol):
    def send(self, message: str) -> bool: ...


@dataclass
class PipelineDeps:
    sync: SourceSync
    checkpoints: CheckpointSink
    classifier: JudgmentBatcher
    worklist: Worklist
    ledger: Ledger
    notifier: PushNotifier
    accounts: List[str]
    alert_threshold: int = 3
    batch_size: int = DEFAULT_BATCH_SIZE
    max_workers: int = 4
    metrics: Optional[object] = None
    now_fn: Callable[[], datetime] = utc_now


@dataclass
class CycleReport:
    fetched: int = 0
    new: int = 0
    classified: int = 0
    added: int = 0
    pushed: int = 0
    expired: int = 0
    auto_resolved: int = 0
    failed_accounts: List[str] = field(default_factory=list)


def _find_replied(deps: PipelineDeps) -> List[str]:
    """Ids of surfaced/deferred entries whose thread now has an owner reply."""
    replied = []
    for entry in deps.worklist.get_active_entries():
        try:
            if deps.sync.check_thread_for_reply(entry.thread_id, entry.account):
                replied.append(entry.id)
        except Exception as e:
            logger.warning("Reply check failed", message_id=entry.id,
                           account=entry.account, error=str(e)[:200])
    return replied


def _fetch_all(deps: PipelineDeps, seen: Set[str]) -> Dict[str, object]:
    """Run every account's sync in parallel; values are results or the raised exception."""
    outcomes: Dict[str, object] = {}
    if not deps.accounts:
        return outcomes

    def cursor_for(account: str) -> Optional[str]:
        record = deps.checkpoints.get(account)
        return record.history_id if record and record.history_id else None

    workers = max(1, min(deps.max_workers, len(deps.accounts)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {
            account: pool.submit(deps.sync.sync_account, account, cursor_for(account), set(seen))
            for account in deps.accounts
        }
        for account in deps.accounts:
            try:
                outcomes[account] = futures[account].result()
            except Exception as e:
                outcomes[account] = e
    return outcomes


def _classify(deps: PipelineDeps, emails: List[MessageRecord]) -> List[Verdict]:
    verdicts: List[Verdict] = []
    size = max(1, deps.batch_size)
    for start in range(0, len(emails), size):
        verdicts.extend(deps.classifier.classify(emails[start:start + size]))
    return verdicts


def _to_digest_entry(email: MessageRecord, verdict: Verdict, first_seen_at: str) -> DigestEntry:
    return DigestEntry(
        id=email.id,
        thread_id=email.thread_id,
        account=email.account,
        sender=email.sender,
        subject=email.subject,
        date=email.date,
        body=email.body,
        importance=verdict.importance,
        reason=verdict.reason,
        notify=verdict.notify,
        status="new",
        first_seen_at=first_seen_at,
    )


def _commit_worklist(deps: PipelineDeps, replied: List[str], entries: List[DigestEntry],
                     now: datetime) -> Tuple[int, int]:
    """
    Apply this cycle's worklist changes on a fresh read taken under the state lock.

    Consumer actions saved while the cycle was syncing are kept: an entry is
    only auto-resolved if it is still active, and known ids are never re-added.
    Returns ``(auto_resolved, added)``.
    """
    resolved = added = 0
    with deps.worklist.locked():
        for entry_id in replied:
            current = deps.worklist.get(entry_id)
            if current is not None and current.status in ACTIVE_STATUSES:
                deps.worklist.mark_handled(entry_id, now=now)
                resolved += 1
        for entry in entries:
            if not deps.worklist.has(entry.id):
                deps.worklist.add(entry)
                added += 1
        deps.worklist.save()
    return resolved, added


def run_cycle(deps: PipelineDeps) -> CycleReport:
    """
    Execute one poll cycle.

    Sync failures are confined to their account and classification never
    raises; errors from persisting state propagate to the caller. The
    worklist lock is only held while expiring deferrals and while committing
    results, never across sync or classification.
    """
    report = CycleReport()
    started = time.time()
    now = deps.now_fn()

    deps.checkpoints.load()

    with deps.worklist.locked():
        expired = deps.worklist.expire_deferrals(now=now)
        if expired:
            deps.worklist.save()
    report.expired = len(expired)
    if expired:
        logger.info("Deferrals expired", count=report.expired)

    replied = _find_replied(deps)

    seen = deps.ledger.seen_ids()
    outcomes = _fetch_all(deps, seen)

    new_emails: List[MessageRecord] = []
    for account in deps.accounts:
        outcome = outcomes[account]
        if isinstance(outcome, Exception):
            failures = deps.checkpoints.record_failure(account)
            report.failed_accounts.append(account)
            logger.error("Account sync failed",
                         account=account,
                         consecutive_failures=failures,
                         error=str(outcome)[:200],
                         error_type=type(outcome).__name__)
            if deps.metrics:
                deps.metrics.record_account_failure(account)
            if failures >= deps.alert_threshold:
                deps.notifier.send(format_failure_alert(account, failures))
            continue

        report.fetched += outcome.fetched
        for email in outcome.messages:
            if email.id in seen or deps.worklist.has(email.id):
                continue
            seen.add(email.id)
            new_emails.append(email)

        prior = deps.checkpoints.get(account)
        cursor = outcome.cursor or (prior.history_id if prior else "")
        deps.checkpoints.record_success(account, cursor)

    report.new = len(new_emails)
    if deps.metrics:
        deps.metrics.record_emails(report.fetched, "fetched")
        deps.metrics.record_emails(report.new, "new")

    if not new_emails:
        report.auto_resolved, _ = _commit_worklist(deps, replied, [], now)
        deps.checkpoints.save()
        logger.info("Cycle completed, nothing new",
                    expired=report.expired,
                    auto_resolved=report.auto_resolved,
                    failed_accounts=len(report.failed_accounts),
                    duration_s=round(time.time() - started, 3))
        return report

    verdicts = _classify(deps, new_emails)
    report.classified = len(verdicts)

    first_seen_at = to_iso(now)
    digest_entries: List[DigestEntry] = []
    for email, verdict in zip(new_emails, verdicts):
        deps.ledger.append(LedgerEntry(
            email=email,
            importance=verdict.importance,
            reason=verdict.reason,
            notify=verdict.notify,
            timestamp=time.time(),
        ))

        if verdict.importance in DIGEST_TIERS:
            digest_entries.append(_to_digest_entry(email, verdict, first_seen_at))

        if verdict.importance == "high" and verdict.notify:
            if deps.notifier.send(format_push_message(email, verdict)):
                report.pushed += 1

    deps.checkpoints.mark_classifier_run()
    report.auto_resolved, report.added = _commit_worklist(deps, replied, digest_entries, now)
    deps.checkpoints.save()

    logger.info("Cycle completed",
                fetched=report.fetched,
                new=report.new,
                classified=report.classified,
                added=report.added,
                pushed=report.pushed,
                expired=report.expired,
                auto_resolved=report.auto_resolved,
                failed_accounts=len(report.failed_accounts),
                duration_s=round(time.time() - started, 3))
    return report
