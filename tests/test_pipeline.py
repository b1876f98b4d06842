"""
Test the poll cycle end to end with real stores and fake collaborators.
"""
import json
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from inbox_digest.digest.actions import dismiss_email
from inbox_digest.digest.worklist import DigestStore
from inbox_digest.errors import GatewayError, SyncError
from inbox_digest.ingest.sync import Synchronizer, SyncResult
from inbox_digest.pipeline import PipelineDeps, run_cycle
from inbox_digest.schemas import Verdict
from inbox_digest.storage.checkpoints import CheckpointStore
from inbox_digest.storage.ledger import EmailLog

NOW = datetime(2026, 2, 26, 12, 0, 0, tzinfo=timezone.utc)
ACCOUNT = "owner@example.com"


class FakeSync:
    """Returns canned results per account; raises for accounts listed in ``failing``."""

    def __init__(self, results=None, failing=(), replied=()):
        self.results = results or {}
        self.failing = set(failing)
        self.replied = set(replied)
        self.calls = []

    def sync_account(self, account, cursor, seen_ids=None):
        self.calls.append((account, cursor))
        if account in self.failing:
            raise SyncError(account, "auth expired")
        return self.results.get(account, SyncResult())

    def check_thread_for_reply(self, thread_id, account):
        return thread_id in self.replied


class FakeClassifier:
    """Verdicts from a {id: (importance, notify)} table; unknown ids are low."""

    def __init__(self, table=None):
        self.table = table or {}
        self.batches = []

    def classify(self, emails):
        self.batches.append([e.id for e in emails])
        verdicts = []
        for e in emails:
            importance, notify = self.table.get(e.id, ("low", False))
            verdicts.append(Verdict(id=e.id, importance=importance, reason="test", notify=notify))
        return verdicts


@pytest.fixture
def notifier():
    return Mock(send=Mock(return_value=True))


def _deps(tmp_path, sync, classifier, notifier, accounts=(ACCOUNT,), **kwargs):
    state_dir = str(tmp_path)
    return PipelineDeps(
        sync=sync,
        checkpoints=CheckpointStore(state_dir),
        classifier=classifier,
        worklist=DigestStore(state_dir),
        ledger=EmailLog(state_dir),
        notifier=notifier,
        accounts=list(accounts),
        now_fn=lambda: NOW,
        **kwargs,
    )


def _reload_worklist(tmp_path):
    store = DigestStore(str(tmp_path))
    store.load()
    return store


def _reload_checkpoints(tmp_path):
    store = CheckpointStore(str(tmp_path))
    store.load()
    return store


def test_fan_out_by_importance(tmp_path, make_record, notifier):
    sync = FakeSync({ACCOUNT: SyncResult(
        messages=[make_record("hi"), make_record("quiet"), make_record("med"), make_record("low")],
        cursor="H2", fetched=4,
    )})
    classifier = FakeClassifier({
        "hi": ("high", True),
        "quiet": ("high", False),
        "med": ("medium", False),
        "low": ("low", False),
    })

    report = run_cycle(_deps(tmp_path, sync, classifier, notifier))

    assert report.new == 4
    assert report.added == 3
    assert report.pushed == 1
    worklist = _reload_worklist(tmp_path)
    assert {e.id for e in worklist.get_by_status("new")} == {"hi", "quiet", "med"}
    assert worklist.get("med").first_seen_at == "2026-02-26T12:00:00.000Z"
    assert EmailLog(str(tmp_path)).seen_ids() == {"hi", "quiet", "med", "low"}
    notifier.send.assert_called_once()
    assert "MessageID: hi" in notifier.send.call_args[0][0]
    checkpoints = _reload_checkpoints(tmp_path)
    assert checkpoints.get(ACCOUNT).history_id == "H2"
    assert checkpoints.state.last_classifier_run_at


def test_cursor_fallback_keeps_prior_cursor(tmp_path, notifier):
    """History fails, rescan finds m1 (medium): cursor stays H1, no push."""
    seed = CheckpointStore(str(tmp_path))
    seed.record_success(ACCOUNT, "H1")
    seed.save()

    client = Mock()
    client.history.side_effect = GatewayError("history too old")
    client.search_recent.return_value = json.dumps([
        {"id": "m1", "threadId": "t1", "from": "Bob <bob@corp.com>", "subject": "FYI"},
    ])
    client.thread.return_value = json.dumps({"id": "t1", "messages": [{"from": "bob@corp.com"}]})
    classifier = FakeClassifier({"m1": ("medium", False)})

    run_cycle(_deps(tmp_path, Synchronizer(client, [ACCOUNT]), classifier, notifier))

    client.history.assert_called_once_with(ACCOUNT, "H1")
    assert _reload_checkpoints(tmp_path).get(ACCOUNT).history_id == "H1"
    entry = _reload_worklist(tmp_path).get("m1")
    assert entry.importance == "medium"
    assert entry.status == "new"
    notifier.send.assert_not_called()
    assert [e.email.id for e in EmailLog(str(tmp_path)).read_all()] == ["m1"]


def test_owner_replied_message_is_never_classified(tmp_path, notifier):
    client = Mock()
    client.search_recent.return_value = json.dumps([{"id": "m1", "threadId": "t1"}])
    client.thread.return_value = json.dumps({"id": "t1", "messages": [
        {"from": "client@corp.com"}, {"from": f"Me <{ACCOUNT}>"},
    ]})
    classifier = FakeClassifier()

    report = run_cycle(_deps(tmp_path, Synchronizer(client, [ACCOUNT]), classifier, notifier))

    assert report.new == 0
    assert classifier.batches == []
    assert EmailLog(str(tmp_path)).read_all() == []
    assert _reload_worklist(tmp_path).get_by_status("all") == []


def test_failure_alerts_every_cycle_from_threshold(tmp_path, notifier):
    deps = _deps(tmp_path, FakeSync(failing={ACCOUNT}), FakeClassifier(), notifier, alert_threshold=3)

    alerts_per_cycle = []
    for _ in range(5):
        before = notifier.send.call_count
        report = run_cycle(deps)
        alerts_per_cycle.append(notifier.send.call_count - before)
        assert report.failed_accounts == [ACCOUNT]

    assert alerts_per_cycle == [0, 0, 1, 1, 1]
    assert "5 times in a row" in notifier.send.call_args[0][0]
    assert _reload_checkpoints(tmp_path).get(ACCOUNT).consecutive_failures == 5


def test_success_resets_failure_count(tmp_path, notifier):
    sync = FakeSync(failing={ACCOUNT})
    deps = _deps(tmp_path, sync, FakeClassifier(), notifier)
    run_cycle(deps)
    run_cycle(deps)

    sync.failing.clear()
    run_cycle(deps)

    assert _reload_checkpoints(tmp_path).get(ACCOUNT).consecutive_failures == 0


def test_one_account_failure_does_not_affect_others(tmp_path, make_record, notifier):
    other = "work@example.com"
    sync = FakeSync(
        {other: SyncResult(messages=[make_record("m1", account=other)], cursor="W2", fetched=1)},
        failing={ACCOUNT},
    )
    classifier = FakeClassifier({"m1": ("medium", False)})

    report = run_cycle(_deps(tmp_path, sync, classifier, notifier, accounts=(ACCOUNT, other)))

    assert report.failed_accounts == [ACCOUNT]
    assert report.added == 1
    checkpoints = _reload_checkpoints(tmp_path)
    assert checkpoints.get(other).history_id == "W2"
    assert checkpoints.get(ACCOUNT).consecutive_failures == 1


def test_ledgered_message_is_not_reclassified(tmp_path, make_record, notifier):
    sync = FakeSync({ACCOUNT: SyncResult(messages=[make_record("m1")], fetched=1)})
    classifier = FakeClassifier({"m1": ("high", True)})
    deps = _deps(tmp_path, sync, classifier, notifier)

    run_cycle(deps)
    report = run_cycle(deps)

    assert classifier.batches == [["m1"]]
    assert report.new == 0
    assert notifier.send.call_count == 1
    assert len(EmailLog(str(tmp_path)).read_all()) == 1


def test_duplicate_across_accounts_classified_once(tmp_path, make_record, notifier):
    other = "work@example.com"
    sync = FakeSync({
        ACCOUNT: SyncResult(messages=[make_record("m1")], fetched=1),
        other: SyncResult(messages=[make_record("m1", account=other)], fetched=1),
    })
    classifier = FakeClassifier()

    run_cycle(_deps(tmp_path, sync, classifier, notifier, accounts=(ACCOUNT, other)))

    assert classifier.batches == [["m1"]]


def test_classification_is_batched(tmp_path, make_record, notifier):
    records = [make_record(f"m{i:02d}") for i in range(12)]
    sync = FakeSync({ACCOUNT: SyncResult(messages=records, fetched=12)})
    classifier = FakeClassifier()

    report = run_cycle(_deps(tmp_path, sync, classifier, notifier))

    assert [len(b) for b in classifier.batches] == [10, 2]
    assert report.classified == 12


def test_expired_deferral_returns_to_new(tmp_path, make_entry, notifier):
    seed = DigestStore(str(tmp_path))
    seed.add(make_entry("m1", status="deferred", deferred_until="2026-02-26T11:00:00.000Z"))
    seed.add(make_entry("m2", status="deferred", deferred_until="2026-02-26T13:00:00.000Z"))
    seed.save()

    report = run_cycle(_deps(tmp_path, FakeSync(), FakeClassifier(), notifier))

    assert report.expired == 1
    worklist = _reload_worklist(tmp_path)
    assert worklist.get("m1").status == "new"
    assert worklist.get("m1").deferred_until is None
    assert worklist.get("m2").status == "deferred"


def test_owner_reply_resolves_active_entries(tmp_path, make_entry, notifier):
    seed = DigestStore(str(tmp_path))
    seed.add(make_entry("m1", thread_id="t1", status="surfaced"))
    seed.add(make_entry("m2", thread_id="t2", status="surfaced"))
    seed.add(make_entry("m3", thread_id="t1", status="new"))
    seed.save()

    report = run_cycle(_deps(tmp_path, FakeSync(replied={"t1"}), FakeClassifier(), notifier))

    assert report.auto_resolved == 1
    worklist = _reload_worklist(tmp_path)
    assert worklist.get("m1").status == "handled"
    assert worklist.get("m1").resolved_at == "2026-02-26T12:00:00.000Z"
    assert worklist.get("m2").status == "surfaced"
    assert worklist.get("m3").status == "new"


def test_reply_check_errors_are_ignored(tmp_path, make_entry, notifier):
    seed = DigestStore(str(tmp_path))
    seed.add(make_entry("m1", status="surfaced"))
    seed.save()
    sync = FakeSync()
    sync.check_thread_for_reply = Mock(side_effect=RuntimeError("boom"))

    report = run_cycle(_deps(tmp_path, sync, FakeClassifier(), notifier))

    assert report.auto_resolved == 0
    assert _reload_worklist(tmp_path).get("m1").status == "surfaced"


def test_cursor_passed_from_checkpoint(tmp_path, notifier):
    seed = CheckpointStore(str(tmp_path))
    seed.record_success(ACCOUNT, "H7")
    seed.save()
    sync = FakeSync()

    run_cycle(_deps(tmp_path, sync, FakeClassifier(), notifier))

    assert sync.calls == [(ACCOUNT, "H7")]


def test_persistence_error_propagates(tmp_path, make_record, notifier):
    sync = FakeSync({ACCOUNT: SyncResult(messages=[make_record("m1")], fetched=1)})
    deps = _deps(tmp_path, sync, FakeClassifier({"m1": ("medium", False)}), notifier)
    deps.worklist.save = Mock(side_effect=OSError("read-only file system"))

    with pytest.raises(OSError, match="read-only"):
        run_cycle(deps)


def test_metrics_recorded(tmp_path, make_record, notifier):
    metrics = Mock()
    sync = FakeSync({ACCOUNT: SyncResult(messages=[make_record("m1")], fetched=3)},
                    failing={"other@example.com"})

    run_cycle(_deps(tmp_path, sync, FakeClassifier(), notifier,
                    accounts=(ACCOUNT, "other@example.com"), metrics=metrics))

    metrics.record_emails.assert_any_call(3, "fetched")
    metrics.record_emails.assert_any_call(1, "new")
    metrics.record_account_failure.assert_called_once_with("other@example.com")


def test_plain_text_message_is_ingested(tmp_path, notifier):
    client = Mock()
    client.search_recent.return_value = json.dumps([
        {"id": "m1", "threadId": "t1", "from": "Bob <bob@corp.com>", "subject": "Invoice",
         "body": "Please pay the invoice by Friday."},
    ])
    client.thread.return_value = json.dumps({"id": "t1", "messages": [{"from": "bob@corp.com"}]})
    classifier = FakeClassifier({"m1": ("medium", False)})

    report = run_cycle(_deps(tmp_path, Synchronizer(client, [ACCOUNT]), classifier, notifier))

    assert report.failed_accounts == []
    assert report.new == 1
    assert _reload_worklist(tmp_path).get("m1").body == "Please pay the invoice by Friday."


class ConsumerDuringSync(FakeSync):
    """Runs a consumer action against its own store while the cycle is syncing."""

    def __init__(self, state_dir, action, **kwargs):
        super().__init__(**kwargs)
        self.state_dir = state_dir
        self.action = action
        self.outcomes = []

    def sync_account(self, account, cursor, seen_ids=None):
        consumer = DigestStore(self.state_dir)
        consumer.load()
        self.outcomes.append(self.action(consumer))
        return super().sync_account(account, cursor, seen_ids)


def test_consumer_action_during_cycle_is_kept(tmp_path, make_entry, make_record, notifier):
    seed = DigestStore(str(tmp_path))
    seed.add(make_entry("m1"))
    seed.save()
    sync = ConsumerDuringSync(
        str(tmp_path),
        lambda store: dismiss_email(store, "m1", reason="newsletter"),
        results={ACCOUNT: SyncResult(messages=[make_record("m2")], fetched=1)},
    )
    classifier = FakeClassifier({"m2": ("medium", False)})

    report = run_cycle(_deps(tmp_path, sync, classifier, notifier))

    assert sync.outcomes[0].ok
    assert report.added == 1
    worklist = _reload_worklist(tmp_path)
    assert worklist.get("m1").status == "dismissed"
    assert worklist.get("m1").dismiss_reason == "newsletter"
    assert worklist.get("m2").status == "new"


def test_consumer_action_kept_when_nothing_new(tmp_path, make_entry, notifier):
    seed = DigestStore(str(tmp_path))
    seed.add(make_entry("m1", status="surfaced"))
    seed.save()
    sync = ConsumerDuringSync(str(tmp_path), lambda store: dismiss_email(store, "m1"))

    run_cycle(_deps(tmp_path, sync, FakeClassifier(), notifier))

    assert _reload_worklist(tmp_path).get("m1").status == "dismissed"


def test_owner_reply_does_not_overwrite_consumer_dismissal(tmp_path, make_entry, notifier):
    seed = DigestStore(str(tmp_path))
    seed.add(make_entry("m1", thread_id="t1", status="surfaced"))
    seed.save()
    sync = ConsumerDuringSync(str(tmp_path), lambda store: dismiss_email(store, "m1"), replied={"t1"})

    report = run_cycle(_deps(tmp_path, sync, FakeClassifier(), notifier))

    assert report.auto_resolved == 0
    assert _reload_worklist(tmp_path).get("m1").status == "dismissed"
