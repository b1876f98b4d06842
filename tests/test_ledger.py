"""
Test the append-only classification ledger.
"""
import json
import time

import pytest

from inbox_digest.schemas import LedgerEntry
from inbox_digest.storage.ledger import EMAILS_FILE, MAX_AGE_SECONDS, EmailLog


@pytest.fixture
def ledger(tmp_path):
    return EmailLog(str(tmp_path))


def _entry(record, importance="low", timestamp=None):
    return LedgerEntry(
        email=record,
        importance=importance,
        reason="routine",
        notify=False,
        timestamp=time.time() if timestamp is None else timestamp,
    )


def test_read_all_missing_file_is_empty(ledger):
    assert ledger.read_all() == []
    assert ledger.seen_ids() == set()


def test_append_and_read_back(ledger, make_record):
    ledger.append(_entry(make_record("m1"), importance="high"))
    ledger.append(_entry(make_record("m2")))

    entries = ledger.read_all()

    assert [e.email.id for e in entries] == ["m1", "m2"]
    assert entries[0].importance == "high"
    assert entries[0].email.sender == "Alice <alice@corp.com>"
    assert ledger.has_message_id("m2")
    assert not ledger.has_message_id("m3")
    assert ledger.seen_ids() == {"m1", "m2"}


def test_lines_use_camel_case_keys(ledger, make_record):
    ledger.append(_entry(make_record("m1")))

    line = (ledger.file_path.read_text(encoding="utf-8")).splitlines()[0]
    data = json.loads(line)

    assert data["email"]["threadId"] == "t-m1"
    assert data["email"]["from"] == "Alice <alice@corp.com>"
    assert "sender" not in data["email"]


def test_blank_and_corrupt_lines_are_skipped(tmp_path, make_record):
    ledger = EmailLog(str(tmp_path))
    ledger.append(_entry(make_record("m1")))
    with open(tmp_path / EMAILS_FILE, "a", encoding="utf-8") as f:
        f.write("\n")
        f.write("{not json\n")
        f.write('{"email": {"id": "x"}}\n')
    ledger.append(_entry(make_record("m2")))

    assert [e.email.id for e in ledger.read_all()] == ["m1", "m2"]


def test_rotate_under_limit_is_noop(ledger, make_record):
    for i in range(3):
        ledger.append(_entry(make_record(f"m{i}")))
    before = ledger.file_path.read_text(encoding="utf-8")

    assert ledger.rotate(max_entries=3) == 0
    assert ledger.file_path.read_text(encoding="utf-8") == before


def test_rotate_keeps_most_recent_entries(ledger, make_record):
    now = 1_800_000_000.0
    for i in range(5):
        ledger.append(_entry(make_record(f"m{i}"), timestamp=now - 100 + i))

    removed = ledger.rotate(max_entries=2, now=now)

    assert removed == 3
    assert [e.email.id for e in ledger.read_all()] == ["m3", "m4"]


def test_rotate_drops_entries_older_than_thirty_days(ledger, make_record):
    now = 1_800_000_000.0
    ledger.append(_entry(make_record("old1"), timestamp=now - MAX_AGE_SECONDS - 10))
    ledger.append(_entry(make_record("old2"), timestamp=now - MAX_AGE_SECONDS - 5))
    ledger.append(_entry(make_record("fresh"), timestamp=now - 60))

    removed = ledger.rotate(max_entries=2, now=now)

    assert removed == 2
    assert [e.email.id for e in ledger.read_all()] == ["fresh"]
