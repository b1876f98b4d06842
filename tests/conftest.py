"""
Shared factories for message records and digest entries.
"""
import pytest

from inbox_digest.schemas import DigestEntry, MessageRecord


@pytest.fixture
def make_record():
    """Build a MessageRecord with overridable defaults."""
    def _make(id="m1", **overrides):
        values = dict(
            id=id,
            thread_id=f"t-{id}",
            account="owner@example.com",
            sender="Alice <alice@corp.com>",
            recipient="owner@example.com",
            subject=f"Subject {id}",
            date="2026-02-26T10:00:00.000Z",
            body="Please review the contract.",
        )
        values.update(overrides)
        return MessageRecord(**values)
    return _make


@pytest.fixture
def make_entry():
    """Build a DigestEntry with overridable defaults."""
    def _make(id="m1", **overrides):
        values = dict(
            id=id,
            thread_id=f"t-{id}",
            account="owner@example.com",
            sender="Alice <alice@corp.com>",
            subject=f"Subject {id}",
            date="2026-02-26T10:00:00.000Z",
            importance="high",
            reason="Direct request from a client",
            notify=True,
            status="new",
            first_seen_at="2026-02-26T10:00:00.000Z",
        )
        values.update(overrides)
        return DigestEntry(**values)
    return _make
