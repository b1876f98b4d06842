"""
Pydantic models for messages, verdicts and persisted state.

Field aliases are camelCase so the JSON files written to the state directory
keep the same shape across versions (``threadId``, ``firstSeenAt``, ...).
"""
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Importance = Literal["high", "medium", "low"]
DigestImportance = Literal["high", "medium"]
DigestStatus = Literal["new", "surfaced", "deferred", "handled", "dismissed"]

DIGEST_STATUSES = ("new", "surfaced", "deferred", "handled", "dismissed")
ACTIVE_STATUSES = ("surfaced", "deferred")
TERMINAL_STATUSES = ("handled", "dismissed")


class MessageRecord(BaseModel):
    """Cleaned email ready for classification."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    thread_id: str = Field(alias="threadId")
    account: str
    sender: str = Field(alias="from")
    recipient: str = Field(alias="to")
    subject: str
    date: str
    body: str = Field(default="", description="Body after HTML/quote/signature cleaning")
    thread_length: int = Field(default=1, alias="threadLength")
    has_attachments: bool = Field(default=False, alias="hasAttachments")


class Verdict(BaseModel):
    """Importance judgment for one message."""
    model_config = ConfigDict(frozen=True)

    id: str
    importance: Importance
    reason: str
    notify: bool


class LedgerEntry(BaseModel):
    """One line of emails.jsonl: a processed message and its verdict."""
    model_config = ConfigDict(frozen=True)

    email: MessageRecord
    importance: Importance
    reason: str
    notify: bool
    timestamp: float = Field(description="Unix epoch seconds when the verdict was recorded")


class DigestEntry(BaseModel):
    """Lifecycle-tracked worklist item."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    thread_id: str = Field(alias="threadId")
    account: str
    sender: str = Field(alias="from")
    subject: str
    date: str
    body: str = ""
    importance: DigestImportance
    reason: str
    notify: bool
    status: DigestStatus = "new"
    first_seen_at: str = Field(alias="firstSeenAt")
    surfaced_at: Optional[str] = Field(default=None, alias="surfacedAt")
    deferred_until: Optional[str] = Field(default=None, alias="deferredUntil")
    resolved_at: Optional[str] = Field(default=None, alias="resolvedAt")
    dismiss_reason: Optional[str] = Field(default=None, alias="dismissReason")


class DigestState(BaseModel):
    entries: Dict[str, DigestEntry] = Field(default_factory=dict)


class CheckpointRecord(BaseModel):
    """Per-account sync cursor and failure counter."""
    model_config = ConfigDict(populate_by_name=True)

    history_id: str = Field(default="", alias="historyId", description="Opaque cursor; empty means none")
    last_poll_at: str = Field(default="", alias="lastPollAt")
    consecutive_failures: int = Field(default=0, alias="consecutiveFailures")


class CheckpointState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    accounts: Dict[str, CheckpointRecord] = Field(default_factory=dict)
    last_classifier_run_at: str = Field(default="", alias="lastClassifierRunAt")
