"""
Batch importance classification with a fail-open policy.

Every input message gets exactly one verdict, in input order. Whenever the
judgment engine fails or answers with something unusable, the affected
messages are marked ``high`` with ``notify=True``: a spurious digest entry is
one dismiss away, a missed important email is not.
"""
import json
import re
import uuid
from typing import Any, Dict, List, Optional, Sequence

import structlog
from jinja2 import Environment, PackageLoader, StrictUndefined

from inbox_digest import DEFAULT_PROMPT_VERSION
from inbox_digest.llm.prompt_registry import get_prompt_template_path
from inbox_digest.schemas import MessageRecord, Verdict

logger = structlog.get_logger()

VALID_IMPORTANCE = ("high", "medium", "low")

FAILOPEN_EMPTY = "empty classifier response - fail open"
FAILOPEN_UNPARSEABLE = "unparseable classifier response - fail open"
FAILOPEN_NOT_ARRAY = "classifier response was not a JSON array - fail open"
FAILOPEN_ERROR = "classification failed - fail open"
FAILOPEN_MISSING = "missing from classifier response - fail open"
NO_REASON = "no reason given"
FAILOPEN_REASONS = frozenset({
    FAILOPEN_EMPTY, FAILOPEN_UNPARSEABLE, FAILOPEN_NOT_ARRAY, FAILOPEN_ERROR, FAILOPEN_MISSING,
})

RESPONSE_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["id", "importance", "reason", "notify"],
        "properties": {
            "id": {"type": "string"},
            "importance": {"type": "string", "enum": list(VALID_IMPORTANCE)},
            "reason": {"type": "string"},
            "notify": {"type": "boolean"},
        },
    },
}

CODE_FENCE_OPEN_RE = re.compile(r'^```(?:json)?\s*', re.IGNORECASE)
CODE_FENCE_CLOSE_RE = re.compile(r'\s*```$')

_prompt_env = Environment(
    loader=PackageLoader("inbox_digest", "llm/prompts"),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)


def fail_open(ids: Sequence[str], reason: str) -> List[Verdict]:
    return [Verdict(id=i, importance="high", reason=reason, notify=True) for i in ids]


def build_classifier_prompt(emails: Sequence[MessageRecord],
                            prompt_version: str = DEFAULT_PROMPT_VERSION) -> str:
    summaries = [
        {
            "id": e.id,
            "from": e.sender,
            "to": e.recipient,
            "subject": e.subject,
            "date": e.date,
            "body": e.body,
            "account": e.account,
            "threadLength": e.thread_length,
            "hasAttachments": e.has_attachments,
        }
        for e in emails
    ]
    template = _prompt_env.get_template(get_prompt_template_path(prompt_version))
    return template.render(
        response_schema=json.dumps(RESPONSE_SCHEMA, indent=2),
        email_count=len(emails),
        emails_json=json.dumps(summaries, indent=2, ensure_ascii=False),
    )


def _coerce_item(item: Dict[str, Any]) -> Verdict:
    importance = item.get("importance")
    notify = item.get("notify")
    reason = item.get("reason")
    return Verdict(
        id=item["id"],
        importance=importance if importance in VALID_IMPORTANCE else "high",
        reason=reason if isinstance(reason, str) else NO_REASON,
        notify=notify if isinstance(notify, bool) else True,
    )


def parse_classifier_response(text: Optional[str], ids: Sequence[str]) -> List[Verdict]:
    """
    Map free-form judgment text onto one verdict per id, in ``ids`` order.

    Optional ```json fences are stripped before parsing. Unknown importance
    becomes ``high``, a missing or non-boolean notify becomes ``True`` and a
    missing reason gets a placeholder. Ids the response does not mention fail
    open individually.
    """
    if not text or not text.strip():
        return fail_open(ids, FAILOPEN_EMPTY)

    cleaned = CODE_FENCE_CLOSE_RE.sub("", CODE_FENCE_OPEN_RE.sub("", text.strip())).strip()

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON in classifier response",
                       error=str(e), preview=cleaned[:300])
        return fail_open(ids, FAILOPEN_UNPARSEABLE)

    if not isinstance(parsed, list):
        logger.warning("Classifier response is not an array", response_type=type(parsed).__name__)
        return fail_open(ids, FAILOPEN_NOT_ARRAY)

    by_id: Dict[str, Verdict] = {}
    for item in parsed:
        if isinstance(item, dict) and isinstance(item.get("id"), str):
            by_id[item["id"]] = _coerce_item(item)

    missing = [i for i in ids if i not in by_id]
    if missing:
        logger.warning("Classifier response missing ids", missing=missing)

    return [by_id.get(i) or Verdict(id=i, importance="high", reason=FAILOPEN_MISSING, notify=True)
            for i in ids]


class Classifier:
    """Runs one batch of messages through the judgment engine."""

    def __init__(self, gateway, prompt_version: str = DEFAULT_PROMPT_VERSION, metrics=None):
        self.gateway = gateway
        self.prompt_version = prompt_version
        self.metrics = metrics

    def classify(self, emails: Sequence[MessageRecord]) -> List[Verdict]:
        if not emails:
            return []

        ids = [e.id for e in emails]
        trace_id = str(uuid.uuid4())

        try:
            prompt = build_classifier_prompt(emails, self.prompt_version)
            text = self.gateway.complete(prompt, trace_id=trace_id)
        except Exception as e:
            logger.error("Classifier failed, failing open",
                         error=str(e)[:200],
                         error_type=type(e).__name__,
                         batch_size=len(ids),
                         trace_id=trace_id)
            verdicts = fail_open(ids, FAILOPEN_ERROR)
        else:
            verdicts = parse_classifier_response(text, ids)

        if self.metrics:
            for v in verdicts:
                self.metrics.record_verdict(v.importance, failed_open=v.reason in FAILOPEN_REASONS)

        logger.info("Batch classified",
                    batch_size=len(ids),
                    high=sum(v.importance == "high" for v in verdicts),
                    medium=sum(v.importance == "medium" for v in verdicts),
                    low=sum(v.importance == "low" for v in verdicts),
                    trace_id=trace_id)
        return verdicts
