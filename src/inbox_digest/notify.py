"""
Outbound push notifications to the owner's agent session.

Delivery runs an external command with a timeout. Failures are logged and
reported through the return value; they never abort a poll cycle.
"""
import subprocess
from typing import List, Optional, Sequence

import structlog

from inbox_digest.schemas import MessageRecord, Verdict

logger = structlog.get_logger()

DEFAULT_COMMAND = ["openclaw", "agent", "--deliver"]
MESSAGE_PREFIX = "[InboxDigest]"


def format_push_message(email: MessageRecord, verdict: Verdict) -> str:
    """Enough context to act on the email without fetching it again."""
    return "\n".join([
        f"{MESSAGE_PREFIX} New high-importance email:",
        f"From: {email.sender}",
        f"Subject: {email.subject}",
        f"Account: {email.account}",
        f"Date: {email.date}",
        f"Reason: {verdict.reason}",
        f"MessageID: {email.id}",
        "",
        "Use defer to postpone or handled when resolved.",
    ])


def format_failure_alert(account: str, failures: int) -> str:
    return (f"{MESSAGE_PREFIX} Gmail polling has failed {failures} times in a row for {account}. "
            "Likely auth token expiry - please re-authenticate gog.")


class Notifier:
    """Sends free-text messages to a target session via a delivery command."""

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        target: str = "main",
        timeout_s: float = 30.0,
        enabled: bool = True,
        metrics=None,
    ):
        self.command: List[str] = list(command or DEFAULT_COMMAND)
        self.target = target
        self.timeout_s = timeout_s
        self.enabled = enabled
        self.metrics = metrics

    def build_args(self, message: str) -> List[str]:
        return [*self.command, "--session-id", self.target, "--message", message]

    def send(self, message: str) -> bool:
        if not self.enabled:
            logger.info("Notifications disabled, skipping push", preview=message[:80])
            self._record("disabled")
            return False

        try:
            result = subprocess.run(
                self.build_args(message),
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.error("Push notification timed out", timeout_s=self.timeout_s, target=self.target)
            self._record("timeout")
            return False
        except OSError as e:
            logger.error("Push notification could not be started", error=str(e), target=self.target)
            self._record("error")
            return False

        if result.returncode != 0:
            logger.error("Push notification failed",
                         returncode=result.returncode,
                         stderr=(result.stderr or "")[:200],
                         target=self.target)
            self._record("error")
            return False

        self._record("ok")
        return True

    def _record(self, status: str) -> None:
        if self.metrics:
            self.metrics.record_push(status)
