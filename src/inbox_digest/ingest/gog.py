"""
Client for the ``gog`` command-line Gmail gateway.

Every call runs one subprocess with a hard timeout. A non-zero exit, a
timeout or a missing binary raises :class:`GatewayError`; parsing helpers
treat malformed output as "no information" rather than an error.
"""
import json
import subprocess
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from inbox_digest.errors import GatewayError

logger = structlog.get_logger()

RawMessage = Dict[str, Any]


def _load_json(stdout: str) -> Any:
    if not stdout or not stdout.strip():
        return None
    try:
        return json.loads(stdout.strip())
    except json.JSONDecodeError:
        return None


def _only_dicts(items: list) -> List[RawMessage]:
    return [m for m in items if isinstance(m, dict) and m.get("id")]


def parse_messages(stdout: str) -> List[RawMessage]:
    """Messages from a search/history payload: an array, one object, or ``{"messages": [...]}``."""
    parsed = _load_json(stdout)
    if isinstance(parsed, list):
        return _only_dicts(parsed)
    if isinstance(parsed, dict):
        if isinstance(parsed.get("messages"), list):
            return _only_dicts(parsed["messages"])
        if parsed.get("id"):
            return [parsed]
    return []


def parse_history(stdout: str) -> Tuple[List[RawMessage], Optional[str]]:
    """Messages plus the new cursor, when the gateway reports one as ``historyId``."""
    parsed = _load_json(stdout)
    cursor = None
    if isinstance(parsed, dict) and parsed.get("historyId") not in (None, ""):
        cursor = str(parsed["historyId"])
    return parse_messages(stdout), cursor


def parse_thread(stdout: str) -> Optional[Dict[str, Any]]:
    """A thread object with ``id`` and a ``messages`` list, else None."""
    parsed = _load_json(stdout)
    if isinstance(parsed, dict) and parsed.get("id") and isinstance(parsed.get("messages"), list):
        return parsed
    return None


class GogClient:
    """Thin subprocess wrapper around ``gog gmail ...`` commands."""

    def __init__(self, binary: str = "gog", timeout_s: float = 30.0):
        self.binary = binary
        self.timeout_s = timeout_s

    def run(self, args: Sequence[str]) -> str:
        """Run ``gog <args>`` and return stdout."""
        cmd = [self.binary, *args]
        preview = " ".join(args[:3])
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning("gog command timed out", command=preview, timeout_s=self.timeout_s)
            raise GatewayError(f"gog {preview} timed out after {self.timeout_s}s", args_preview=preview)
        except OSError as e:
            logger.error("gog command could not be started", command=preview, error=str(e))
            raise GatewayError(f"gog {preview} could not be started: {e}", args_preview=preview)

        if result.returncode != 0:
            stderr = (result.stderr or "")[:200]
            logger.warning("gog command failed", command=preview,
                           returncode=result.returncode, stderr=stderr)
            raise GatewayError(f"gog {preview} failed (code {result.returncode}): {stderr}",
                               args_preview=preview, returncode=result.returncode)
        return result.stdout or ""

    def history(self, account: str, since: str) -> str:
        return self.run(["gmail", "history", "--since", since, "--account", account, "--json"])

    def search_recent(self, account: str, days: int) -> str:
        return self.run(["gmail", "messages", "search", f"newer_than:{days}d",
                         "--account", account, "--json", "--include-body"])

    def thread(self, account: str, thread_id: str) -> str:
        return self.run(["gmail", "thread", "get", thread_id, "--account", account, "--json"])
