import json
import sys
from typing import Optional

import typer

from inbox_digest.assemble.status import format_status
from inbox_digest.config import Config
from inbox_digest.digest.actions import (
    DIGEST_QUERY_STATUSES,
    ActionResult,
    defer_email,
    dismiss_email,
    get_digest,
    mark_email_handled,
)
from inbox_digest.digest.worklist import DigestStore
from inbox_digest.errors import InvalidRequestError
from inbox_digest.observability.logs import setup_logging
from inbox_digest.run import run_daemon, run_once
from inbox_digest.storage.ledger import DEFAULT_MAX_ENTRIES, EmailLog

app = typer.Typer(add_completion=False, help="Poll Gmail accounts and keep an importance-ranked digest.")


def _load_config(state_dir: Optional[str]) -> Config:
    config = Config()
    if state_dir:
        config.state.state_dir = state_dir
    return config


def _open_store(state_dir: Optional[str]) -> DigestStore:
    store = DigestStore(_load_config(state_dir).state.state_dir)
    store.load()
    return store


def _finish(result: ActionResult) -> None:
    if result.ok:
        typer.echo(result.message)
        return
    typer.echo(result.message, err=True)
    sys.exit(1)


@app.command()
def run(
    state_dir: str = typer.Option(None, "--state-dir", help="State directory (overrides config)"),
    log_file: str = typer.Option(None, "--log-file", help="Specify log file path"),
    log_level: str = typer.Option(None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR); defaults to config")
):
    """Run a single poll cycle."""
    try:
        config = _load_config(state_dir)
        setup_logging(log_level=log_level or config.observability.log_level, log_file=log_file)
        report = run_once(config)
        typer.echo(
            f"Fetched {report.fetched}, new {report.new}, added {report.added}, pushed {report.pushed}"
            + (f", failed accounts: {', '.join(report.failed_accounts)}" if report.failed_accounts else "")
        )
    except KeyboardInterrupt:
        typer.echo("\nInterrupted by user")
        sys.exit(1)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        sys.exit(1)


@app.command()
def daemon(
    state_dir: str = typer.Option(None, "--state-dir", help="State directory (overrides config)"),
    log_file: str = typer.Option(None, "--log-file", help="Specify log file path"),
    log_level: str = typer.Option(None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR); defaults to config")
):
    """Poll on the adaptive schedule until interrupted."""
    try:
        config = _load_config(state_dir)
        setup_logging(log_level=log_level or config.observability.log_level, log_file=log_file)
        run_daemon(config)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        sys.exit(1)


@app.command()
def digest(
    status: str = typer.Option("new", "--status", help=f"One of: {', '.join(DIGEST_QUERY_STATUSES)}"),
    account: str = typer.Option(None, "--account", help="Only this account"),
    state_dir: str = typer.Option(None, "--state-dir", help="State directory (overrides config)"),
):
    """Print digest entries as JSON; listed new entries become surfaced."""
    try:
        summary = get_digest(_open_store(state_dir), status=status, account=account)
    except (InvalidRequestError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not any(summary.values()):
        typer.echo("No emails in digest.")
        return
    typer.echo(json.dumps(summary, indent=2, ensure_ascii=False))


@app.command()
def defer(
    message_id: str = typer.Argument(..., help="Message id"),
    minutes: float = typer.Argument(..., help="Minutes until the email re-surfaces"),
    state_dir: str = typer.Option(None, "--state-dir", help="State directory (overrides config)"),
):
    """Hide an email until the deferral expires."""
    _finish(defer_email(_open_store(state_dir), message_id, minutes))


@app.command()
def dismiss(
    message_id: str = typer.Argument(..., help="Message id"),
    reason: str = typer.Option(None, "--reason", help="Why the email is not relevant"),
    state_dir: str = typer.Option(None, "--state-dir", help="State directory (overrides config)"),
):
    """Permanently remove an email from the digest."""
    _finish(dismiss_email(_open_store(state_dir), message_id, reason))


@app.command()
def handled(
    message_id: str = typer.Argument(..., help="Message id"),
    state_dir: str = typer.Option(None, "--state-dir", help="State directory (overrides config)"),
):
    """Mark an email as dealt with."""
    _finish(mark_email_handled(_open_store(state_dir), message_id))


@app.command()
def status(
    state_dir: str = typer.Option(None, "--state-dir", help="State directory (overrides config)"),
):
    """Show a per-account overview of the digest."""
    typer.echo(format_status(_open_store(state_dir)))


@app.command("rotate-ledger")
def rotate_ledger(
    max_entries: int = typer.Option(DEFAULT_MAX_ENTRIES, "--max-entries", help="Rotate above this many entries"),
    state_dir: str = typer.Option(None, "--state-dir", help="State directory (overrides config)"),
):
    """Trim the classification ledger."""
    try:
        removed = EmailLog(_load_config(state_dir).state.state_dir).rotate(max_entries)
    except OSError as e:
        typer.echo(f"Error: {e}", err=True)
        sys.exit(1)
    typer.echo(f"Removed {removed} ledger entries.")


if __name__ == "__main__":
    app()
