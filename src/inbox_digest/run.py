"""
Bootstrap: wire configured components into a poll cycle and drive it.
"""
import signal
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Optional

import structlog

from inbox_digest import PIPELINE_VERSION
from inbox_digest.config import Config
from inbox_digest.digest.worklist import DigestStore
from inbox_digest.ingest.gog import GogClient
from inbox_digest.ingest.sync import Synchronizer
from inbox_digest.llm.classifier import Classifier
from inbox_digest.llm.gateway import JudgmentGateway
from inbox_digest.notify import Notifier
from inbox_digest.observability.healthz import CycleTracker, start_health_server
from inbox_digest.observability.metrics import MetricsCollector
from inbox_digest.pipeline import CycleReport, PipelineDeps, run_cycle
from inbox_digest.scheduler import AdaptiveClock
from inbox_digest.storage.checkpoints import CheckpointStore
from inbox_digest.storage.ledger import EmailLog

logger = structlog.get_logger()


@dataclass
class Runtime:
    config: Config
    deps: PipelineDeps
    ledger: EmailLog
    worklist: DigestStore
    gateway: JudgmentGateway
    metrics: Optional[MetricsCollector] = None
    tracker: Optional[CycleTracker] = None


def build_runtime(config: Config, metrics: Optional[MetricsCollector] = None,
                  tracker: Optional[CycleTracker] = None) -> Runtime:
    """Instantiate every pipeline collaborator from ``config``."""
    state_dir = config.state.state_dir

    client = GogClient(binary=config.sync.gog_binary, timeout_s=config.sync.timeout_s)
    sync = Synchronizer(
        client,
        owner_accounts=config.accounts,
        rescan_days=config.sync.rescan_days,
        body_max_chars=config.sync.body_max_chars,
        metrics=metrics,
    )
    gateway = JudgmentGateway(config.llm, metrics=metrics)
    classifier = Classifier(gateway, metrics=metrics)
    notifier = Notifier(
        command=config.notify.command,
        target=config.notify.target,
        timeout_s=config.notify.timeout_s,
        enabled=config.notify.enabled,
        metrics=metrics,
    )

    ledger = EmailLog(state_dir)
    worklist = DigestStore(state_dir)
    deps = PipelineDeps(
        sync=sync,
        checkpoints=CheckpointStore(state_dir),
        classifier=classifier,
        worklist=worklist,
        ledger=ledger,
        notifier=notifier,
        accounts=list(config.accounts),
        alert_threshold=config.alerts.consecutive_failures_before_alert,
        batch_size=config.llm.batch_size,
        max_workers=config.sync.max_workers,
        metrics=metrics,
    )
    return Runtime(config=config, deps=deps, ledger=ledger, worklist=worklist,
                   gateway=gateway, metrics=metrics, tracker=tracker)


def execute_cycle(runtime: Runtime) -> CycleReport:
    """Rotate the ledger, then run one cycle, recording its outcome."""
    started = time.time()
    try:
        removed = runtime.ledger.rotate(runtime.config.state.ledger_max_entries)
        if removed:
            logger.info("Ledger rotated", removed=removed)
        report = run_cycle(runtime.deps)
    except Exception:
        if runtime.metrics:
            runtime.metrics.record_cycle("failed", time.time() - started)
        if runtime.tracker:
            runtime.tracker.mark(ok=False)
        raise

    if runtime.metrics:
        runtime.metrics.record_cycle("ok", time.time() - started)
        runtime.metrics.update_worklist(
            Counter(e.status for e in runtime.worklist.get_by_status("all"))
        )
    if runtime.tracker:
        runtime.tracker.mark(ok=True)
    return report


def run_once(config: Optional[Config] = None) -> CycleReport:
    config = config or Config()
    if not config.accounts:
        logger.warning("No accounts configured")
    runtime = build_runtime(config)
    try:
        return execute_cycle(runtime)
    finally:
        runtime.gateway.close()


def run_daemon(config: Optional[Config] = None) -> None:
    """
    Poll on the adaptive clock until SIGINT/SIGTERM.

    On shutdown the clock is stopped first, then the in-flight cycle (if any)
    is allowed to finish before returning.
    """
    config = config or Config()
    metrics = None
    tracker = CycleTracker()
    if config.observability.enable_http:
        metrics = MetricsCollector(config.observability.prometheus_port)
        start_health_server(port=config.observability.health_port, tracker=tracker)

    runtime = build_runtime(config, metrics=metrics, tracker=tracker)
    cycle_lock = threading.Lock()
    stop_event = threading.Event()

    def on_tick():
        with cycle_lock:
            execute_cycle(runtime)

    def on_signal(signum, frame):
        logger.info("Shutdown requested", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, on_signal)
    signal.signal(signal.SIGINT, on_signal)

    logger.info("Daemon starting",
                version=PIPELINE_VERSION,
                accounts=len(config.accounts),
                state_dir=config.state.state_dir)
    try:
        on_tick()
    except Exception as e:
        logger.error("Initial poll cycle failed", error=str(e)[:200], error_type=type(e).__name__)

    clock = AdaptiveClock(config.poll, config.active_window, on_tick)
    clock.start()
    try:
        stop_event.wait()
    finally:
        clock.stop()
        with cycle_lock:
            runtime.gateway.close()
        logger.info("Daemon stopped")
