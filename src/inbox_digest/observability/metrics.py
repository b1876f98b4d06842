"""
Prometheus metrics collection and export for the poll loop.
"""
import time
from typing import Dict, Optional

from prometheus_client import Counter, Histogram, Gauge, start_http_server, CollectorRegistry
import structlog

from inbox_digest.schemas import DIGEST_STATUSES

logger = structlog.get_logger()


class MetricsCollector:
    """Collect and export Prometheus metrics for poll cycles."""

    def __init__(self, port: Optional[int] = None):
        self.port = port
        self.start_time = time.time()

        # Own registry so several collectors can coexist in one process
        self.registry = CollectorRegistry()

        self._init_metrics()

        if port is not None:
            try:
                start_http_server(port, registry=self.registry)
                logger.info("Prometheus metrics server started", port=port)
            except Exception as e:
                logger.warning("Failed to start metrics server", port=port, error=str(e))

    def _init_metrics(self):
        """Initialize Prometheus metrics."""

        # Cycle metrics
        self.cycles_total = Counter(
            'cycles_total',
            'Total poll cycles',
            ['status'],  # ok, failed
            registry=self.registry
        )

        self.cycle_duration_seconds = Histogram(
            'cycle_duration_seconds',
            'Duration of a poll cycle',
            buckets=[0.5, 1, 2, 5, 10, 30, 60, 120, 300],
            registry=self.registry
        )

        # Email metrics
        self.emails_total = Counter(
            'emails_total',
            'Total number of emails seen by the poller',
            ['status'],  # fetched, new
            registry=self.registry
        )

        self.account_failures_total = Counter(
            'account_failures_total',
            'Account sync failures',
            ['account'],
            registry=self.registry
        )

        # Classification metrics
        self.verdicts_total = Counter(
            'verdicts_total',
            'Classification verdicts by importance',
            ['importance'],
            registry=self.registry
        )

        self.classifier_failopen_total = Counter(
            'classifier_failopen_total',
            'Verdicts produced by the fail-open policy',
            registry=self.registry
        )

        self.llm_latency_ms = Histogram(
            'llm_latency_ms',
            'LLM request latency in milliseconds',
            buckets=[10, 50, 100, 200, 500, 1000, 2000, 5000, 10000],
            registry=self.registry
        )

        # Delivery metrics
        self.pushes_total = Counter(
            'pushes_total',
            'Push notification attempts',
            ['status'],  # ok, timeout, error, disabled
            registry=self.registry
        )

        self.worklist_entries = Gauge(
            'worklist_entries',
            'Worklist entries by status',
            ['status'],
            registry=self.registry
        )

        # Email cleaner metrics
        self.email_cleaner_removed_chars_total = Counter(
            'email_cleaner_removed_chars_total',
            'Total characters removed by email cleaner',
            ['removal_type'],  # reply_chain, quoted, signature, disclaimer, image
            registry=self.registry
        )

        self.cleaner_errors_total = Counter(
            'cleaner_errors_total',
            'Total email cleaner errors',
            ['error_type'],
            registry=self.registry
        )

        self.system_uptime_seconds = Gauge(
            'system_uptime_seconds',
            'System uptime in seconds',
            registry=self.registry
        )

    def record_cycle(self, status: str, duration_seconds: float):
        """Record a finished poll cycle."""
        self.cycles_total.labels(status=status).inc()
        self.cycle_duration_seconds.observe(duration_seconds)
        self.system_uptime_seconds.set(time.time() - self.start_time)
        logger.debug("Recorded cycle", status=status, duration=duration_seconds)

    def record_emails(self, count: int, status: str):
        self.emails_total.labels(status=status).inc(count)

    def record_account_failure(self, account: str):
        self.account_failures_total.labels(account=account).inc()

    def record_verdict(self, importance: str, failed_open: bool = False):
        self.verdicts_total.labels(importance=importance).inc()
        if failed_open:
            self.classifier_failopen_total.inc()

    def record_llm_latency(self, latency_ms: float):
        """Record LLM request latency."""
        self.llm_latency_ms.observe(latency_ms)
        logger.debug("Recorded LLM latency", latency_ms=latency_ms)

    def record_push(self, status: str):
        self.pushes_total.labels(status=status).inc()

    def update_worklist(self, counts: Dict[str, int]):
        """Set the worklist gauge; statuses missing from ``counts`` read as zero."""
        for status in DIGEST_STATUSES:
            self.worklist_entries.labels(status=status).set(counts.get(status, 0))

    def record_cleaner_removed_chars(self, char_count: int, removal_type: str):
        """Record characters removed by email cleaner."""
        self.email_cleaner_removed_chars_total.labels(removal_type=removal_type).inc(char_count)

    def record_cleaner_error(self, error_type: str):
        """Record email cleaner error."""
        self.cleaner_errors_total.labels(error_type=error_type).inc()
        logger.debug("Recorded cleaner error", error_type=error_type)
