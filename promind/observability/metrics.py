"""
Metrics Collection with Prometheus.

Exposes job orchestration and ledger metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Histogram, Info

from promind.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    PROVIDER = "provider"
    KIND = "kind"
    OUTCOME = "outcome"
    DIRECTION = "direction"
    STATE = "state"


class PromindMetrics:
    """
    Centralized metrics for the generation core.

    Covers:
    - Generation jobs (submissions, outcomes, polling)
    - Ledger (debits by outcome, token volume)
    - Interactive requests (state transitions)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info("promind_service", "Service information")
        self.service_info.info(
            {
                "version": settings.service_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # Job Metrics
        # ====================================================================
        self.jobs_submitted_total = Counter(
            "promind_jobs_submitted_total",
            "Generation jobs submitted to providers",
            [MetricLabels.PROVIDER, MetricLabels.KIND],
        )

        self.jobs_finished_total = Counter(
            "promind_jobs_finished_total",
            "Generation jobs that reached an outcome",
            [MetricLabels.PROVIDER, MetricLabels.OUTCOME],
        )

        self.job_poll_attempts_total = Counter(
            "promind_job_poll_attempts_total",
            "Status polls issued to providers",
            [MetricLabels.PROVIDER],
        )

        self.job_poll_errors_total = Counter(
            "promind_job_poll_errors_total",
            "Transient provider errors while polling",
            [MetricLabels.PROVIDER],
        )

        self.job_duration_seconds = Histogram(
            "promind_job_duration_seconds",
            "Wall time from submission to outcome",
            [MetricLabels.PROVIDER],
            buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0),
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_debits_total = Counter(
            "promind_ledger_debits_total",
            "Debit attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.ledger_tokens_total = Counter(
            "promind_ledger_tokens_total",
            "Tokens moved through the ledger",
            [MetricLabels.DIRECTION],
        )

        # ====================================================================
        # Interactive Request Metrics
        # ====================================================================
        self.pending_requests_total = Counter(
            "promind_pending_requests_total",
            "Interactive request state transitions",
            [MetricLabels.STATE],
        )

    def record_job_submitted(self, provider: str, kind: str) -> None:
        self.jobs_submitted_total.labels(provider=provider, kind=kind).inc()

    def record_job_finished(self, provider: str, outcome: str, duration_seconds: float) -> None:
        self.jobs_finished_total.labels(provider=provider, outcome=outcome).inc()
        self.job_duration_seconds.labels(provider=provider).observe(duration_seconds)

    def record_poll(self, provider: str, failed: bool = False) -> None:
        self.job_poll_attempts_total.labels(provider=provider).inc()
        if failed:
            self.job_poll_errors_total.labels(provider=provider).inc()

    def record_debit(self, amount: int, applied: bool) -> None:
        self.ledger_debits_total.labels(outcome="ok" if applied else "insufficient").inc()
        if applied:
            self.ledger_tokens_total.labels(direction="debit").inc(amount)

    def record_credit(self, amount: int) -> None:
        self.ledger_tokens_total.labels(direction="credit").inc(amount)

    def record_request_state(self, state: str) -> None:
        self.pending_requests_total.labels(state=state).inc()


# Global metrics instance
metrics = PromindMetrics()
