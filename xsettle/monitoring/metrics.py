"""
Prometheus metrics for settlement observability.

Organized into: runs, steps, observation, confirmation, streams.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class SettlementMetrics:
    """Metrics for settlement runs, one registry per process instance."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Run Metrics ===
        self.runs_started = Counter(
            'settlement_runs_started_total',
            'Settlement runs started',
            labelnames=['mode'],
            registry=reg
        )
        self.runs_finished = Counter(
            'settlement_runs_finished_total',
            'Settlement runs finished',
            labelnames=['mode', 'outcome'],
            registry=reg
        )
        self.runs_active = Gauge(
            'settlement_runs_active',
            'Settlement runs in flight',
            labelnames=['mode'],
            registry=reg
        )
        self.run_duration_sec = Histogram(
            'settlement_run_duration_sec',
            'Wall time of a settlement run (seconds)',
            labelnames=['mode', 'outcome'],
            buckets=[1, 5, 15, 30, 60, 120, 240, 480],
            registry=reg
        )

        # === Step Metrics ===
        self.step_duration_sec = Histogram(
            'settlement_step_duration_sec',
            'Wall time of a chain step (seconds)',
            labelnames=['mode', 'step'],
            buckets=[0.5, 1, 2, 5, 10, 30, 60, 180, 240],
            registry=reg
        )
        self.step_failures = Counter(
            'settlement_step_failures_total',
            'Chain steps that ended in error',
            labelnames=['mode', 'step'],
            registry=reg
        )

        # === Observation Metrics ===
        self.watch_timeouts = Counter(
            'settlement_watch_timeouts_total',
            'Event watches that ended without observing the event',
            labelnames=['step'],
            registry=reg
        )

        # === Confirmation Metrics ===
        self.confirmations = Counter(
            'settlement_confirmations_total',
            'Confirm actions received',
            labelnames=['result'],
            registry=reg
        )
        self.awaiting_confirm = Gauge(
            'settlement_awaiting_confirm',
            'Checkout runs suspended on the confirmation gate',
            registry=reg
        )

        # === Stream Metrics ===
        self.streams_open = Gauge(
            'settlement_streams_open',
            'Open SSE streams',
            labelnames=['route'],
            registry=reg
        )
        self.client_disconnects = Counter(
            'settlement_client_disconnects_total',
            'Streams aborted by client disconnect',
            labelnames=['route'],
            registry=reg
        )

    def render(self) -> bytes:
        """Prometheus text exposition for /metrics."""
        return generate_latest(self.registry)
