"""
Prometheus metrics for the keeper and feeder loops.

Organized into: keeper, feeder, submission, operational.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class KeeperMetrics:
    """Metrics shared by both loops; every series carries a `loop` label."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Keeper Metrics ===
        self.cycles = Counter(
            'keeper_cycles_total',
            'Loop cycles completed',
            labelnames=['loop', 'outcome'],
            registry=reg
        )
        self.cycle_duration_ms = Histogram(
            'keeper_cycle_duration_ms',
            'Wall time of one keeper cycle (milliseconds)',
            labelnames=['loop'],
            buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
            registry=reg
        )
        self.orders_executed = Counter(
            'orders_executed_total',
            'Orders executed by the keeper',
            labelnames=['loop', 'kind'],
            registry=reg
        )
        self.positions_liquidated = Counter(
            'positions_liquidated_total',
            'Positions liquidated by the keeper',
            labelnames=['loop'],
            registry=reg
        )
        self.pending_orders = Gauge(
            'pending_orders',
            'Pending orders seen in the last scan',
            labelnames=['loop'],
            registry=reg
        )
        self.open_positions = Gauge(
            'open_positions',
            'Open positions seen in the last scan',
            labelnames=['loop'],
            registry=reg
        )

        # === Feeder Metrics ===
        self.price_updates = Counter(
            'price_updates_total',
            'Oracle price updates by outcome',
            labelnames=['loop', 'symbol', 'outcome'],
            registry=reg
        )
        self.model_price = Gauge(
            'model_price',
            'Latest model price per symbol',
            labelnames=['loop', 'symbol'],
            registry=reg
        )
        self.batches_deferred = Counter(
            'batches_deferred_total',
            'Price batches deferred by an emergency pause',
            labelnames=['loop'],
            registry=reg
        )
        self.shocks = Counter(
            'price_shocks_total',
            'Price shocks triggered',
            labelnames=['loop', 'symbol'],
            registry=reg
        )

        # === Submission Metrics ===
        self.submission_failures = Counter(
            'submission_failures_total',
            'Failed submissions by error kind',
            labelnames=['loop', 'kind'],
            registry=reg
        )
        self.nonce_resyncs = Counter(
            'nonce_resyncs_total',
            'Sequence resynchronizations after conflicts',
            labelnames=['loop'],
            registry=reg
        )
        self.gas_price_gwei = Gauge(
            'gas_price_gwei',
            'Gas price used for the last submission (gwei)',
            labelnames=['loop'],
            registry=reg
        )
        self.next_sequence = Gauge(
            'next_sequence',
            'Next sequence number the controller will issue',
            labelnames=['loop'],
            registry=reg
        )

        # === Operational Metrics ===
        self.paused = Gauge(
            'system_paused',
            'Emergency stop as last observed (1=paused, 0=ok)',
            labelnames=['loop'],
            registry=reg
        )
        self.read_errors = Counter(
            'ledger_read_errors_total',
            'Ledger reads that failed after retries',
            labelnames=['loop', 'kind'],
            registry=reg
        )
        self.account_balance = Gauge(
            'account_native_balance',
            'Native balance of the signing account',
            labelnames=['loop'],
            registry=reg
        )
        self.loop_started = Counter(
            'loop_started_total',
            'Loop instances started',
            labelnames=['loop'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose the registry on http://addr:port/metrics."""
        start_http_server(port, addr=addr, registry=self.registry)
