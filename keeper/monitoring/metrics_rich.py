"""
Prometheus metrics for keeper observability.

Organized into: prices, triggers, settlement, ledger, loops.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class KeeperMetrics:
    """Counters, gauges and histograms exported on /metrics."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Price Metrics ===
        self.price_updates = Counter(
            'price_updates_total',
            'Accepted price ticks',
            labelnames=['symbol', 'source'],
            registry=reg
        )
        self.price_rejected = Counter(
            'price_rejected_total',
            'Price ticks rejected (older than stored or past max age)',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.price_age_sec = Gauge(
            'price_age_sec',
            'Age of the cached price at last scan (seconds)',
            labelnames=['symbol'],
            registry=reg
        )
        self.subscriber_drops = Counter(
            'price_subscriber_drops_total',
            'Snapshots dropped from a full subscriber queue',
            labelnames=['subscriber'],
            registry=reg
        )
        self.feed_connected = Gauge(
            'price_feed_connected',
            'Streaming price feed state (1=connected, 0=down)',
            registry=reg
        )
        self.feed_fallback_active = Gauge(
            'price_feed_fallback_active',
            'REST fallback polling active (1=yes)',
            registry=reg
        )
        self.feed_reconnects = Counter(
            'price_feed_reconnects_total',
            'Streaming feed reconnect attempts',
            registry=reg
        )

        # === Trigger Metrics ===
        self.stale_skips = Counter(
            'stale_price_skips_total',
            'Entities skipped because the price was stale',
            labelnames=['loop', 'symbol'],
            registry=reg
        )
        self.triggers_fired = Counter(
            'triggers_fired_total',
            'Triggers that fired and were queued for settlement',
            labelnames=['loop', 'reason'],
            registry=reg
        )
        self.entities_expired = Counter(
            'entities_expired_total',
            'Entities moved to EXPIRED by cleanup',
            labelnames=['loop'],
            registry=reg
        )

        # === Settlement Metrics ===
        self.settlements = Counter(
            'settlements_total',
            'Settlement sequences by outcome',
            labelnames=['loop', 'outcome'],
            registry=reg
        )
        self.partial_failures = Counter(
            'settlement_partial_failures_total',
            'Settlements that failed after at least one call finalized',
            labelnames=['loop'],
            registry=reg
        )
        self.settlement_duration_ms = Histogram(
            'settlement_duration_ms',
            'Wall time of a full settlement plan (milliseconds)',
            labelnames=['loop'],
            buckets=[100, 500, 1000, 2000, 5000, 10000, 30000, 60000],
            registry=reg
        )

        # === Ledger Metrics ===
        self.ledger_calls = Counter(
            'ledger_calls_total',
            'Ledger calls by label and result',
            labelnames=['venue', 'label', 'result'],
            registry=reg
        )
        self.ledger_call_latency_ms = Histogram(
            'ledger_call_latency_ms',
            'Submit to finality latency per call (milliseconds)',
            labelnames=['venue', 'label'],
            buckets=[100, 250, 500, 1000, 2000, 5000, 10000, 30000],
            registry=reg
        )
        self.circuit_tripped = Gauge(
            'circuit_breaker_tripped',
            'Ledger circuit breaker state (1=tripped)',
            registry=reg
        )

        # === Loop Metrics ===
        self.loop_scans = Counter(
            'loop_scans_total',
            'Scan cycles executed',
            labelnames=['loop'],
            registry=reg
        )
        self.loop_errors = Counter(
            'loop_errors_total',
            'Per-entity errors caught inside a scan',
            labelnames=['loop', 'error_type'],
            registry=reg
        )
        self.loop_scan_ms = Histogram(
            'loop_scan_ms',
            'Scan cycle duration (milliseconds)',
            labelnames=['loop'],
            buckets=[1, 5, 10, 50, 100, 500, 1000],
            registry=reg
        )
        self.loop_queue_depth = Gauge(
            'loop_settlement_queue_depth',
            'Fired entities waiting for settlement',
            labelnames=['loop'],
            registry=reg
        )
        self.tracked_entities = Gauge(
            'loop_tracked_entities',
            'Candidate entities seen in the last scan',
            labelnames=['loop'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry
