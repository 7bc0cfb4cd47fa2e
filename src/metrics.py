"""Prometheus metrics for the price reduction engine."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("pricedrop", "Price reduction engine application info")
app_info.info({"version": "0.1.0", "name": "pricedrop"})

# Marketplace search metrics
marketplace_searches_total = Counter(
    "marketplace_searches_total",
    "Total number of marketplace search calls",
    ["tier", "status"],
)

marketplace_search_duration_seconds = Histogram(
    "marketplace_search_duration_seconds",
    "Time spent on marketplace search calls",
    ["tier"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

# Resolver metrics
competitive_resolutions_total = Counter(
    "competitive_resolutions_total",
    "Total number of competitive snapshots produced",
    ["tier"],
)

# Reduction metrics
reduction_attempts_total = Counter(
    "reduction_attempts_total",
    "Total number of reduction attempts",
    ["outcome", "strategy", "reduction_type"],
)

price_apply_total = Counter(
    "price_apply_total",
    "Total number of price-apply gateway calls",
    ["status"],
)

price_apply_duration_seconds = Histogram(
    "price_apply_duration_seconds",
    "Price-apply gateway latency",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of reduction scheduler invocations",
    ["trigger", "status"],
)

scheduler_last_completed_timestamp = Gauge(
    "scheduler_last_completed_timestamp",
    "Timestamp of last completed reduction run",
)

attempts_purged_total = Counter(
    "reduction_attempts_purged_total",
    "Total number of reduction attempt rows removed by retention",
)


def record_search(tier: str, status: str, duration: float):
    """Record a marketplace search call."""
    marketplace_searches_total.labels(tier=tier, status=status).inc()
    marketplace_search_duration_seconds.labels(tier=tier).observe(duration)


def record_resolution(tier: str):
    """Record a competitive snapshot."""
    competitive_resolutions_total.labels(tier=tier).inc()


def record_attempt(outcome: str, strategy: str, reduction_type: str = "scheduled"):
    """Record a reduction attempt."""
    reduction_attempts_total.labels(
        outcome=outcome, strategy=strategy, reduction_type=reduction_type
    ).inc()


def record_price_apply(success: bool, duration: float):
    """Record a price-apply gateway call."""
    status = "success" if success else "error"
    price_apply_total.labels(status=status).inc()
    price_apply_duration_seconds.observe(duration)


def record_scheduler_run(trigger: str, status: str):
    """Record a scheduler run and its terminal status."""
    scheduler_runs_total.labels(trigger=trigger, status=status).inc()
    if status == "completed":
        scheduler_last_completed_timestamp.set(time.time())
