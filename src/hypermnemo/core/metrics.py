"""
Observability Metrics
=====================
Central definition of Prometheus metrics and utility decorators.
"""

import time
import functools
from typing import Optional

from prometheus_client import Counter, Histogram, Gauge

# --- Metrics Definitions ---
# Memory store
MEMORY_LIVE_TOTAL = Gauge(
    "hypermnemo_memory_live_total",
    "Live (non-retired) memories",
    ["tier"]
)
STORE_LATENCY = Histogram(
    "hypermnemo_store_seconds",
    "Time taken to store a memory"
)
RETRIEVE_LATENCY = Histogram(
    "hypermnemo_retrieve_seconds",
    "Time taken to answer a retrieval query"
)

# Maintenance passes
CONSOLIDATION_MERGES = Counter(
    "hypermnemo_consolidation_merges_total",
    "Groups merged by consolidation",
    ["tier", "strategy"]
)
COMPRESSION_ENTRIES = Counter(
    "hypermnemo_compression_entries_total",
    "Entries compressed",
    ["tier", "algorithm"]
)
MAINTENANCE_SKIPPED = Counter(
    "hypermnemo_maintenance_skipped_total",
    "Consolidation/compression passes reported as zero-effect",
    ["operation", "reason"]
)

# Identities
IDENTITY_TOTAL = Gauge(
    "hypermnemo_identity_total",
    "Registered (non-tombstoned) identities"
)

# State persistence
STATE_OPERATION_COUNT = Counter(
    "hypermnemo_state_ops_total",
    "State save/restore operations",
    ["operation", "status"]
)
STATE_LATENCY = Histogram(
    "hypermnemo_state_latency_seconds",
    "State save/restore latency",
    ["operation"]
)


# --- Decorators ---

def track_latency(metric: Histogram, labels: Optional[dict] = None):
    """Decorator to track function execution time."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _observe(metric, labels, time.perf_counter() - start_time)
        return wrapper
    return decorator


def _observe(metric: Histogram, labels: Optional[dict], duration: float) -> None:
    if labels:
        metric.labels(**labels).observe(duration)
    else:
        metric.observe(duration)


def update_live_counts(counts: dict) -> None:
    """Publish live-entry counts per tier."""
    for tier, count in counts.items():
        MEMORY_LIVE_TOTAL.labels(tier=tier).set(count)


def record_skip(operation: str, reason: str) -> None:
    MAINTENANCE_SKIPPED.labels(operation=operation, reason=reason).inc()
