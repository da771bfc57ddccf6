"""
Metric registry using prometheus_client.

Provides pre-defined metrics for the sync engine.
Exposes metrics in Prometheus text format via the /metrics endpoint.
"""

from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Create a dedicated registry for chain-mirror metrics.
#
# Using a dedicated registry avoids pollution from default Python process metrics.
REGISTRY = CollectorRegistry()

# -----------------------------------------------------------------------------
# Stream State
# -----------------------------------------------------------------------------

stream_low_watermark = Gauge(
    "mirror_low_watermark",
    "Lowest height of the contiguous cached range",
    ["stream"],
    registry=REGISTRY,
)

stream_high_watermark = Gauge(
    "mirror_high_watermark",
    "Highest height of the contiguous cached range",
    ["stream"],
    registry=REGISTRY,
)

stream_observed_head = Gauge(
    "mirror_observed_head",
    "Highest height reported by the remote source",
    ["stream"],
    registry=REGISTRY,
)

stream_entries = Gauge(
    "mirror_entries",
    "Cached entries",
    ["stream"],
    registry=REGISTRY,
)

stream_bytes = Gauge(
    "mirror_bytes",
    "Approximate cached payload bytes",
    ["stream"],
    registry=REGISTRY,
)

# -----------------------------------------------------------------------------
# Fetch and Merge
# -----------------------------------------------------------------------------

fetch_requests = Counter(
    "mirror_fetch_requests_total",
    "Range requests issued to the remote source by outcome",
    ["stream", "outcome"],
    registry=REGISTRY,
)

fetch_duration = Histogram(
    "mirror_fetch_seconds",
    "Range request duration",
    ["stream"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

entities_merged = Counter(
    "mirror_entities_merged_total",
    "Entities newly inserted into the cache",
    ["stream"],
    registry=REGISTRY,
)

merge_conflicts = Counter(
    "mirror_merge_conflicts_total",
    "Batches discarded because of conflicting payloads",
    ["stream"],
    registry=REGISTRY,
)

evictions = Counter(
    "mirror_evictions_total",
    "Entries evicted to honor the retention limit",
    ["stream"],
    registry=REGISTRY,
)

# -----------------------------------------------------------------------------
# Scheduling and Persistence
# -----------------------------------------------------------------------------

poll_failures = Counter(
    "mirror_poll_failures_total",
    "Poll cycles that ended in backoff",
    registry=REGISTRY,
)

persistence_warnings = Counter(
    "mirror_persistence_warnings_total",
    "Non-fatal persistence failures by kind",
    ["kind"],
    registry=REGISTRY,
)


def record_stream(
    stream: str,
    *,
    low: int | None,
    high: int | None,
    head: int | None,
    entries: int,
    size: int,
) -> None:
    """Publish the current state of one stream to the gauges."""
    if low is not None:
        stream_low_watermark.labels(stream=stream).set(float(low))
    if high is not None:
        stream_high_watermark.labels(stream=stream).set(float(high))
    if head is not None:
        stream_observed_head.labels(stream=stream).set(float(head))
    stream_entries.labels(stream=stream).set(float(entries))
    stream_bytes.labels(stream=stream).set(float(size))


def generate_metrics() -> bytes:
    """
    Generate Prometheus metrics output.

    Returns:
        Prometheus text format output as bytes.
    """
    return generate_latest(REGISTRY)
