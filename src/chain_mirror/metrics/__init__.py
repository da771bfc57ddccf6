"""
Metrics module for observability.

Provides counters, gauges, and histograms for tracking synchronization behavior.
Exposes metrics in Prometheus text format.
"""

from .registry import (
    REGISTRY,
    entities_merged,
    evictions,
    fetch_duration,
    fetch_requests,
    generate_metrics,
    merge_conflicts,
    persistence_warnings,
    poll_failures,
    record_stream,
    stream_bytes,
    stream_entries,
    stream_high_watermark,
    stream_low_watermark,
    stream_observed_head,
)

__all__ = [
    "REGISTRY",
    "entities_merged",
    "evictions",
    "fetch_duration",
    "fetch_requests",
    "generate_metrics",
    "merge_conflicts",
    "persistence_warnings",
    "poll_failures",
    "record_stream",
    "stream_bytes",
    "stream_entries",
    "stream_high_watermark",
    "stream_low_watermark",
    "stream_observed_head",
]
