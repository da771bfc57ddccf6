"""Tests for the mirror metric registry."""

from __future__ import annotations

from chain_mirror import metrics


class TestRecordStream:
    """Tests for publishing stream state."""

    def test_sets_every_gauge(self) -> None:
        """Known watermarks and counts land in their gauges."""
        metrics.record_stream("gauge-test", low=3, high=9, head=12, entries=7, size=640)

        assert metrics.stream_low_watermark.labels(stream="gauge-test")._value.get() == 3
        assert metrics.stream_high_watermark.labels(stream="gauge-test")._value.get() == 9
        assert metrics.stream_observed_head.labels(stream="gauge-test")._value.get() == 12
        assert metrics.stream_entries.labels(stream="gauge-test")._value.get() == 7
        assert metrics.stream_bytes.labels(stream="gauge-test")._value.get() == 640

    def test_unknown_watermarks_keep_previous_values(self) -> None:
        """None leaves a watermark gauge unchanged while counts still update."""
        metrics.record_stream("gauge-none", low=1, high=2, head=3, entries=2, size=10)

        metrics.record_stream("gauge-none", low=None, high=None, head=None, entries=0, size=0)

        assert metrics.stream_high_watermark.labels(stream="gauge-none")._value.get() == 2
        assert metrics.stream_entries.labels(stream="gauge-none")._value.get() == 0


class TestGenerateMetrics:
    """Tests for the Prometheus exposition."""

    def test_output_uses_dedicated_registry(self) -> None:
        """Only mirror metrics are exported."""
        metrics.record_stream("export-test", low=1, high=4, head=4, entries=4, size=100)

        output = metrics.generate_metrics().decode()

        assert 'mirror_entries{stream="export-test"} 4.0' in output
        assert "mirror_poll_failures_total" in output
        assert "python_gc_objects_collected_total" not in output
