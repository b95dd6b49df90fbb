"""Unit tests for metrics collection and Prometheus export."""

import pytest

from voice_assistant import metrics as metrics_module
from voice_assistant.metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsCollector,
    get_metrics_collector,
)


@pytest.fixture
def collector() -> MetricsCollector:
    """Create a fresh metrics collector."""
    return MetricsCollector()


class TestPrimitives:
    """Test counter, gauge and histogram primitives."""

    def test_counter(self) -> None:
        """Test counter increments."""
        counter = Counter(name="c_total", help="c")
        counter.inc()
        counter.inc(2)
        assert counter.value == 3

    def test_gauge(self) -> None:
        """Test gauge up and down."""
        gauge = Gauge(name="g", help="g")
        gauge.inc()
        gauge.inc()
        gauge.dec()
        assert gauge.value == 1
        gauge.set(5)
        assert gauge.value == 5

    def test_histogram_buckets_cumulative(self) -> None:
        """Test observations land in every bucket at or above the value."""
        histogram = Histogram(name="h", help="h")
        histogram.observe(0.3)

        counts = {bucket.le: bucket.count for bucket in histogram.buckets}
        assert counts[0.25] == 0
        assert counts[0.5] == 1
        assert counts[30.0] == 1
        assert counts[float("inf")] == 1
        assert histogram.sum == pytest.approx(0.3)
        assert histogram.count == 1

    def test_histogram_quantile_empty(self) -> None:
        """Test quantile with no data."""
        assert Histogram(name="h", help="h").quantile(0.5) is None

    def test_histogram_quantile(self) -> None:
        """Test quantile interpolation stays within the right bucket."""
        histogram = Histogram(name="h", help="h")
        for _ in range(90):
            histogram.observe(0.2)
        for _ in range(10):
            histogram.observe(4.0)

        p50 = histogram.quantile(0.5)
        p99 = histogram.quantile(0.99)
        assert p50 is not None and 0.1 <= p50 <= 0.25
        assert p99 is not None and 3.0 <= p99 <= 5.0

    def test_histogram_quantile_overflow(self) -> None:
        """Test values beyond the last finite bound report that bound."""
        histogram = Histogram(name="h", help="h")
        histogram.observe(120.0)

        assert histogram.quantile(0.5) == 30.0


class TestMetricsCollector:
    """Test the metrics collector."""

    def test_session_lifecycle(self, collector: MetricsCollector) -> None:
        """Test sessions_total and active_sessions."""
        collector.record_session_start()
        collector.record_session_start()
        collector.record_session_end()

        summary = collector.get_summary()
        assert summary["sessions_total"] == 2
        assert summary["active_sessions"] == 1

    def test_turn_counters(self, collector: MetricsCollector) -> None:
        """Test turn outcome counters."""
        collector.record_turn_started()
        collector.record_turn_started()
        collector.record_turn_completed()
        collector.record_turn_failed("synthesis")

        assert collector.counter_value("turns_started_total") == 2
        assert collector.counter_value("turns_completed_total") == 1
        assert collector.counter_value("turns_failed_total", provider="synthesis") == 1
        assert collector.counter_value("turns_failed_total", provider="completion") == 0
        assert collector.get_summary()["turns_failed"] == 1

    def test_chunk_counters(self, collector: MetricsCollector) -> None:
        """Test forwarded and dropped chunk counters by reason."""
        collector.record_chunk_forwarded()
        collector.record_chunk_dropped("connecting")
        collector.record_chunk_dropped("connecting")
        collector.record_chunk_dropped("awaiting_reply")
        collector.record_reconnect()

        assert collector.counter_value("audio_chunks_dropped_total", reason="connecting") == 2
        summary = collector.get_summary()
        assert summary["audio_chunks_forwarded"] == 1
        assert summary["audio_chunks_dropped"] == 3
        assert summary["transcription_reconnects"] == 1

    def test_latency_summary(self, collector: MetricsCollector) -> None:
        """Test latency percentiles are reported in milliseconds."""
        assert collector.get_summary()["completion_latency_p50_ms"] is None

        collector.observe_completion_latency(0.8)
        collector.observe_synthesis_latency(0.4)

        summary = collector.get_summary()
        completion_p50 = summary["completion_latency_p50_ms"]
        synthesis_p50 = summary["synthesis_latency_p50_ms"]
        assert completion_p50 is not None and 750 <= completion_p50 <= 1000
        assert synthesis_p50 is not None and 250 <= synthesis_p50 <= 500


class TestPrometheusExport:
    """Test Prometheus exposition format."""

    def test_export_contains_all_metrics(self, collector: MetricsCollector) -> None:
        """Test every metric family has HELP and TYPE lines."""
        text = collector.export_prometheus()

        for name, kind in [
            ("sessions_total", "counter"),
            ("turns_started_total", "counter"),
            ("turns_completed_total", "counter"),
            ("transcription_reconnects_total", "counter"),
            ("audio_chunks_forwarded_total", "counter"),
            ("active_sessions", "gauge"),
            ("completion_latency_seconds", "histogram"),
            ("synthesis_latency_seconds", "histogram"),
        ]:
            assert f"# HELP {name} " in text
            assert f"# TYPE {name} {kind}" in text
        assert text.endswith("\n")

    def test_labelled_series_share_one_header(self, collector: MetricsCollector) -> None:
        """Test labelled series are grouped under a single HELP/TYPE."""
        collector.record_chunk_dropped("connecting")
        collector.record_chunk_dropped("reconnect_failed")

        text = collector.export_prometheus()

        assert text.count("# TYPE audio_chunks_dropped_total counter") == 1
        assert 'audio_chunks_dropped_total{reason="connecting"} 1.0' in text
        assert 'audio_chunks_dropped_total{reason="reconnect_failed"} 1.0' in text

    def test_histogram_lines(self, collector: MetricsCollector) -> None:
        """Test histogram bucket, sum and count lines."""
        collector.observe_completion_latency(0.3)

        text = collector.export_prometheus()

        assert 'completion_latency_seconds_bucket{le="0.25"} 0' in text
        assert 'completion_latency_seconds_bucket{le="0.5"} 1' in text
        assert 'completion_latency_seconds_bucket{le="+Inf"} 1' in text
        assert "completion_latency_seconds_sum 0.3" in text
        assert "completion_latency_seconds_count 1" in text


def test_global_collector_is_singleton(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test get_metrics_collector returns one shared instance."""
    monkeypatch.setattr(metrics_module, "_metrics_collector", None)

    first = get_metrics_collector()
    second = get_metrics_collector()

    assert first is second
