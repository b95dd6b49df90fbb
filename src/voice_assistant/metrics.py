"""Prometheus-compatible metrics for voice assistant observability.

Tracks:
- Session lifecycle (total, active)
- Turn outcomes (started, completed, failed by provider)
- Transcription connection churn and audio chunk forwarding/dropping
- Provider latency (completion, speech synthesis)

Metrics are collected in-memory and exposed via the /metrics endpoint in
Prometheus exposition format.

Architecture:
    Session → MetricsCollector → export_prometheus() → /metrics endpoint
                    ↓
             get_summary() → /metrics/summary
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Metric types following Prometheus conventions."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class HistogramBucket:
    """Histogram bucket for latency distributions."""

    le: float  # Upper bound (less-than-or-equal)
    count: int = 0  # Cumulative observations <= le


def _provider_latency_buckets() -> list[HistogramBucket]:
    # Provider round trips: 50ms to 30s
    bounds = [0.05, 0.1, 0.25, 0.5, 0.75, 1.0, 1.5, 2.0, 3.0, 5.0, 10.0, 30.0]
    return [HistogramBucket(le=b) for b in bounds] + [HistogramBucket(le=float("inf"))]


@dataclass
class Histogram:
    """Histogram metric for tracking latency distributions."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    buckets: list[HistogramBucket] = field(default_factory=_provider_latency_buckets)
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        """Record an observation in seconds."""
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def quantile(self, q: float) -> float | None:
        """Approximate a quantile (e.g., 0.95 for p95) by bucket interpolation.

        Args:
            q: Quantile to calculate (0.0 to 1.0)

        Returns:
            Approximate quantile value, or None if no data
        """
        if self.count == 0:
            return None

        target_rank = q * self.count
        prev_le = 0.0
        prev_count = 0
        for bucket in self.buckets:
            if bucket.count >= target_rank:
                in_bucket = bucket.count - prev_count
                if in_bucket == 0 or bucket.le == float("inf"):
                    return prev_le if bucket.le == float("inf") else bucket.le
                fraction = (target_rank - prev_count) / in_bucket
                return prev_le + fraction * (bucket.le - prev_le)
            prev_le = bucket.le
            prev_count = bucket.count

        return prev_le


@dataclass
class Counter:
    """Counter metric (monotonically increasing)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        """Increment counter."""
        self.value += amount


@dataclass
class Gauge:
    """Gauge metric (can go up or down)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def set(self, value: float) -> None:
        """Set gauge value."""
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        """Increment gauge."""
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        """Decrement gauge."""
        self.value -= amount


_COUNTER_HELP = {
    "sessions_total": "Total number of client sessions started",
    "turns_started_total": "Total number of user turns started",
    "turns_completed_total": "Total number of turns that delivered audio",
    "turns_failed_total": "Total number of turns aborted by a provider failure",
    "transcription_reconnects_total": "Total number of transcription reconnect attempts",
    "audio_chunks_forwarded_total": "Total number of audio chunks sent to transcription",
    "audio_chunks_dropped_total": "Total number of audio chunks dropped",
}


class MetricsCollector:
    """Thread-safe metrics collector with Prometheus-compatible output.

    Labelled counters (``turns_failed_total{provider}``,
    ``audio_chunks_dropped_total{reason}``) get one series per label value,
    created on first use.
    """

    def __init__(self) -> None:
        """Initialize metrics collector."""
        self._lock = threading.RLock()

        # Keyed by (metric name, sorted label items)
        self._counters: dict[tuple[str, tuple[tuple[str, str], ...]], Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

        for name in (
            "sessions_total",
            "turns_started_total",
            "turns_completed_total",
            "transcription_reconnects_total",
            "audio_chunks_forwarded_total",
        ):
            self._counter(name)

        self._gauges["active_sessions"] = Gauge(
            name="active_sessions",
            help="Number of currently connected sessions",
        )
        self._histograms["completion_latency_seconds"] = Histogram(
            name="completion_latency_seconds",
            help="Completion request latency in seconds",
        )
        self._histograms["synthesis_latency_seconds"] = Histogram(
            name="synthesis_latency_seconds",
            help="Speech synthesis request latency in seconds",
        )

        logger.info("MetricsCollector initialized")

    def _counter(self, name: str, **labels: str) -> Counter:
        key = (name, tuple(sorted(labels.items())))
        counter = self._counters.get(key)
        if counter is None:
            counter = Counter(name=name, help=_COUNTER_HELP[name], labels=dict(labels))
            self._counters[key] = counter
        return counter

    # === Session metrics ===

    def record_session_start(self) -> None:
        """Record a new client session."""
        with self._lock:
            self._counter("sessions_total").inc()
            self._gauges["active_sessions"].inc()

    def record_session_end(self) -> None:
        """Record a closed client session."""
        with self._lock:
            self._gauges["active_sessions"].dec()

    # === Turn metrics ===

    def record_turn_started(self) -> None:
        """Record a finalized user utterance entering the reply pipeline."""
        with self._lock:
            self._counter("turns_started_total").inc()

    def record_turn_completed(self) -> None:
        """Record a turn whose audio reached the client."""
        with self._lock:
            self._counter("turns_completed_total").inc()

    def record_turn_failed(self, provider: str) -> None:
        """Record a turn aborted by a provider failure.

        Args:
            provider: Failing provider ("completion" or "synthesis")
        """
        with self._lock:
            self._counter("turns_failed_total", provider=provider).inc()

    def observe_completion_latency(self, latency_seconds: float) -> None:
        """Record completion round-trip latency."""
        with self._lock:
            self._histograms["completion_latency_seconds"].observe(latency_seconds)

    def observe_synthesis_latency(self, latency_seconds: float) -> None:
        """Record speech synthesis round-trip latency."""
        with self._lock:
            self._histograms["synthesis_latency_seconds"].observe(latency_seconds)

    # === Transcription metrics ===

    def record_reconnect(self) -> None:
        """Record a transcription reconnect attempt."""
        with self._lock:
            self._counter("transcription_reconnects_total").inc()

    def record_chunk_forwarded(self) -> None:
        """Record an audio chunk sent to the transcription provider."""
        with self._lock:
            self._counter("audio_chunks_forwarded_total").inc()

    def record_chunk_dropped(self, reason: str) -> None:
        """Record a dropped audio chunk.

        Args:
            reason: Why the chunk was dropped (e.g. "connecting", "awaiting_reply")
        """
        with self._lock:
            self._counter("audio_chunks_dropped_total", reason=reason).inc()

    # === Export ===

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format.

        Returns:
            Metrics in Prometheus text format for scraping
        """
        with self._lock:
            lines: list[str] = []

            by_name: dict[str, list[Counter]] = {}
            for counter in self._counters.values():
                by_name.setdefault(counter.name, []).append(counter)
            for name, series in by_name.items():
                lines.append(f"# HELP {name} {series[0].help}")
                lines.append(f"# TYPE {name} {MetricType.COUNTER.value}")
                for counter in series:
                    lines.append(f"{name}{self._format_labels(counter.labels)} {counter.value}")

            for gauge in self._gauges.values():
                lines.append(f"# HELP {gauge.name} {gauge.help}")
                lines.append(f"# TYPE {gauge.name} {MetricType.GAUGE.value}")
                lines.append(f"{gauge.name}{self._format_labels(gauge.labels)} {gauge.value}")

            for histogram in self._histograms.values():
                lines.append(f"# HELP {histogram.name} {histogram.help}")
                lines.append(f"# TYPE {histogram.name} {MetricType.HISTOGRAM.value}")
                labels_str = self._format_labels(histogram.labels)
                for bucket in histogram.buckets:
                    le = "+Inf" if bucket.le == float("inf") else str(bucket.le)
                    bucket_labels = self._format_labels({**histogram.labels, "le": le})
                    lines.append(f"{histogram.name}_bucket{bucket_labels} {bucket.count}")
                lines.append(f"{histogram.name}_sum{labels_str} {histogram.sum}")
                lines.append(f"{histogram.name}_count{labels_str} {histogram.count}")

            return "\n".join(lines) + "\n"

    def _format_labels(self, labels: dict[str, str]) -> str:
        if not labels:
            return ""

        label_pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(label_pairs) + "}"

    # === Summary statistics ===

    def counter_value(self, name: str, **labels: str) -> float:
        """Current value of a counter series (0 if never incremented)."""
        with self._lock:
            counter = self._counters.get((name, tuple(sorted(labels.items()))))
            return counter.value if counter is not None else 0.0

    def get_summary(self) -> dict[str, float | None]:
        """Get summary statistics for the monitoring dashboard.

        Returns:
            Dictionary with key counters and latency percentiles
        """
        with self._lock:
            completion = self._histograms["completion_latency_seconds"]
            synthesis = self._histograms["synthesis_latency_seconds"]

            def ms(value: float | None) -> float | None:
                return value * 1000 if value is not None else None

            dropped = sum(
                c.value for c in self._counters.values() if c.name == "audio_chunks_dropped_total"
            )
            failed = sum(
                c.value for c in self._counters.values() if c.name == "turns_failed_total"
            )

            return {
                "sessions_total": self._counter("sessions_total").value,
                "active_sessions": self._gauges["active_sessions"].value,
                "turns_started": self._counter("turns_started_total").value,
                "turns_completed": self._counter("turns_completed_total").value,
                "turns_failed": failed,
                "transcription_reconnects": self._counter("transcription_reconnects_total").value,
                "audio_chunks_forwarded": self._counter("audio_chunks_forwarded_total").value,
                "audio_chunks_dropped": dropped,
                "completion_latency_p50_ms": ms(completion.quantile(0.50)),
                "completion_latency_p95_ms": ms(completion.quantile(0.95)),
                "synthesis_latency_p50_ms": ms(synthesis.quantile(0.50)),
                "synthesis_latency_p95_ms": ms(synthesis.quantile(0.95)),
            }


# Global metrics collector singleton
_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector singleton.

    Returns:
        Global MetricsCollector instance

    Thread-safety: Safe for concurrent access.
    """
    global _metrics_collector

    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()

    return _metrics_collector
