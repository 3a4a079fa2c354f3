"""
Write stats aggregation, periodic snapshots and OpenTelemetry export.
"""
import time
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Deque, Tuple
import statistics
import json
import uuid

from opentelemetry import metrics as otel_metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

from logger import get_logger


class StatsAggregator:
    """
    Interval write counters shared by every client.

    ``record`` and ``drain`` hold the same lock for two additions at most.
    ``drain`` is the only read path, so every sample lands in exactly one
    drained interval.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._write_count = 0
        self._write_millis_sum = 0

    def record(self, duration_ms):
        with self._lock:
            self._write_count += 1
            self._write_millis_sum += duration_ms

    def drain(self) -> Tuple[int, float]:
        """Return (write_count, write_millis_sum) and reset both to zero."""
        with self._lock:
            drained = (self._write_count, self._write_millis_sum)
            self._write_count = 0
            self._write_millis_sum = 0
        return drained


@dataclass
class StatsSnapshot:
    """One reporting interval."""
    write_count: int
    write_millis_sum: float
    interval: float
    qps: float
    avg_latency_ms: float

    @classmethod
    def from_drain(cls, write_count: int, write_millis_sum: float, interval: float) -> "StatsSnapshot":
        avg_latency_ms = 0 if write_count == 0 else write_millis_sum / write_count
        return cls(
            write_count=write_count,
            write_millis_sum=write_millis_sum,
            interval=interval,
            qps=write_count / interval,
            avg_latency_ms=avg_latency_ms,
        )

    def format(self) -> str:
        return f"write qps:{self.qps:.1f} delay:{self.avg_latency_ms:.2f}ms"


@dataclass
class RunSummary:
    """Final run statistics in standardized format."""
    app_name: str = "python"
    instance_id: str = "unknown"
    run_id: str = "unknown"
    version: str = "unknown"
    run_start: float = 0.0
    run_end: float = 0.0
    successful_writes_count: int = 0
    failed_writes_count: int = 0
    overall_throughput: float = 0.0
    min_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    median_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    avg_latency_ms: float = 0.0


class MetricsCollector:
    """Collects upsert outcomes into interval stats, run totals and OpenTelemetry."""

    def __init__(self, otel_endpoint: Optional[str] = None,
                 service_name: str = "upsert-load-test", service_version: str = "1.0.0",
                 otel_export_interval_ms: int = 5000, app_name: str = "python",
                 instance_id: str = None, run_id: str = None, version: str = None):
        self.logger = get_logger()
        self.otel_endpoint = otel_endpoint
        self.service_name = service_name
        self.service_version = service_version
        self.otel_export_interval_ms = otel_export_interval_ms
        self.app_name = app_name
        self.instance_id = instance_id if instance_id and instance_id.strip() else f"{app_name}-{str(uuid.uuid4())[:8]}"
        self.run_id = run_id if run_id and run_id.strip() else str(uuid.uuid4())
        self.version = version or "unknown"

        self.stats = StatsAggregator()

        # Run totals, kept apart from the interval counters
        self._lock = threading.Lock()
        self._successful_writes = 0
        self._failed_writes = 0
        self._failures_by_type: Dict[str, int] = defaultdict(int)
        self._latencies: Deque[float] = deque(maxlen=10000)
        self._start_time = time.time()

        self._meter_provider = None
        if self.otel_endpoint:
            self._setup_opentelemetry()

    @property
    def otel_enabled(self) -> bool:
        return self._meter_provider is not None

    def _setup_opentelemetry(self):
        """Export upsert counts and durations over OTLP/gRPC."""
        reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=self.otel_endpoint, insecure=True),
            export_interval_millis=self.otel_export_interval_ms,
        )
        resource = Resource.create({"service.name": self.app_name, "service.version": self.version})
        try:
            self._meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
        except Exception as e:
            self.logger.error(f"Failed to set up OpenTelemetry export to {self.otel_endpoint}: {e}")
            raise
        otel_metrics.set_meter_provider(self._meter_provider)

        meter = otel_metrics.get_meter(self.service_name, self.service_version)
        self._upserts = meter.create_counter(
            "upsert_operations_total", unit="1", description="Upserts issued, by outcome")
        self._upsert_duration = meter.create_histogram(
            "upsert_duration", unit="ms", description="Latency of successful upserts")
        self._connect_duration = meter.create_histogram(
            "backend_connect_duration", unit="ms", description="Time to connect and ping the backend")

        self.logger.info(f"Exporting metrics to {self.otel_endpoint} every {self.otel_export_interval_ms}ms")

    def _labels(self, **extra) -> Dict[str, str]:
        labels = {
            "app_name": self.app_name,
            "instance_id": self.instance_id,
            "run_id": self.run_id,
            "version": self.version,
        }
        labels.update(extra)
        return labels

    def record_write(self, duration_ms: float):
        """Record one successful upsert."""
        self.stats.record(duration_ms)
        with self._lock:
            self._successful_writes += 1
            self._latencies.append(duration_ms)

        if self.otel_enabled:
            self._upserts.add(1, self._labels(status="success", error_type="none"))
            self._upsert_duration.record(duration_ms, self._labels(status="success"))

    def record_failure(self, error_type: str):
        """Tally a failed upsert. Interval stats are left untouched."""
        with self._lock:
            self._failed_writes += 1
            self._failures_by_type[error_type] += 1

        if self.otel_enabled:
            self._upserts.add(1, self._labels(status="error", error_type=error_type))

    def record_connect_duration(self, duration: float, client: str = "redis"):
        """Record the duration of a backend connection initialization."""
        duration_ms = duration * 1000
        self.logger.debug(f"Backend connect took {duration_ms:.1f}ms ({client})")
        if self.otel_enabled:
            self._connect_duration.record(duration_ms, self._labels(client=client))

    def drain_interval(self, interval: float) -> StatsSnapshot:
        write_count, write_millis_sum = self.stats.drain()
        return StatsSnapshot.from_drain(write_count, write_millis_sum, interval)

    def failures_by_type(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._failures_by_type)

    def get_run_summary(self) -> RunSummary:
        """Totals since the collector was created; latency figures cover the most recent writes."""
        with self._lock:
            latencies_ms = sorted(self._latencies)
            successful = self._successful_writes
            failed = self._failed_writes

        run_end = time.time()
        elapsed = run_end - self._start_time
        summary = RunSummary(
            app_name=self.app_name,
            instance_id=self.instance_id,
            run_id=self.run_id,
            version=self.version,
            run_start=self._start_time,
            run_end=run_end,
            successful_writes_count=successful,
            failed_writes_count=failed,
            overall_throughput=round(successful / elapsed, 2) if elapsed > 0 else 0.0,
        )
        if not latencies_ms:
            return summary

        summary.min_latency_ms = round(latencies_ms[0], 2)
        summary.max_latency_ms = round(latencies_ms[-1], 2)
        summary.median_latency_ms = round(statistics.median(latencies_ms), 2)
        summary.p95_latency_ms = round(_percentile(latencies_ms, 95), 2)
        summary.p99_latency_ms = round(_percentile(latencies_ms, 99), 2)
        summary.avg_latency_ms = round(statistics.fmean(latencies_ms), 2)
        return summary

    def export_summary_to_json(self, file_path: str):
        with open(file_path, "w") as f:
            json.dump(asdict(self.get_run_summary()), f, indent=2)

    def print_summary(self):
        summary = self.get_run_summary()
        attempted = summary.successful_writes_count + summary.failed_writes_count
        success_rate = summary.successful_writes_count / attempted if attempted else 0.0
        failures = ", ".join(f"{name}={count}" for name, count in sorted(self.failures_by_type().items()))

        lines = [
            "FINAL RUN SUMMARY",
            f"Run time: {summary.run_end - summary.run_start:.2f}s",
            f"Writes: {summary.successful_writes_count:,} ok, {summary.failed_writes_count:,} failed ({success_rate:.2%} ok)",
            f"Throughput: {summary.overall_throughput:,} writes/sec",
            f"Latency min/avg/p95/p99/max: {summary.min_latency_ms}/{summary.avg_latency_ms}/"
            f"{summary.p95_latency_ms}/{summary.p99_latency_ms}/{summary.max_latency_ms} ms",
        ]
        if failures:
            lines.append(f"Failures: {failures}")

        rule = "=" * 60
        print("\n".join(["", rule, *lines, rule]))

    def shutdown(self):
        """Flush and stop the OpenTelemetry exporter."""
        if self._meter_provider is not None:
            self._meter_provider.shutdown()
            self._meter_provider = None


def _percentile(sorted_values, pct: int) -> float:
    """Exclusive-method percentile; the maximum when there are too few samples to interpolate."""
    if len(sorted_values) < 100 // (100 - pct):
        return sorted_values[-1]
    return statistics.quantiles(sorted_values, n=100)[pct - 1]


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def setup_metrics(otel_endpoint: Optional[str] = None,
                  service_name: str = "upsert-load-test", service_version: str = "1.0.0",
                  otel_export_interval_ms: int = 5000, app_name: str = "python",
                  instance_id: str = None, run_id: str = None, version: str = None) -> MetricsCollector:
    """Setup global metrics collector; OpenTelemetry export only when an endpoint is given."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(
        otel_endpoint=otel_endpoint,
        service_name=service_name,
        service_version=service_version,
        otel_export_interval_ms=otel_export_interval_ms,
        app_name=app_name,
        instance_id=instance_id,
        run_id=run_id,
        version=version
    )
    return _metrics_collector
