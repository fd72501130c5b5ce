"""Prometheus metrics for external-service calls and dedup reuse."""

from prometheus_client import Counter, Histogram

external_calls_total = Counter(
    "docassist_external_calls_total",
    "Total calls to the hosted retrieval/completion service",
    ["operation", "outcome"],
)

external_latency_ms = Histogram(
    "docassist_external_latency_ms",
    "External service call latency in milliseconds",
    ["operation"],
    buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)

dedup_reuse_total = Counter(
    "docassist_dedup_reuse_total",
    "Synchronized units served from the dedup ledger instead of re-uploading",
    ["kind"],
)


class PrometheusExternalMetrics:
    """Prometheus-based external call metrics."""

    def record_call(self, operation: str, outcome: str, latency_ms: float) -> None:
        """Record one external call with its outcome and latency."""
        external_calls_total.labels(operation=operation, outcome=outcome).inc()
        external_latency_ms.labels(operation=operation).observe(latency_ms)

    def inc_reuse(self, kind: str) -> None:
        """Increment dedup reuse counter."""
        dedup_reuse_total.labels(kind=kind).inc()
