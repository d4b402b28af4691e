"""Prometheus metrics collection for observability."""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY,
)

# HTTP Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Import Run Metrics
import_runs_total = Counter(
    "import_runs_total",
    "Total number of import runs by terminal status",
    ["status"],
)

import_duration_seconds = Histogram(
    "import_duration_seconds",
    "Import run duration in seconds",
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
)

active_imports = Gauge(
    "active_imports",
    "Number of import runs in progress",
)

import_rows_total = Counter(
    "import_rows_total",
    "Rows processed by the import engine",
    ["outcome", "strategy"],
)

bulk_fallbacks_total = Counter(
    "bulk_fallbacks_total",
    "Batches that fell back from bulk creation",
    ["stage"],
)

bulk_breaker_trips_total = Counter(
    "bulk_breaker_trips_total",
    "Times bulk creation was disabled for the rest of a run",
)

# Credential Metrics
token_refreshes_total = Counter(
    "token_refreshes_total",
    "Elevated token refresh attempts",
    ["status"],
)

# Content Recovery Metrics
content_recoveries_total = Counter(
    "content_recoveries_total",
    "Content recovery attempts by strategy and outcome",
    ["strategy", "outcome"],
)

file_sessions_stored_total = Counter(
    "file_sessions_stored_total",
    "File session records stored by shape",
    ["shape"],
)

# Datastore Call Metrics
datastore_requests_total = Counter(
    "datastore_requests_total",
    "Requests sent to the remote datastore",
    ["operation", "status_code"],
)

# Error Metrics
errors_total = Counter(
    "errors_total",
    "Total number of errors",
    ["error_code", "error_category"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_http_request(method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        http_requests_total.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
        http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

    @staticmethod
    def record_import_started():
        active_imports.inc()

    @staticmethod
    def record_import_finished(status: str, duration: float):
        """Record the terminal state of an import run."""
        active_imports.dec()
        import_runs_total.labels(status=status).inc()
        import_duration_seconds.observe(duration)

    @staticmethod
    def record_rows(outcome: str, strategy: str, count: int = 1):
        """Record created or failed rows."""
        if count:
            import_rows_total.labels(outcome=outcome, strategy=strategy).inc(count)

    @staticmethod
    def record_bulk_fallback(stage: str):
        bulk_fallbacks_total.labels(stage=stage).inc()

    @staticmethod
    def record_breaker_trip():
        bulk_breaker_trips_total.inc()

    @staticmethod
    def record_token_refresh(status: str):
        token_refreshes_total.labels(status=status).inc()

    @staticmethod
    def record_recovery(strategy: str, outcome: str):
        """Record a content recovery strategy attempt."""
        content_recoveries_total.labels(strategy=strategy, outcome=outcome).inc()

    @staticmethod
    def record_file_session(shape: str):
        file_sessions_stored_total.labels(shape=shape).inc()

    @staticmethod
    def record_datastore_request(operation: str, status_code: int):
        datastore_requests_total.labels(operation=operation, status_code=status_code).inc()

    @staticmethod
    def record_error(error_code: str, error_category: str):
        """Record error occurrence."""
        errors_total.labels(error_code=error_code, error_category=error_category).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Get Prometheus metrics in text format."""
        return generate_latest(REGISTRY)


# Global instance
metrics = MetricsCollector()
