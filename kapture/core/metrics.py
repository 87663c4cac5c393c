"""Prometheus metrics for the service.

Covers HTTP traffic, job submissions, reconciliation sweeps, retention and
cleanup accounting, circuit breaker state and the progress cache.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

app_info = Info("kapture", "Kapture application information")

# HTTP request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

errors_total = Counter(
    "errors_total",
    "Total errors by error code and endpoint",
    ["error_code", "endpoint"],
)

# Job metrics
job_submissions_total = Counter(
    "kapture_job_submissions_total",
    "Download jobs submitted to the extraction worker",
    ["platform", "file_kind"],
)

reconcile_outcomes_total = Counter(
    "kapture_reconcile_outcomes_total",
    "Per-job reconciliation outcomes",
    ["outcome"],
)

reconcile_duration_seconds = Histogram(
    "kapture_reconcile_duration_seconds",
    "Duration of one reconciliation batch",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

reconcile_concurrency = Gauge(
    "kapture_reconcile_concurrency",
    "Current adaptive concurrency limit for worker status polls",
)

# Retention metrics
retention_marked_total = Counter(
    "kapture_retention_marked_total",
    "Artifacts newly scheduled for deletion by retention recompute",
)

cleanup_files_total = Counter(
    "kapture_cleanup_files_total",
    "Artifacts deleted from object storage",
    ["operation"],
)

cleanup_bytes_freed_total = Counter(
    "kapture_cleanup_bytes_freed_total",
    "Bytes freed by successful artifact deletions",
    ["operation"],
)

cleanup_errors_total = Counter(
    "kapture_cleanup_errors_total",
    "Per-item cleanup failures",
    ["operation"],
)

# Dependency metrics
circuit_state = Gauge(
    "kapture_circuit_state",
    "Circuit breaker state per dependency (0=closed, 1=half-open, 2=open)",
    ["dependency"],
)

circuit_failures_total = Counter(
    "kapture_circuit_failures_total",
    "Failed calls recorded by circuit breakers",
    ["dependency"],
)

progress_cache_entries = Gauge(
    "kapture_progress_cache_entries",
    "Progress snapshots currently cached",
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half-open": 1, "open": 2}


class MetricsCollector:
    """Static helpers for recording metrics from anywhere in the service."""

    @staticmethod
    def record_request(
        method: str,
        endpoint: str,
        status: int,
        duration: float,
    ) -> None:
        """Record HTTP request metrics.

        Args:
            method: HTTP method (GET, POST, etc.).
            endpoint: Normalized route template.
            status: HTTP response status code.
            duration: Request duration in seconds.
        """
        http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        http_request_duration_seconds.labels(
            method=method,
            endpoint=endpoint,
        ).observe(duration)

    @staticmethod
    def record_error(error_code: str, endpoint: str) -> None:
        errors_total.labels(error_code=error_code, endpoint=endpoint).inc()

    @staticmethod
    def record_submission(platform: str, file_kind: str) -> None:
        job_submissions_total.labels(platform=platform, file_kind=file_kind).inc()

    @staticmethod
    def record_reconcile_outcome(outcome: str) -> None:
        """Record one job's reconciliation outcome.

        Args:
            outcome: One of 'completed', 'failed', 'processing',
                'unchanged', 'errored'.
        """
        reconcile_outcomes_total.labels(outcome=outcome).inc()

    @staticmethod
    def observe_reconcile_batch(duration: float) -> None:
        reconcile_duration_seconds.observe(duration)

    @staticmethod
    def update_reconcile_concurrency(limit: int) -> None:
        reconcile_concurrency.set(limit)

    @staticmethod
    def record_retention_marked(count: int) -> None:
        if count > 0:
            retention_marked_total.inc(count)

    @staticmethod
    def record_cleanup(operation: str, files: int, bytes_freed: int, errors: int) -> None:
        """Record the outcome of one cleanup run.

        Args:
            operation: 'scheduled' or 'emergency'.
            files: Artifacts deleted.
            bytes_freed: Bytes freed by those deletions.
            errors: Items that failed.
        """
        if files:
            cleanup_files_total.labels(operation=operation).inc(files)
        if bytes_freed:
            cleanup_bytes_freed_total.labels(operation=operation).inc(bytes_freed)
        if errors:
            cleanup_errors_total.labels(operation=operation).inc(errors)

    @staticmethod
    def update_circuit_state(dependency: str, state: str) -> None:
        circuit_state.labels(dependency=dependency).set(_CIRCUIT_STATE_VALUES.get(state, 0))

    @staticmethod
    def record_circuit_failure(dependency: str) -> None:
        circuit_failures_total.labels(dependency=dependency).inc()

    @staticmethod
    def update_progress_cache_size(entries: int) -> None:
        progress_cache_entries.set(entries)


def initialize_metrics(version: str) -> None:
    """Publish the application version. Called once during startup."""
    app_info.info({"version": version})
