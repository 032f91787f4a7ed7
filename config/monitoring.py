# config/monitoring.py

import os

from prometheus_client import Counter, Histogram

_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30)


class MonitoringConfig:
    """Monitoring and logging configuration"""

    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    APP_NAME = os.environ.get("APP_NAME", "revops-sync")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    MONITORING_ENABLED = True
    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


class SyncMonitoring:
    """Prometheus metric helpers for sync API endpoints."""

    JOB_CONTROL_COUNTER = Counter(
        "sync_job_control_requests_total",
        "Total job-control page advance requests.",
        labelnames=("source", "status"),
    )
    JOB_CONTROL_LATENCY = Histogram(
        "sync_job_control_request_seconds",
        "Latency histogram for job-control page advance requests.",
        labelnames=("source", "status"),
        buckets=_LATENCY_BUCKETS,
    )

    RUNS_LIST_COUNTER = Counter(
        "sync_runs_list_requests_total",
        "Total sync runs list API requests.",
        labelnames=("status",),
    )
    RUNS_LIST_LATENCY = Histogram(
        "sync_runs_list_request_seconds",
        "Latency histogram for sync runs list API.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )
    RUNS_LIST_RESULT_SIZE = Histogram(
        "sync_runs_list_result_size",
        "Number of runs returned by list endpoint.",
        labelnames=("status",),
        buckets=(0, 1, 5, 10, 25, 50, 100),
    )

    CONFLICTS_LIST_COUNTER = Counter(
        "sync_conflicts_list_requests_total",
        "Total conflict queue list API requests.",
        labelnames=("status",),
    )
    CONFLICTS_LIST_LATENCY = Histogram(
        "sync_conflicts_list_request_seconds",
        "Latency histogram for conflict queue list API.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )

    CONFLICT_RESOLVE_COUNTER = Counter(
        "sync_conflict_resolve_requests_total",
        "Conflict resolution requests by resolution and outcome.",
        labelnames=("resolution", "status"),
    )

    WEBHOOK_COUNTER = Counter(
        "sync_webhook_requests_total",
        "Inbound webhook deliveries by source and outcome.",
        labelnames=("source", "status"),
    )
    WEBHOOK_LATENCY = Histogram(
        "sync_webhook_request_seconds",
        "Latency histogram for inbound webhook handling.",
        labelnames=("source", "status"),
        buckets=_LATENCY_BUCKETS,
    )

    @classmethod
    def record_job_control(cls, *, source: str, status: str, duration_seconds: float):
        cls.JOB_CONTROL_COUNTER.labels(source=source, status=status).inc()
        cls.JOB_CONTROL_LATENCY.labels(source=source, status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_runs_list(cls, *, duration_seconds: float, status: str, result_count: int):
        cls.RUNS_LIST_COUNTER.labels(status=status).inc()
        cls.RUNS_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        cls.RUNS_LIST_RESULT_SIZE.labels(status=status).observe(float(max(result_count, 0)))

    @classmethod
    def record_conflicts_list(cls, *, duration_seconds: float, status: str):
        cls.CONFLICTS_LIST_COUNTER.labels(status=status).inc()
        cls.CONFLICTS_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_conflict_resolution(cls, *, resolution: str, status: str):
        cls.CONFLICT_RESOLVE_COUNTER.labels(resolution=resolution, status=status).inc()

    @classmethod
    def record_webhook(cls, *, source: str, status: str, duration_seconds: float):
        cls.WEBHOOK_COUNTER.labels(source=source, status=status).inc()
        cls.WEBHOOK_LATENCY.labels(source=source, status=status).observe(max(duration_seconds, 0.0))
