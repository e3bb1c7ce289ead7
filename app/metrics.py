from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

DEVICE_CALL_DURATION = Histogram(
    "device_call_duration_seconds",
    "Duration of device outbox calls",
    ["action", "status"],
)
DEVICE_DRIFT = Counter(
    "device_drift_total",
    "Outbox messages whose device change failed after the local commit",
    ["action"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def observe_request(method: str, path: str, status: int, duration: float) -> None:
    REQUEST_COUNT.labels(method=method, path=path, status=str(status)).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=str(status)).observe(duration)


def observe_device_call(action: str, status: str, duration: float) -> None:
    DEVICE_CALL_DURATION.labels(action=action, status=status).observe(duration)


def record_drift(action: str) -> None:
    DEVICE_DRIFT.labels(action=action).inc()
