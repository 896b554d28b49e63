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
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

ATTACH_OUTCOMES = Counter(
    "attach_outcomes_total",
    "Attach engine outcomes",
    ["transition", "outcome"],
)
PROCESSOR_ERRORS = Counter(
    "processor_errors_total",
    "Translated payment processor failures",
    ["operation", "code"],
)
WEBHOOK_EVENTS = Counter(
    "processor_webhook_events_total",
    "Processor webhook events by handling result",
    ["event_type", "result"],
)
RECONCILIATION_ALERTS = Counter(
    "reconciliation_alerts_total",
    "Reconciliation invariant violations",
    ["code"],
)
INVOICE_MIRROR_FAILURES = Counter(
    "invoice_mirror_failures_total",
    "Processor invoices that could not be mirrored locally",
    ["stage"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
