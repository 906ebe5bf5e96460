"""
Prometheus metrics for the edge relay.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry


class Metrics:
    """
    Centralized metrics for the relay process.
    """

    def __init__(self, service_name: str = "edgerelay", version: str = "0.1.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        # HTTP Metrics
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "method", "path", "status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["service", "method", "path"],
            registry=self.registry,
        )

        self.http_requests_active = Gauge(
            "http_requests_active",
            "Number of active HTTP requests",
            ["service"],
            registry=self.registry,
        )
        self.http_requests_active.labels(service=service_name).set(0)

        # Application Info
        self.app_info = Info(
            "app",
            "Application information",
            registry=self.registry,
        )
        self.app_info.info({"service": service_name, "version": version})

        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )
        self.app_up.labels(service=service_name, version=version).set(1)

        # Pipeline Metrics
        self.records_accepted_total = Counter(
            "relay_records_accepted_total",
            "Records durably accepted into the queue",
            ["channel"],
            registry=self.registry,
        )

        self.records_rejected_total = Counter(
            "relay_records_rejected_total",
            "Submissions rejected before reaching the queue",
            ["channel"],
            registry=self.registry,
        )

        self.deliveries_total = Counter(
            "relay_deliveries_total",
            "Delivery attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )

        self.transport_failures_total = Counter(
            "relay_transport_failures_total",
            "Failed transport attempts",
            ["transport"],
            registry=self.registry,
        )

        self.delivery_duration = Histogram(
            "relay_delivery_duration_seconds",
            "Time spent attempting delivery of one record",
            registry=self.registry,
        )

        self.queue_depth = Gauge(
            "relay_queue_depth",
            "Records resident in a queue state",
            ["state"],
            registry=self.registry,
        )

    def record_accepted(self, channel: str):
        self.records_accepted_total.labels(channel=channel).inc()

    def record_rejected(self, channel: str):
        self.records_rejected_total.labels(channel=channel).inc()

    def record_delivery(self, success: bool, duration: float):
        self.deliveries_total.labels(outcome="success" if success else "failure").inc()
        self.delivery_duration.observe(duration)

    def record_transport_failure(self, transport: str):
        self.transport_failures_total.labels(transport=transport).inc()

    def set_queue_depth(self, state: str, count: int):
        self.queue_depth.labels(state=state).set(count)
