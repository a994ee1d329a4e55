from typing import Dict

from prometheus_client import CollectorRegistry, Counter, Gauge, Info, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST

from cors_gateway.vars import SERVICE_NAME


class GatewayMetrics:
    """
    Process-wide request counters.

    Created once at import time and never reset; prometheus_client metrics
    are safe to update from concurrent requests.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()
        self.requests = Counter(
            "cors_gateway_requests",
            "Total HTTP requests received",
            registry=self.registry,
        )
        self.in_flight = Gauge(
            "cors_gateway_requests_inflight",
            "In-flight HTTP requests",
            registry=self.registry,
        )
        self.errors = Counter(
            "cors_gateway_errors",
            "Total error responses",
            registry=self.registry,
        )
        self.app_info = Info(
            "cors_gateway_app", "Application Info", registry=self.registry
        )
        self.app_info.info({"app_name": SERVICE_NAME})

    def request_started(self) -> None:
        self.requests.inc()
        self.in_flight.inc()

    def request_finished(self) -> None:
        self.in_flight.dec()

    def error(self) -> None:
        self.errors.inc()

    def snapshot(self) -> Dict[str, float]:
        sample = self.registry.get_sample_value
        return {
            "requests_total": sample("cors_gateway_requests_total") or 0.0,
            "requests_inflight": sample("cors_gateway_requests_inflight") or 0.0,
            "errors_total": sample("cors_gateway_errors_total") or 0.0,
        }

    def render(self) -> bytes:
        return generate_latest(self.registry)


gateway_metrics = GatewayMetrics()
