"""
Prometheus metrics for the authorization engine.

All collectors live on a private registry so repeated imports in tests never
collide with the process-wide default registry.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "scopegate_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "scopegate_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "scopegate_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

authz_decisions_total = Counter(
    "scopegate_authz_decisions_total",
    "Authorization decisions by outcome",
    ["resource", "action", "outcome"],  # outcome: granted | NO_GRANT | SCOPE_MISMATCH | ...
    registry=REGISTRY,
)

authz_degraded_total = Counter(
    "scopegate_authz_degraded_total",
    "Requests handled under the store-unavailable failure policy",
    ["policy", "stage"],  # stage: check | consume
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'PermissionService')
            operation: Operation/method name (e.g., 'check_permission')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_decision(resource: str, action: str, outcome: str) -> None:
        authz_decisions_total.labels(resource=resource, action=action, outcome=outcome).inc()

    @staticmethod
    def record_degradation(policy: str, stage: str) -> None:
        authz_degraded_total.labels(policy=policy, stage=stage).inc()

    @staticmethod
    def get_metrics() -> bytes:
        return generate_latest(REGISTRY)

    @staticmethod
    def get_content_type() -> str:
        return CONTENT_TYPE_LATEST


prometheus_metrics = PrometheusMetrics()
