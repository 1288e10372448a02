from prometheus_client import Counter, Gauge, Histogram

reconcile_total = Counter(
    "redis_operator_reconcile_total",
    "Total reconcile passes",
    ["controller", "namespace", "name", "result"],
)

reconcile_duration_seconds = Histogram(
    "redis_operator_reconcile_duration_seconds",
    "Duration of reconcile passes",
    ["controller"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)

reconcile_errors_total = Counter(
    "redis_operator_reconcile_errors_total",
    "Reconcile passes that ended in an error",
    ["controller", "namespace", "name", "error_type"],
)

resource_status = Gauge(
    "redis_operator_resource_status",
    "1 for the current status phase of each topology object",
    ["controller", "namespace", "name", "status"],
)

workqueue_depth = Gauge(
    "redis_operator_workqueue_depth",
    "Keys waiting in the reconcile queue",
)


def record_phase(controller: str, namespace: str, name: str, phase: str, phases) -> None:
    for candidate in phases:
        resource_status.labels(controller, namespace, name, candidate).set(1 if candidate == phase else 0)


def forget_resource(controller: str, namespace: str, name: str, phases) -> None:
    for candidate in phases:
        try:
            resource_status.remove(controller, namespace, name, candidate)
        except KeyError:
            pass
