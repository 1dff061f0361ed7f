import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, write_to_textfile

logger = logging.getLogger(__name__)

# Batch-job metrics live in their own registry and are dumped to a
# node_exporter textfile at the end of each run.
registry = CollectorRegistry()

# ── Metric definitions ──

operations_total = Counter(
    "deploy_operations_total",
    "Deploy and rollback operations by outcome",
    ["operation", "outcome"],
    registry=registry,
)

operation_duration_seconds = Histogram(
    "deploy_operation_duration_seconds",
    "Wall time of a deploy or rollback",
    ["operation"],
    buckets=[5.0, 10.0, 20.0, 30.0, 60.0, 120.0, 300.0, 600.0],
    registry=registry,
)

health_probe_attempts = Histogram(
    "deploy_health_probe_attempts",
    "Health polls needed before a unit answered (or the deadline passed)",
    buckets=[1, 2, 3, 5, 10, 20, 30, 60],
    registry=registry,
)

active_port = Gauge(
    "deploy_active_port",
    "Port of the slot currently receiving traffic",
    registry=registry,
)

deployment_info = Info("deploy", "Current active slot and artifact", registry=registry)


# ── Helper functions ──

def record_operation(operation: str, outcome: str, duration_seconds: float) -> None:
    operations_total.labels(operation=operation, outcome=outcome).inc()
    operation_duration_seconds.labels(operation=operation).observe(duration_seconds)


def set_active(slot_name: str, port: int, artifact: str | None = None) -> None:
    active_port.set(port)
    deployment_info.info({"slot": slot_name, "artifact": artifact or "unknown"})


def flush(path: str) -> None:
    """Write all metrics to a textfile. No-op when no path is configured."""
    if not path:
        return
    try:
        write_to_textfile(path, registry)
    except OSError as e:
        logger.warning(f"Could not write metrics to {path}: {e}")
