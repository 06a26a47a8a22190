"""Prometheus metrics for the provisioning pipeline."""

from prometheus_client import Counter, Gauge, Histogram

from .models import StoreStatus

STORES_CREATED = Counter(
    "store_platform_stores_created_total",
    "Total store creation requests accepted",
    ["type"],
)
STORES_DELETED = Counter(
    "store_platform_stores_deleted_total",
    "Total stores deleted",
)
STORES_PROVISIONED = Counter(
    "store_platform_stores_provisioned_total",
    "Total stores that reached READY",
    ["type"],
)
PROVISION_FAILURES = Counter(
    "store_platform_provisioning_failures_total",
    "Total provisioning failures",
    ["type"],
)
PROVISION_DURATION = Histogram(
    "store_platform_provisioning_duration_seconds",
    "Time from provisioning start to READY",
    buckets=(15, 30, 60, 120, 180, 300, 600, 1200),
)
STORES_TOTAL = Gauge(
    "store_platform_stores_total",
    "Current stores by status",
    ["status"],
)


def update_status_gauge(counts: dict):
    for status in StoreStatus:
        STORES_TOTAL.labels(status=status.value).set(counts.get(status.value, 0))
