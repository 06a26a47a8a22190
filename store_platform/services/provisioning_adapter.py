"""
Cluster provisioning adapter — store-level operations on top of the
Kubernetes client and the Helm installer.

Architecture:
  Controller / Reconciler → ProvisioningAdapter:
    1. Ensure namespace        (store-{id}, read-before-write)
    2. Helm install / upgrade  (type-specific chart + generated secrets)
    3. Snapshot pods → readiness evaluator
    4. Resolve the public endpoint (NodePort for Medusa, ingress for WooCommerce)
    5. WooCommerce only: one-shot wp-cli job rewriting the site URL

  Delete:
    1. Helm uninstall
    2. Delete namespace, then wait (bounded) until it is really gone

Design principles:
  - Idempotent: "already exists" / "not found" are success where the
    IDEMPOTENCY_POLICY table says so, and only there
  - Non-blocking: every client call runs in a worker thread
  - Bounded: every wait has both an attempt limit and a wall-clock limit
"""

import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from ..config import Settings
from ..errors import ClusterError, ProvisioningTimeoutError
from ..models import (
    ClusterStatus,
    StoreCredentials,
    StoreRecord,
    StoreType,
    WorkloadStatusSnapshot,
    WorkloadUnitStatus,
)
from .interfaces import ClusterClient, PackageInstaller
from .readiness import evaluate_readiness

logger = logging.getLogger("provisioning_adapter")

NAMESPACE_PREFIX = "store-"
MANAGED_BY = "store-platform"
URL_REWRITE_JOB = "wp-url-rewrite"

PASSWORD_ALPHABET = string.ascii_letters + string.digits
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 64

# Cluster statuses that count as success for each operation.
IDEMPOTENCY_POLICY: Dict[str, frozenset] = {
    "create_namespace": frozenset({409}),
    "delete_namespace": frozenset({404}),
    "uninstall": frozenset({404}),
    "delete_job": frozenset({404}),
}


def is_tolerated(operation: str, error: ClusterError) -> bool:
    return error.status in IDEMPOTENCY_POLICY.get(operation, frozenset())


def namespace_for(store_id: str) -> str:
    """Deterministic namespace name; the reconciler re-derives it from the id."""
    return f"{NAMESPACE_PREFIX}{store_id}"


def is_well_formed_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def generate_password(length: int = 20) -> str:
    """Cryptographically secure alphanumeric secret (safe inside helm --set)."""
    length = max(MIN_PASSWORD_LENGTH, min(MAX_PASSWORD_LENGTH, length))
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


# ---------------------------------------------------------------------------
# Per-engine profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoreProfile:
    type: StoreType
    db_user: str
    db_name: str
    admin_user: str
    # Service names to try, in order, when resolving the public endpoint
    service_patterns: Tuple[str, ...]
    node_port_url: bool
    url_rewrite: bool


PROFILES: Dict[StoreType, StoreProfile] = {
    StoreType.WOOCOMMERCE: StoreProfile(
        type=StoreType.WOOCOMMERCE,
        db_user="wordpress",
        db_name="wordpress",
        admin_user="admin",
        service_patterns=("{release}-wordpress", "{release}", "wordpress"),
        node_port_url=False,
        url_rewrite=True,
    ),
    StoreType.MEDUSA: StoreProfile(
        type=StoreType.MEDUSA,
        db_user="medusa",
        db_name="medusa",
        admin_user="admin@medusa.local",
        service_patterns=("{release}-medusa", "{release}", "medusa-backend", "medusa"),
        node_port_url=True,
        url_rewrite=False,
    ),
}


def build_credentials(store_type: StoreType) -> StoreCredentials:
    profile = PROFILES[store_type]
    return StoreCredentials(
        db_name=profile.db_name,
        db_user=profile.db_user,
        db_password=generate_password(20),
        db_root_password=generate_password(20),
        admin_user=profile.admin_user,
        admin_password=generate_password(16),
    )


class ProvisioningAdapter:
    def __init__(
        self,
        settings: Settings,
        cluster: ClusterClient,
        installer: PackageInstaller,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.cluster = cluster
        self.installer = installer
        self._sleep = sleep
        self._clock = clock

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    # --- Naming ---

    @staticmethod
    def release_name(record: StoreRecord) -> str:
        return record.name

    def chart_for(self, store_type: StoreType) -> str:
        if store_type == StoreType.MEDUSA:
            return self.settings.MEDUSA_CHART_PATH
        return self.settings.WOOCOMMERCE_CHART_PATH

    def ingress_url(self, record: StoreRecord) -> str:
        return f"{self.settings.URL_SCHEME}://{record.host}"

    def chart_values(self, record: StoreRecord) -> Dict[str, str]:
        creds = record.credentials
        values = {
            "storeName": record.name,
            "ingress.host": record.host,
            "ingress.className": self.settings.INGRESS_CLASS,
        }
        if record.type == StoreType.MEDUSA:
            values.update({
                "postgres.storageClass": self.settings.STORAGE_CLASS,
                "postgres.database": creds.db_name,
                "postgres.username": creds.db_user,
                "postgres.password": creds.db_password,
                "medusa.adminEmail": creds.admin_user,
                "medusa.adminPassword": creds.admin_password,
            })
        else:
            values.update({
                "persistence.storageClass": self.settings.STORAGE_CLASS,
                "mariadb.auth.database": creds.db_name,
                "mariadb.auth.username": creds.db_user,
                "mariadb.auth.password": creds.db_password,
                "mariadb.auth.rootPassword": creds.db_root_password,
                "wordpress.adminUser": creds.admin_user,
                "wordpress.adminPassword": creds.admin_password,
                "wordpress.siteUrl": self.ingress_url(record),
            })
        return values

    # --- Namespaces ---

    async def namespace_exists(self, namespace: str) -> bool:
        return await self._call(self.cluster.namespace_exists, namespace)

    async def ensure_namespace(self, namespace: str, record: StoreRecord) -> bool:
        """Create namespace idempotently. Returns True if created, False if existed."""
        if await self.namespace_exists(namespace):
            logger.info(f"[{record.id}] Namespace {namespace} already exists")
            return False
        labels = {
            "app.kubernetes.io/managed-by": MANAGED_BY,
            "store.platform/id": record.id,
            "store.platform/type": record.type.value,
        }
        try:
            await self._call(self.cluster.create_namespace, namespace, labels)
        except ClusterError as e:
            if is_tolerated("create_namespace", e):
                logger.info(f"[{record.id}] Namespace {namespace} created concurrently — continuing")
                return False
            raise
        logger.info(f"[{record.id}] Namespace {namespace} created")
        return True

    async def delete_namespace(self, namespace: str) -> bool:
        """
        Delete a namespace and wait until it is gone.

        Returns True once absence is confirmed, False if the wait gave up.
        Deletion keeps going in the cluster either way.
        """
        try:
            await self._call(self.cluster.delete_namespace, namespace)
        except ClusterError as e:
            if is_tolerated("delete_namespace", e):
                logger.info(f"Namespace {namespace} already gone")
                return True
            raise

        started = self._clock()
        for _ in range(self.settings.NAMESPACE_DELETE_MAX_ATTEMPTS):
            if not await self.namespace_exists(namespace):
                logger.info(f"Namespace {namespace} deleted")
                return True
            if self._clock() - started >= self.settings.NAMESPACE_DELETE_TIMEOUT:
                break
            await self._sleep(self.settings.NAMESPACE_DELETE_POLL_INTERVAL)

        logger.warning(
            f"Namespace {namespace} still terminating after "
            f"{self._clock() - started:.0f}s — continuing without waiting"
        )
        return False

    # --- Helm ---

    async def install_store(self, record: StoreRecord, namespace: str) -> None:
        release = self.release_name(record)
        chart = self.chart_for(record.type)
        logger.info(f"[{record.id}] Installing {record.type.value} chart {chart} as {release}")
        await self._call(
            self.installer.install, release, chart, namespace, self.chart_values(record)
        )

    async def release_status(self, record: StoreRecord, namespace: str) -> Optional[str]:
        """Helm release state ('deployed', 'failed', ...) or None if there is no release."""
        return await self._call(self.installer.release_status, self.release_name(record), namespace)

    async def uninstall_store(self, record: StoreRecord, namespace: str) -> bool:
        """Returns False if there was no release to remove."""
        release = self.release_name(record)
        try:
            await self._call(self.installer.uninstall, release, namespace)
        except ClusterError as e:
            if is_tolerated("uninstall", e):
                logger.info(f"[{record.id}] Helm release {release} not found — skipping uninstall")
                return False
            raise
        return True

    # --- Status ---

    async def list_pods(self, namespace: str) -> List[WorkloadUnitStatus]:
        return await self._call(self.cluster.list_pods, namespace)

    async def get_cluster_status(self, namespace: str) -> ClusterStatus:
        units = await self.list_pods(namespace)
        snapshot = WorkloadStatusSnapshot(
            namespace=namespace,
            units=tuple(units),
            observed_at=datetime.now(timezone.utc),
        )
        result = evaluate_readiness(snapshot.units, self.settings.RESTART_THRESHOLD)
        return ClusterStatus(snapshot=snapshot, result=result)

    async def get_pod_logs(self, namespace: str, pod_name: str, tail_lines: int = 200) -> str:
        return await self._call(self.cluster.read_pod_log, namespace, pod_name, tail_lines)

    async def get_job_logs(self, namespace: str, job_name: str, tail_lines: int = 200) -> str:
        return await self._call(self.cluster.read_job_log, namespace, job_name, tail_lines)

    # --- Endpoint resolution ---

    async def resolve_endpoint(self, record: StoreRecord, namespace: str) -> Optional[str]:
        """Find the exposing Service by naming convention. None means endpoint unknown."""
        profile = PROFILES[record.type]
        release = self.release_name(record)
        for pattern in profile.service_patterns:
            name = pattern.format(release=release)
            try:
                svc = await self._call(self.cluster.read_service, namespace, name)
            except ClusterError as e:
                if e.is_not_found:
                    continue
                raise
            if not profile.node_port_url:
                return self.ingress_url(record)
            if svc.node_ports:
                return f"http://{self.settings.PUBLIC_IP}:{svc.node_ports[0]}/app"
            logger.debug(f"[{record.id}] Service {name} has no NodePort — trying next pattern")
        logger.warning(f"[{record.id}] No exposing service found in {namespace} — endpoint unknown")
        return None

    async def resolve_store_url(self, record: StoreRecord, namespace: str) -> str:
        endpoint = await self.resolve_endpoint(record, namespace)
        return endpoint or self.ingress_url(record)

    # --- Post-install job ---

    def url_rewrite_job(self, record: StoreRecord, site_url: str) -> Dict[str, Any]:
        release = self.release_name(record)
        creds = record.credentials
        script = 'wp option update home "$SITE_URL" && wp option update siteurl "$SITE_URL"'
        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": URL_REWRITE_JOB,
                "labels": {"app.kubernetes.io/managed-by": MANAGED_BY},
            },
            "spec": {
                "backoffLimit": 2,
                "ttlSecondsAfterFinished": 300,
                "template": {
                    "spec": {
                        "restartPolicy": "Never",
                        "containers": [{
                            "name": "wp-cli",
                            "image": self.settings.URL_REWRITE_IMAGE,
                            "command": ["sh", "-c", script],
                            "env": [
                                {"name": "SITE_URL", "value": site_url},
                                {"name": "WORDPRESS_DB_HOST", "value": f"{release}-mariadb"},
                                {"name": "WORDPRESS_DB_NAME", "value": creds.db_name},
                                {"name": "WORDPRESS_DB_USER", "value": creds.db_user},
                                {"name": "WORDPRESS_DB_PASSWORD", "value": creds.db_password},
                            ],
                            "volumeMounts": [{"name": "wordpress-data", "mountPath": "/var/www/html"}],
                        }],
                        "volumes": [{
                            "name": "wordpress-data",
                            "persistentVolumeClaim": {"claimName": f"{release}-wordpress"},
                        }],
                    },
                },
            },
        }

    async def _run_job(self, namespace: str, manifest: Dict[str, Any]) -> None:
        name = manifest["metadata"]["name"]
        try:
            await self._call(self.cluster.delete_job, namespace, name)
        except ClusterError as e:
            if not is_tolerated("delete_job", e):
                raise
        await self._call(self.cluster.create_job, namespace, manifest)

        for attempt in range(1, self.settings.JOB_MAX_ATTEMPTS + 1):
            state = await self._call(self.cluster.read_job_state, namespace, name)
            if state.succeeded:
                logger.info(f"Job {namespace}/{name} succeeded (attempt {attempt})")
                return
            if state.failed and not state.active:
                raise ClusterError(f"Job {namespace}/{name} failed ({state.failed} pod failures)")
            await self._sleep(self.settings.JOB_POLL_INTERVAL)
        raise ProvisioningTimeoutError(
            f"Job {namespace}/{name} did not finish after {self.settings.JOB_MAX_ATTEMPTS} checks"
        )

    async def rewrite_site_url(self, record: StoreRecord, namespace: str, site_url: str) -> bool:
        """Best-effort: a failed rewrite is logged and reported as False, never raised."""
        try:
            await self._run_job(namespace, self.url_rewrite_job(record, site_url))
            logger.info(f"[{record.id}] WordPress URL updated to {site_url}")
            return True
        except Exception as e:
            logger.warning(f"[{record.id}] Failed to auto-update WordPress URL (non-fatal): {e}")
            return False
