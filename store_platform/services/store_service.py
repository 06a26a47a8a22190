"""
Store lifecycle controller — validation, quota, persistence and the
create / delete / retry flows.

Create returns as soon as the PROVISIONING record is persisted; the rest of
the pipeline runs as a detached task on the ProvisioningTaskRunner:

    1. Ensure namespace       (store-{id})
    2. Helm install           (type-specific chart + generated secrets)
    3. Poll readiness         (interval, max attempts, wall-clock timeout)
    4. Resolve URL, optional WordPress URL rewrite
    5. PROVISIONING → READY   (or → FAILED on any error, never raising)

Status writes are compare-and-set on the expected current status, so a
delete racing the task simply makes the task's final write a no-op.
"""

import asyncio
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..config import Settings
from ..db import utcnow
from ..errors import (
    AuthorizationError,
    ClusterError,
    ConflictError,
    NotFoundError,
    QuotaExceeded,
    ValidationError,
)
from ..metrics import (
    PROVISION_DURATION,
    PROVISION_FAILURES,
    STORES_CREATED,
    STORES_DELETED,
    STORES_PROVISIONED,
)
from ..models import (
    AuditAction,
    AuditEvent,
    ClusterStatus,
    StoreRecord,
    StoreStatus,
    StoreType,
    is_allowed_transition,
)
from .audit_service import AuditService
from .interfaces import StoreRepository
from .poller import ReadinessPoller
from .provisioning_adapter import PROFILES, ProvisioningAdapter, build_credentials, namespace_for
from .task_runner import ProvisioningTaskRunner

logger = logging.getLogger("store_service")

MIN_NAME_LENGTH = 3
MAX_RAW_NAME_LENGTH = 100
MAX_NAME_LENGTH = 50


def sanitize_store_name(name: str) -> str:
    """Lowercase DNS-label-safe form of a user supplied store name."""
    s = name.strip().lower()
    s = re.sub(r"[^a-z0-9-]", "-", s)
    s = re.sub(r"^[^a-z]+", "", s)
    s = re.sub(r"-+", "-", s)
    s = s.strip("-")[:MAX_NAME_LENGTH]
    return s.rstrip("-")


def validate_store_name(name: Optional[str]) -> str:
    """Returns the sanitized name or raises ValidationError."""
    if not name or len(name.strip()) < MIN_NAME_LENGTH:
        raise ValidationError(f"Store name must be at least {MIN_NAME_LENGTH} characters")
    if len(name) > MAX_RAW_NAME_LENGTH:
        raise ValidationError(f"Store name must be less than {MAX_RAW_NAME_LENGTH} characters")
    sanitized = sanitize_store_name(name)
    if len(sanitized) < MIN_NAME_LENGTH:
        raise ValidationError(
            f"Store name must contain at least {MIN_NAME_LENGTH} valid characters (letters or numbers)"
        )
    return sanitized


def truncate_error(message: str, limit: int) -> str:
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


async def transition_status(
    stores: StoreRepository,
    record: StoreRecord,
    new_status: StoreStatus,
    **fields: Any,
) -> Optional[StoreRecord]:
    """
    Move a record along an allowed edge. Returns None when the row is gone or
    no longer in `record.status` (someone else got there first).
    """
    if not is_allowed_transition(record.status, new_status):
        raise ConflictError(
            f"Illegal status transition {record.status.value} -> {new_status.value}"
        )
    return await stores.update(
        record.id, expected_status=record.status, status=new_status, **fields
    )


class _OwnerLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class StoreService:
    def __init__(
        self,
        settings: Settings,
        stores: StoreRepository,
        audit: AuditService,
        adapter: ProvisioningAdapter,
        runner: ProvisioningTaskRunner,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.stores = stores
        self.audit = audit
        self.adapter = adapter
        self.runner = runner
        self._sleep = sleep
        self._clock = clock
        # serializes quota check + insert per owner
        self._owner_locks: Dict[str, _OwnerLock] = {}

    # =========================================================================
    # Request-time operations
    # =========================================================================

    async def create(
        self, name: str, store_type: Union[StoreType, str], owner_id: str
    ) -> StoreRecord:
        sanitized = validate_store_name(name)
        try:
            store_type = StoreType(store_type)
        except ValueError:
            raise ValidationError(
                f"Invalid store type '{store_type}'. Must be one of: "
                f"{', '.join(t.value for t in StoreType)}"
            )

        async with self._owner_lock(owner_id):
            await self._check_quota(owner_id)

            host = f"{sanitized}.{self.settings.DOMAIN_SUFFIX}"
            if await self.stores.find_by_host(host):
                logger.warning(f"Store creation failed: host {host} already taken")
                raise ConflictError("A store with this name already exists")

            now = utcnow()
            record = StoreRecord(
                id=str(uuid.uuid4()),
                name=sanitized,
                type=store_type,
                status=StoreStatus.PROVISIONING,
                host=host,
                owner_id=owner_id,
                credentials=build_credentials(store_type),
                created_at=now,
                updated_at=now,
            )
            await self.stores.create(record)

        logger.info(f"Store {record.id} created (name={sanitized}, type={store_type.value}, owner={owner_id})")
        STORES_CREATED.labels(type=store_type.value).inc()
        await self.audit.record(
            AuditAction.STORE_CREATE_REQUESTED,
            record.id,
            owner_id,
            {"name": name, "type": store_type.value, "host": host},
        )
        self._submit(record.id)
        return record

    async def list_stores(self, owner_id: Optional[str] = None) -> List[StoreRecord]:
        return await self.stores.list(owner_id=owner_id)

    async def get_store(self, store_id: str) -> StoreRecord:
        record = await self.stores.get(store_id)
        if record is None:
            raise NotFoundError(f"Store '{store_id}' not found")
        return record

    async def get_store_status(self, store_id: str) -> Tuple[StoreRecord, ClusterStatus]:
        """Live cluster view next to the persisted record. Never writes."""
        record = await self.get_store(store_id)
        cluster_status = await self.adapter.get_cluster_status(namespace_for(record.id))
        return record, cluster_status

    async def get_store_logs(
        self,
        store_id: str,
        pod_name: Optional[str] = None,
        job_name: Optional[str] = None,
        tail_lines: int = 200,
    ) -> Dict[str, Any]:
        """Logs of one job, one pod, or every pod in the store namespace."""
        record = await self.get_store(store_id)
        namespace = namespace_for(record.id)

        if job_name:
            logs = await self.adapter.get_job_logs(namespace, job_name, tail_lines)
            return {"jobName": job_name, "logs": logs}

        if pod_name:
            logs = await self.adapter.get_pod_logs(namespace, pod_name, tail_lines)
            return {"podName": pod_name, "logs": logs}

        units = await self.adapter.list_pods(namespace)
        logs: Dict[str, str] = {}
        for unit in units:
            try:
                logs[unit.name] = await self.adapter.get_pod_logs(namespace, unit.name, tail_lines)
            except ClusterError as e:
                logs[unit.name] = f"<logs unavailable: {e}>"
        return {"pods": [asdict(u) for u in units], "logs": logs}

    async def get_audit_events(self, store_id: str, limit: int = 50) -> List[AuditEvent]:
        await self.get_store(store_id)
        return await self.audit.events_for_store(store_id, limit=limit)

    async def get_recent_audit_events(self, limit: int = 50) -> List[AuditEvent]:
        return await self.audit.recent_events(limit=limit)

    async def delete(self, store_id: str, owner_id: Optional[str]) -> None:
        """
        Best-effort cluster cleanup, then unconditional row delete.

        An orphaned namespace can be swept out-of-band; an API-visible
        record with nothing behind it cannot.
        """
        record = await self.get_store(store_id)
        self._check_owner(record, owner_id)
        namespace = namespace_for(record.id)
        logger.info(f"Deleting store {store_id} — cleaning up namespace {namespace}")

        try:
            await self.adapter.uninstall_store(record, namespace)
        except Exception as e:
            logger.warning(f"[{store_id}] Helm uninstall error (non-fatal): {e}")

        try:
            await self.adapter.delete_namespace(namespace)
        except Exception as e:
            logger.warning(f"[{store_id}] Namespace deletion error (non-fatal): {e}")

        await self.stores.delete(store_id)
        STORES_DELETED.inc()
        await self.audit.record(
            AuditAction.STORE_DELETED,
            store_id,
            owner_id,
            {"name": record.name, "namespace": namespace, "status": record.status.value},
        )
        logger.info(f"Store {store_id} cleanup complete")

    async def retry(self, store_id: str, owner_id: Optional[str] = None) -> StoreRecord:
        """FAILED → PROVISIONING, re-running the full namespace + install cycle."""
        record = await self.get_store(store_id)
        self._check_owner(record, owner_id)
        if record.status != StoreStatus.FAILED:
            raise ConflictError(
                f"Store '{store_id}' is {record.status.value}; only FAILED stores can be retried"
            )

        lock_key = record.owner_id or ""
        async with self._owner_lock(lock_key):
            if record.owner_id:
                await self._check_quota(record.owner_id)
            updated = await transition_status(
                self.stores, record, StoreStatus.PROVISIONING, url=None, error_message=None
            )
        if updated is None:
            raise ConflictError(f"Store '{store_id}' changed state while retrying")

        logger.info(f"Store {store_id} retry requested")
        await self.audit.record(
            AuditAction.STORE_RETRY_REQUESTED,
            store_id,
            owner_id or record.owner_id,
            {"previous_error": record.error_message},
        )
        self._submit(store_id)
        return updated

    def resume(self, store_id: str) -> None:
        """
        Pick up a store left PROVISIONING by a previous process. Monitoring is
        re-attached; a release that never got deployed is installed again.
        """
        self.runner.submit(f"resume:{store_id}", lambda: self.provision(store_id, install=False))

    async def get_metrics(self) -> Dict[str, Any]:
        records = await self.stores.list()
        total = len(records)
        by_status = {s.value.lower(): 0 for s in StoreStatus}
        by_type = {t.value: 0 for t in StoreType}
        for r in records:
            by_status[r.status.value.lower()] += 1
            by_type[r.type.value] += 1

        cutoff = utcnow() - timedelta(hours=24)
        durations = [
            (r.updated_at - r.created_at).total_seconds() * 1000
            for r in records
            if r.status == StoreStatus.READY and r.created_at >= cutoff and r.updated_at > r.created_at
        ]
        avg_ms = round(sum(durations) / len(durations)) if durations else 0
        failed = by_status["failed"]
        failure_rate = f"{failed / total * 100:.2f}%" if total else "0%"

        return {
            "total_stores": total,
            "stores_by_status": by_status,
            "stores_by_type": by_type,
            "avg_provisioning_time_ms": avg_ms,
            "failure_rate": failure_rate,
        }

    # =========================================================================
    # Background provisioning
    # =========================================================================

    def _submit(self, store_id: str) -> None:
        self.runner.submit(f"provision:{store_id}", lambda: self.provision(store_id))

    async def provision(self, store_id: str, install: bool = True) -> None:
        """
        Background task body. Every failure path ends FAILED + audited.

        With install=False (resume after restart) the Helm release is checked
        first and the install is re-run unless it is already deployed.
        """
        started = time.monotonic()
        try:
            record = await self.stores.get(store_id)
        except Exception as e:
            await self._fail_unread(store_id, e, started)
            return
        if record is None or record.status != StoreStatus.PROVISIONING:
            logger.warning(f"[{store_id}] Store no longer PROVISIONING — skipping background task")
            return

        namespace = namespace_for(store_id)
        try:
            if not install:
                release_state = await self.adapter.release_status(record, namespace)
                if release_state != "deployed":
                    logger.info(
                        f"[{store_id}] Helm release is {release_state or 'missing'} — re-running install"
                    )
                    install = True
            if install:
                logger.info(f"[{store_id}] Step 1/3: Ensuring namespace {namespace}")
                await self.adapter.ensure_namespace(namespace, record)
                logger.info(f"[{store_id}] Step 2/3: Helm install")
                await self.adapter.install_store(record, namespace)
            logger.info(f"[{store_id}] Step 3/3: Monitoring deployment status")
            await self._wait_until_ready(record, namespace)
            await self._mark_ready(record, namespace, started)
        except Exception as e:
            await self._mark_failed(record, e, started)

    async def _wait_until_ready(self, record: StoreRecord, namespace: str) -> None:
        async def probe():
            status = await self.adapter.get_cluster_status(namespace)
            return status.result

        poller = ReadinessPoller(
            probe,
            interval=self.settings.PROVISION_POLL_INTERVAL,
            max_attempts=self.settings.PROVISION_MAX_ATTEMPTS,
            timeout=self.settings.PROVISION_TIMEOUT,
            label=record.id,
            sleep=self._sleep,
            clock=self._clock,
        )
        await poller.run()

    async def _mark_ready(self, record: StoreRecord, namespace: str, started: float) -> None:
        logger.info(f"[{record.id}] Deployment is READY — resolving store URL")
        url = await self.adapter.resolve_store_url(record, namespace)
        if PROFILES[record.type].url_rewrite:
            await self.adapter.rewrite_site_url(record, namespace, url)

        updated = await transition_status(
            self.stores, record, StoreStatus.READY, url=url, error_message=None
        )
        if updated is None:
            logger.warning(f"[{record.id}] Store was deleted or changed during provisioning — not marking READY")
            return

        elapsed = time.monotonic() - started
        STORES_PROVISIONED.labels(type=record.type.value).inc()
        PROVISION_DURATION.observe(elapsed)
        logger.info(f"Store {record.id} provisioned successfully in {elapsed * 1000:.0f}ms - URL: {url}")
        await self.audit.record(
            AuditAction.STORE_PROVISIONED,
            record.id,
            record.owner_id,
            {"duration_ms": round(elapsed * 1000), "namespace": namespace, "url": url},
        )

    async def _mark_failed(self, record: StoreRecord, error: Exception, started: float) -> None:
        message = truncate_error(
            str(error) or error.__class__.__name__, self.settings.ERROR_MESSAGE_MAX_LENGTH
        )
        elapsed_ms = round((time.monotonic() - started) * 1000)
        logger.error(f"Failed to provision store {record.id}: {message}")

        try:
            updated = await transition_status(
                self.stores, record, StoreStatus.FAILED, url=None, error_message=message
            )
        except Exception as e:
            logger.error(f"[{record.id}] Could not persist FAILED state: {e}", exc_info=True)
            return
        if updated is None:
            logger.warning(f"[{record.id}] Store was deleted or changed during provisioning — not marking FAILED")
            return

        PROVISION_FAILURES.labels(type=record.type.value).inc()
        await self.audit.record(
            AuditAction.STORE_PROVISION_FAILED,
            record.id,
            record.owner_id,
            {"error": message, "duration_ms": elapsed_ms},
        )

    async def _fail_unread(self, store_id: str, error: Exception, started: float) -> None:
        """The record could not be loaded: fail it by id if it is still PROVISIONING."""
        message = truncate_error(
            f"Could not load store record: {error}", self.settings.ERROR_MESSAGE_MAX_LENGTH
        )
        logger.error(f"[{store_id}] {message}", exc_info=True)
        try:
            updated = await self.stores.update(
                store_id,
                expected_status=StoreStatus.PROVISIONING,
                status=StoreStatus.FAILED,
                url=None,
                error_message=message,
            )
        except Exception as e:
            logger.error(f"[{store_id}] Could not persist FAILED state: {e}")
            return
        if updated is None:
            return

        PROVISION_FAILURES.labels(type=updated.type.value).inc()
        await self.audit.record(
            AuditAction.STORE_PROVISION_FAILED,
            store_id,
            updated.owner_id,
            {"error": message, "duration_ms": round((time.monotonic() - started) * 1000)},
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @asynccontextmanager
    async def _owner_lock(self, owner_id: str):
        """Per-owner mutex. The entry is dropped once nobody holds or waits on it."""
        entry = self._owner_locks.get(owner_id)
        if entry is None:
            entry = self._owner_locks[owner_id] = _OwnerLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._owner_locks[owner_id]

    async def _check_quota(self, owner_id: str) -> None:
        current = await self.stores.count(owner_id=owner_id, exclude_status=StoreStatus.FAILED)
        maximum = self.settings.MAX_STORES_PER_OWNER
        if current >= maximum:
            logger.warning(f"Store creation failed: owner {owner_id} exceeded quota ({current}/{maximum})")
            raise QuotaExceeded(current, maximum)

    @staticmethod
    def _check_owner(record: StoreRecord, owner_id: Optional[str]) -> None:
        if record.owner_id and record.owner_id != owner_id:
            raise AuthorizationError("Forbidden: you don't own this store")
