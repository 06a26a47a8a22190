"""
Startup reconciliation sweep.

Background tasks do not survive a restart, so any record still PROVISIONING
when the process comes up is re-derived from the live cluster:

  namespace missing               → FAILED
  pods READY                      → READY (URL re-resolved if missing/malformed)
  pods FAILED                     → FAILED
  still provisioning, too old     → FAILED (timed out)
  still provisioning, within time → untouched, handed to the resume hook

Each record is handled on its own; one bad record never aborts the sweep.
"""

import logging
from typing import Callable, Optional

from ..config import Settings
from ..db import utcnow
from ..metrics import PROVISION_FAILURES, STORES_PROVISIONED
from ..models import AuditAction, ReconcileSummary, StoreRecord, StoreStatus
from .audit_service import AuditService
from .interfaces import StoreRepository
from .provisioning_adapter import ProvisioningAdapter, is_well_formed_url, namespace_for
from .store_service import transition_status, truncate_error

logger = logging.getLogger("reconciler")

SOURCE = "reconciler"


class ReconciliationService:
    def __init__(
        self,
        settings: Settings,
        stores: StoreRepository,
        adapter: ProvisioningAdapter,
        audit: AuditService,
        on_still_provisioning: Optional[Callable[[str], None]] = None,
        now=utcnow,
    ):
        self.settings = settings
        self.stores = stores
        self.adapter = adapter
        self.audit = audit
        self.on_still_provisioning = on_still_provisioning
        self._now = now

    async def reconcile_provisioning_stores(self) -> ReconcileSummary:
        summary = ReconcileSummary()
        records = await self.stores.list(status=StoreStatus.PROVISIONING)
        logger.info(f"Reconciliation sweep: {len(records)} stores in PROVISIONING")

        for record in records:
            summary.checked += 1
            summary.store_ids.append(record.id)
            try:
                outcome = await self._reconcile(record)
            except Exception as e:
                summary.errors += 1
                logger.error(f"[{record.id}] Reconciliation failed: {e}", exc_info=True)
                continue
            if outcome == StoreStatus.READY:
                summary.ready += 1
            elif outcome == StoreStatus.FAILED:
                summary.failed += 1
            else:
                summary.pending += 1

        logger.info(
            f"Reconciliation complete: checked={summary.checked} ready={summary.ready} "
            f"failed={summary.failed} pending={summary.pending} errors={summary.errors}"
        )
        return summary

    async def _reconcile(self, record: StoreRecord) -> Optional[StoreStatus]:
        """Returns the status written, or None when the record was left alone."""
        namespace = namespace_for(record.id)

        if not await self.adapter.namespace_exists(namespace):
            return await self._fail(record, "System recovery: namespace missing after restart")

        cluster_status = await self.adapter.get_cluster_status(namespace)
        result = cluster_status.result

        if result.status == StoreStatus.READY:
            return await self._ready(record, namespace)
        if result.status == StoreStatus.FAILED:
            return await self._fail(record, f"System recovery: {result.message}")

        elapsed = (self._now() - record.created_at).total_seconds()
        if elapsed > self.settings.MAX_PROVISION_DURATION:
            return await self._fail(record, "System recovery: provisioning timed out")

        logger.info(f"[{record.id}] Still provisioning after {elapsed:.0f}s — {result.message}")
        if self.on_still_provisioning is not None:
            self.on_still_provisioning(record.id)
        return None

    async def _ready(self, record: StoreRecord, namespace: str) -> Optional[StoreStatus]:
        url = record.url
        if not is_well_formed_url(url):
            url = await self.adapter.resolve_store_url(record, namespace)
        updated = await transition_status(
            self.stores, record, StoreStatus.READY, url=url, error_message=None
        )
        if updated is None:
            logger.warning(f"[{record.id}] Store changed during reconciliation — skipping")
            return None
        logger.info(f"[{record.id}] Recovered as READY - URL: {url}")
        STORES_PROVISIONED.labels(type=record.type.value).inc()
        await self.audit.record(
            AuditAction.STORE_PROVISIONED,
            record.id,
            record.owner_id,
            {"source": SOURCE, "namespace": namespace, "url": url},
        )
        return StoreStatus.READY

    async def _fail(self, record: StoreRecord, message: str) -> Optional[StoreStatus]:
        message = truncate_error(message, self.settings.ERROR_MESSAGE_MAX_LENGTH)
        updated = await transition_status(
            self.stores, record, StoreStatus.FAILED, url=None, error_message=message
        )
        if updated is None:
            logger.warning(f"[{record.id}] Store changed during reconciliation — skipping")
            return None
        logger.warning(f"[{record.id}] Marked FAILED: {message}")
        PROVISION_FAILURES.labels(type=record.type.value).inc()
        await self.audit.record(
            AuditAction.STORE_PROVISION_FAILED,
            record.id,
            record.owner_id,
            {"source": SOURCE, "error": message},
        )
        return StoreStatus.FAILED
