"""
Store API routes — thin HTTP layer over StoreService.

Features:
  - Identity layer: X-User-Id header for ownership and quota scoping
  - Rate limiting per-IP via slowapi (stricter on mutating endpoints)
  - Domain errors are raised by the service and mapped to HTTP in main.py
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from ..config import settings
from ..models import (
    AuditEventResponse,
    ErrorResponse,
    MetricsResponse,
    StoreCreateRequest,
    StoreDetailResponse,
    StoreListResponse,
    StoreResponse,
    StoreStatusResponse,
    WorkloadUnitResponse,
)
from ..services.store_service import StoreService

logger = logging.getLogger("stores")

router = APIRouter(prefix="/stores", tags=["stores"])
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

ANONYMOUS = "anonymous"


# --- Identity extraction ---
def _get_user_id(request: Request) -> str:
    """
    Extract user identity from X-User-Id header.
    Falls back to 'anonymous' if not provided.
    """
    return request.headers.get("x-user-id") or ANONYMOUS


def get_store_service(request: Request) -> StoreService:
    return request.app.state.store_service


def _audit_entries(events) -> List[AuditEventResponse]:
    return [
        AuditEventResponse(
            id=e.id,
            entityId=e.entity_id,
            action=e.action.value,
            ownerId=e.owner_id,
            metadata=e.metadata,
            createdAt=e.created_at,
        )
        for e in events
    ]


# =========================================================================
# REST Endpoints
# =========================================================================

@router.post("", response_model=StoreDetailResponse, status_code=202,
             responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse},
                        429: {"model": ErrorResponse}})
@limiter.limit(settings.STRICT_RATE_LIMIT)
async def create_store_endpoint(
    req: StoreCreateRequest,
    request: Request,
    service: StoreService = Depends(get_store_service),
):
    """Accept a store for provisioning. Poll the status endpoint for progress."""
    user_id = _get_user_id(request)
    record = await service.create(req.name, req.type, user_id)
    return StoreDetailResponse.from_record(record)


@router.get("", response_model=StoreListResponse)
@limiter.limit(settings.RATE_LIMIT)
async def list_stores_endpoint(
    request: Request,
    owner: Optional[str] = Query(None, description="Filter by owner"),
    service: StoreService = Depends(get_store_service),
):
    """List stores, newest first."""
    user_id = _get_user_id(request)
    # If user is identified, scope to their stores by default
    effective_owner = owner if owner else (user_id if user_id != ANONYMOUS else None)
    records = await service.list_stores(owner_id=effective_owner)
    stores = [StoreResponse.from_record(r) for r in records]
    return StoreListResponse(stores=stores, total=len(stores))


# Declared before /{store_id} so "metrics" and "audit" are not taken for an id.
@router.get("/metrics/summary", response_model=MetricsResponse)
@limiter.limit(settings.RATE_LIMIT)
async def metrics_summary_endpoint(
    request: Request,
    service: StoreService = Depends(get_store_service),
):
    """Aggregate counts, average provisioning time and failure rate."""
    return MetricsResponse(**await service.get_metrics())


# --- Audit endpoint ---
@router.get("/audit/log")
@limiter.limit(settings.RATE_LIMIT)
async def get_audit_log_endpoint(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    service: StoreService = Depends(get_store_service),
):
    """Platform-wide audit log, newest first."""
    entries = _audit_entries(await service.get_recent_audit_events(limit=limit))
    return {"entries": entries, "count": len(entries)}


@router.get("/{store_id}", response_model=StoreDetailResponse,
            responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_store_endpoint(
    store_id: str,
    request: Request,
    service: StoreService = Depends(get_store_service),
):
    """Get a store. Only the owner sees the admin login."""
    record = await service.get_store(store_id)
    if record.owner_id and record.owner_id == _get_user_id(request):
        return StoreDetailResponse.from_record(record)
    return StoreDetailResponse(**StoreResponse.from_record(record).model_dump())


@router.get("/{store_id}/status", response_model=StoreStatusResponse,
            responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_store_status_endpoint(
    store_id: str,
    request: Request,
    service: StoreService = Depends(get_store_service),
):
    """Persisted status next to a live classification of the store's pods."""
    record, cluster_status = await service.get_store_status(store_id)
    return StoreStatusResponse(
        id=record.id,
        status=record.status.value,
        clusterStatus=cluster_status.result.status.value,
        message=cluster_status.result.message,
        clusterSnapshot=[
            WorkloadUnitResponse(
                name=u.name,
                phase=u.phase,
                ready=u.ready,
                restartCount=u.restart_count,
                waitingReason=u.waiting_reason,
            )
            for u in cluster_status.snapshot.units
        ],
    )


@router.get("/{store_id}/logs", responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_store_logs_endpoint(
    store_id: str,
    request: Request,
    podName: Optional[str] = Query(None, description="Single pod to tail"),
    jobName: Optional[str] = Query(None, description="Job whose newest pod to tail"),
    tailLines: int = Query(200, ge=1, le=5000),
    service: StoreService = Depends(get_store_service),
):
    """Tail job or pod logs from the store's namespace."""
    logs = await service.get_store_logs(
        store_id, pod_name=podName, job_name=jobName, tail_lines=tailLines
    )
    return {"store": store_id, **logs}


@router.get("/{store_id}/audit", responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_store_audit_endpoint(
    store_id: str,
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    service: StoreService = Depends(get_store_service),
):
    """Audit trail for a store, newest first."""
    entries = _audit_entries(await service.get_audit_events(store_id, limit=limit))
    return {"events": entries, "count": len(entries)}


@router.post("/{store_id}/retry", response_model=StoreResponse, status_code=202,
             responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse},
                        409: {"model": ErrorResponse}, 429: {"model": ErrorResponse}})
@limiter.limit(settings.STRICT_RATE_LIMIT)
async def retry_store_endpoint(
    store_id: str,
    request: Request,
    service: StoreService = Depends(get_store_service),
):
    """Re-run provisioning for a FAILED store, keeping its credentials."""
    record = await service.retry(store_id, _get_user_id(request))
    return StoreResponse.from_record(record)


@router.delete("/{store_id}",
               responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}})
@limiter.limit(settings.STRICT_RATE_LIMIT)
async def delete_store_endpoint(
    store_id: str,
    request: Request,
    service: StoreService = Depends(get_store_service),
):
    """Uninstall, delete the namespace and remove the record."""
    await service.delete(store_id, _get_user_id(request))
    return {"message": f"Store '{store_id}' deleted", "id": store_id}
