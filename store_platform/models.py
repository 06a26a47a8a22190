"""
Domain records and pydantic models for API request/response validation.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class StoreType(str, Enum):
    WOOCOMMERCE = "woocommerce"
    MEDUSA = "medusa"


class StoreStatus(str, Enum):
    PROVISIONING = "PROVISIONING"
    READY = "READY"
    FAILED = "FAILED"


# Every status write must follow one of these edges.
ALLOWED_TRANSITIONS: Dict[StoreStatus, frozenset] = {
    StoreStatus.PROVISIONING: frozenset({StoreStatus.READY, StoreStatus.FAILED}),
    StoreStatus.FAILED: frozenset({StoreStatus.PROVISIONING}),
    StoreStatus.READY: frozenset(),
}


def is_allowed_transition(current: StoreStatus, new: StoreStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


class AuditAction(str, Enum):
    STORE_CREATE_REQUESTED = "STORE_CREATE_REQUESTED"
    STORE_PROVISIONED = "STORE_PROVISIONED"
    STORE_PROVISION_FAILED = "STORE_PROVISION_FAILED"
    STORE_RETRY_REQUESTED = "STORE_RETRY_REQUESTED"
    STORE_DELETED = "STORE_DELETED"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class StoreCredentials(BaseModel):
    """Generated once at creation and never regenerated."""
    db_name: str
    db_user: str
    db_password: str
    db_root_password: str
    admin_user: str
    admin_password: str


class StoreRecord(BaseModel):
    id: str
    name: str
    type: StoreType
    status: StoreStatus = StoreStatus.PROVISIONING
    host: str
    url: Optional[str] = None
    owner_id: Optional[str] = None
    credentials: StoreCredentials
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AuditEvent(BaseModel):
    id: Optional[int] = None
    entity_id: str
    entity: str = "Store"
    action: AuditAction
    owner_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Cluster observations (ephemeral, never persisted)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WorkloadUnitStatus:
    name: str
    phase: str
    ready: bool
    restart_count: int = 0
    waiting_reason: Optional[str] = None


@dataclass(frozen=True)
class WorkloadStatusSnapshot:
    namespace: str
    units: tuple = ()
    observed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ReadinessResult:
    status: StoreStatus
    message: str


@dataclass(frozen=True)
class ClusterStatus:
    snapshot: WorkloadStatusSnapshot
    result: ReadinessResult


@dataclass(frozen=True)
class ServiceEndpoint:
    name: str
    type: str
    node_ports: tuple = ()
    cluster_ip: Optional[str] = None


@dataclass(frozen=True)
class JobState:
    active: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass
class ReconcileSummary:
    checked: int = 0
    ready: int = 0
    failed: int = 0
    pending: int = 0
    errors: int = 0
    store_ids: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# API models
# ---------------------------------------------------------------------------

class StoreCreateRequest(BaseModel):
    """Request to create a new store."""
    name: str = Field(
        ...,
        max_length=100,
        description="Store display name; sanitized into a cluster-safe identifier",
        examples=["My Shop", "demo-shop"],
    )
    type: StoreType = Field(
        default=StoreType.WOOCOMMERCE,
        description="E-commerce engine (woocommerce or medusa)",
    )


class StoreResponse(BaseModel):
    """Store details returned to the dashboard."""
    id: str
    name: str
    type: str
    status: str
    host: str
    url: Optional[str] = None
    ownerId: Optional[str] = None
    errorMessage: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime

    @classmethod
    def from_record(cls, record: StoreRecord) -> "StoreResponse":
        return cls(
            id=record.id,
            name=record.name,
            type=record.type.value,
            status=record.status.value,
            host=record.host,
            url=record.url,
            ownerId=record.owner_id,
            errorMessage=record.error_message,
            createdAt=record.created_at,
            updatedAt=record.updated_at,
        )


class StoreDetailResponse(StoreResponse):
    """Single-store view for the owner, including the admin login."""
    adminUser: Optional[str] = None
    adminPassword: Optional[str] = None

    @classmethod
    def from_record(cls, record: StoreRecord) -> "StoreDetailResponse":
        base = StoreResponse.from_record(record).model_dump()
        return cls(
            **base,
            adminUser=record.credentials.admin_user,
            adminPassword=record.credentials.admin_password,
        )


class StoreListResponse(BaseModel):
    stores: List[StoreResponse]
    total: int


class WorkloadUnitResponse(BaseModel):
    name: str
    phase: str
    ready: bool
    restartCount: int = 0
    waitingReason: Optional[str] = None


class StoreStatusResponse(BaseModel):
    id: str
    status: str
    clusterStatus: str
    message: str
    clusterSnapshot: List[WorkloadUnitResponse] = []


class AuditEventResponse(BaseModel):
    id: Optional[int] = None
    entityId: str
    action: str
    ownerId: Optional[str] = None
    metadata: Dict[str, Any] = {}
    createdAt: Optional[datetime] = None


class MetricsResponse(BaseModel):
    total_stores: int
    stores_by_status: Dict[str, int]
    stores_by_type: Dict[str, int]
    avg_provisioning_time_ms: int
    failure_rate: str


class ErrorResponse(BaseModel):
    detail: str
    code: str = "UNKNOWN_ERROR"
