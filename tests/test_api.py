"""HTTP surface: routing, identity header, error mapping."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from store_platform.errors import (
    AuthorizationError,
    ClusterError,
    ConflictError,
    NotFoundError,
    QuotaExceeded,
    ValidationError,
)
from store_platform.main import app
from store_platform.models import (
    AuditAction,
    AuditEvent,
    ClusterStatus,
    ReadinessResult,
    StoreRecord,
    StoreStatus,
    StoreType,
    WorkloadStatusSnapshot,
)
from store_platform.routers.stores import get_store_service
from store_platform.services.provisioning_adapter import build_credentials

from .fakes import pending, running


def make_record(owner="u1", status=StoreStatus.PROVISIONING, url=None):
    now = datetime.now(timezone.utc)
    return StoreRecord(
        id="s-1",
        name="my-shop",
        type=StoreType.WOOCOMMERCE,
        status=status,
        host="my-shop.stores.test",
        url=url,
        owner_id=owner,
        credentials=build_credentials(StoreType.WOOCOMMERCE),
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def fake_service():
    svc = MagicMock()
    for name in (
        "create", "list_stores", "get_store", "get_store_status", "get_store_logs",
        "get_audit_events", "get_recent_audit_events", "delete", "retry", "get_metrics",
    ):
        setattr(svc, name, AsyncMock())
    return svc


@pytest.fixture
def client(fake_service):
    app.dependency_overrides[get_store_service] = lambda: fake_service
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


USER = {"X-User-Id": "u1"}


# --- create ---

def test_create_is_accepted(client, fake_service):
    fake_service.create.return_value = make_record()

    resp = client.post("/api/stores", json={"name": "My Shop", "type": "woocommerce"}, headers=USER)

    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "PROVISIONING"
    assert body["host"] == "my-shop.stores.test"
    assert body["adminUser"] == "admin"
    fake_service.create.assert_awaited_once_with("My Shop", StoreType.WOOCOMMERCE, "u1")


def test_create_without_identity_is_anonymous(client, fake_service):
    fake_service.create.return_value = make_record(owner="anonymous")

    resp = client.post("/api/stores", json={"name": "My Shop"})

    assert resp.status_code == 202
    fake_service.create.assert_awaited_once_with("My Shop", StoreType.WOOCOMMERCE, "anonymous")


@pytest.mark.parametrize("body", [
    {"name": "x" * 101},
    {"name": "My Shop", "type": "magento"},
    {},
])
def test_malformed_body_is_400(client, fake_service, body):
    resp = client.post("/api/stores", json=body, headers=USER)

    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"
    fake_service.create.assert_not_awaited()


@pytest.mark.parametrize("error, status", [
    (ValidationError("Store name must be at least 3 characters"), 400),
    (ConflictError("A store with this name already exists"), 409),
    (ClusterError("apiserver down", status=503), 502),
])
def test_create_error_mapping(client, fake_service, error, status):
    fake_service.create.side_effect = error

    resp = client.post("/api/stores", json={"name": "My Shop"}, headers=USER)

    assert resp.status_code == status
    assert resp.json() == {"detail": error.message, "code": error.code}


def test_quota_error_carries_counts(client, fake_service):
    fake_service.create.side_effect = QuotaExceeded(10, 10)

    resp = client.post("/api/stores", json={"name": "My Shop"}, headers=USER)

    assert resp.status_code == 429
    body = resp.json()
    assert body["code"] == "QUOTA_EXCEEDED"
    assert (body["current"], body["max"]) == (10, 10)


# --- read ---

def test_list_is_scoped_to_caller(client, fake_service):
    fake_service.list_stores.return_value = [make_record()]

    resp = client.get("/api/stores", headers=USER)
    assert resp.status_code == 200
    assert resp.json()["total"] == 1
    fake_service.list_stores.assert_awaited_with(owner_id="u1")

    client.get("/api/stores")
    fake_service.list_stores.assert_awaited_with(owner_id=None)

    client.get("/api/stores?owner=u2", headers=USER)
    fake_service.list_stores.assert_awaited_with(owner_id="u2")


def test_metrics_summary_is_not_a_store_id(client, fake_service):
    fake_service.get_metrics.return_value = {
        "total_stores": 4,
        "stores_by_status": {"provisioning": 0, "ready": 3, "failed": 1},
        "stores_by_type": {"woocommerce": 2, "medusa": 2},
        "avg_provisioning_time_ms": 91000,
        "failure_rate": "25.00%",
    }

    resp = client.get("/api/stores/metrics/summary")

    assert resp.status_code == 200
    assert resp.json()["failure_rate"] == "25.00%"
    fake_service.get_store.assert_not_awaited()


def test_only_owner_sees_admin_login(client, fake_service):
    record = make_record(status=StoreStatus.READY, url="http://my-shop.stores.test")
    fake_service.get_store.return_value = record

    mine = client.get("/api/stores/s-1", headers=USER).json()
    assert mine["adminPassword"] == record.credentials.admin_password

    theirs = client.get("/api/stores/s-1", headers={"X-User-Id": "u2"}).json()
    assert theirs["adminPassword"] is None
    assert theirs["url"] == "http://my-shop.stores.test"


def test_unknown_store_is_404(client, fake_service):
    fake_service.get_store.side_effect = NotFoundError("Store 'nope' not found")

    resp = client.get("/api/stores/nope")

    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"


def test_status_reports_both_views(client, fake_service):
    units = (running("web-0"), pending("db-0"))
    fake_service.get_store_status.return_value = (
        make_record(),
        ClusterStatus(
            snapshot=WorkloadStatusSnapshot(namespace="store-s-1", units=units),
            result=ReadinessResult(StoreStatus.PROVISIONING, "1/2 pods ready; pod db-0 is ContainerCreating"),
        ),
    )

    body = client.get("/api/stores/s-1/status").json()

    assert body["status"] == "PROVISIONING"
    assert body["clusterStatus"] == "PROVISIONING"
    assert body["message"].startswith("1/2 pods ready")
    assert [u["name"] for u in body["clusterSnapshot"]] == ["web-0", "db-0"]
    assert body["clusterSnapshot"][1]["waitingReason"] == "ContainerCreating"


def test_logs_pass_pod_and_tail(client, fake_service):
    fake_service.get_store_logs.return_value = {"podName": "web-0", "logs": "hello"}

    resp = client.get("/api/stores/s-1/logs?podName=web-0&tailLines=50")

    assert resp.status_code == 200
    assert resp.json() == {"store": "s-1", "podName": "web-0", "logs": "hello"}
    fake_service.get_store_logs.assert_awaited_once_with(
        "s-1", pod_name="web-0", job_name=None, tail_lines=50
    )
    assert client.get("/api/stores/s-1/logs?tailLines=0").status_code == 400


def test_logs_of_a_job(client, fake_service):
    fake_service.get_store_logs.return_value = {"jobName": "wp-url-rewrite", "logs": "Success: Updated"}

    resp = client.get("/api/stores/s-1/logs?jobName=wp-url-rewrite")

    assert resp.json() == {"store": "s-1", "jobName": "wp-url-rewrite", "logs": "Success: Updated"}
    fake_service.get_store_logs.assert_awaited_once_with(
        "s-1", pod_name=None, job_name="wp-url-rewrite", tail_lines=200
    )


def test_audit_trail(client, fake_service):
    fake_service.get_audit_events.return_value = [
        AuditEvent(id=2, entity_id="s-1", action=AuditAction.STORE_PROVISIONED, metadata={"duration_ms": 1200}),
        AuditEvent(id=1, entity_id="s-1", action=AuditAction.STORE_CREATE_REQUESTED, owner_id="u1"),
    ]

    body = client.get("/api/stores/s-1/audit?limit=10").json()

    assert body["count"] == 2
    assert [e["action"] for e in body["events"]] == ["STORE_PROVISIONED", "STORE_CREATE_REQUESTED"]
    assert body["events"][0]["metadata"] == {"duration_ms": 1200}
    fake_service.get_audit_events.assert_awaited_once_with("s-1", limit=10)


def test_platform_audit_log_is_not_a_store_id(client, fake_service):
    fake_service.get_recent_audit_events.return_value = [
        AuditEvent(id=7, entity_id="s-2", action=AuditAction.STORE_DELETED, owner_id="u2"),
    ]

    body = client.get("/api/stores/audit/log?limit=5").json()

    assert body["count"] == 1
    assert body["entries"][0]["entityId"] == "s-2"
    fake_service.get_recent_audit_events.assert_awaited_once_with(limit=5)
    fake_service.get_store.assert_not_awaited()
    fake_service.get_audit_events.assert_not_awaited()


# --- mutate ---

def test_retry_is_accepted(client, fake_service):
    fake_service.retry.return_value = make_record()

    resp = client.post("/api/stores/s-1/retry", headers=USER)

    assert resp.status_code == 202
    fake_service.retry.assert_awaited_once_with("s-1", "u1")


def test_retry_of_healthy_store_conflicts(client, fake_service):
    fake_service.retry.side_effect = ConflictError("Store 's-1' is READY; only FAILED stores can be retried")
    assert client.post("/api/stores/s-1/retry", headers=USER).status_code == 409


def test_delete(client, fake_service):
    resp = client.delete("/api/stores/s-1", headers=USER)

    assert resp.status_code == 200
    assert resp.json()["id"] == "s-1"
    fake_service.delete.assert_awaited_once_with("s-1", "u1")


def test_delete_someone_elses_store_is_403(client, fake_service):
    fake_service.delete.side_effect = AuthorizationError("Forbidden: you don't own this store")
    assert client.delete("/api/stores/s-1", headers={"X-User-Id": "u2"}).status_code == 403


# --- platform endpoints ---

def test_unexpected_errors_become_500(client, fake_service):
    fake_service.list_stores.side_effect = RuntimeError("boom")

    resp = client.get("/api/stores")

    assert resp.status_code == 500
    assert resp.json()["detail"] == "Internal server error"


def test_health_without_database_is_degraded(client):
    body = client.get("/health").json()
    assert body["status"] == "degraded"
    assert body["redis"] == "disabled"


def test_prometheus_metrics(client):
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "store_platform_stores_created_total" in resp.text
