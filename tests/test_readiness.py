"""Readiness classification of a namespace's pods."""

from store_platform.models import StoreStatus, WorkloadUnitStatus
from store_platform.services.readiness import evaluate_readiness

from .fakes import failed, pending, running


def test_no_pods_is_provisioning():
    result = evaluate_readiness([])
    assert result.status == StoreStatus.PROVISIONING
    assert result.message == "No pods found yet"


def test_any_failed_pod_fails_the_store():
    result = evaluate_readiness([running("web-0"), failed("db-0")])
    assert result.status == StoreStatus.FAILED
    assert "db-0" in result.message


def test_restart_threshold_is_exclusive():
    at_threshold = evaluate_readiness([running("web-0", restarts=5)], restart_threshold=5)
    assert at_threshold.status == StoreStatus.READY

    over = evaluate_readiness(
        [running("web-0", ready=False, restarts=6, reason="CrashLoopBackOff")],
        restart_threshold=5,
    )
    assert over.status == StoreStatus.FAILED
    assert "CrashLoopBackOff" in over.message


def test_all_running_and_ready_is_ready():
    result = evaluate_readiness([running("web-0"), running("db-0")])
    assert result.status == StoreStatus.READY
    assert result.message == "All 2 pods ready"


def test_completed_job_pods_count_as_ready():
    done = WorkloadUnitStatus(name="migrate-xyz", phase="Succeeded", ready=False)
    result = evaluate_readiness([running("web-0"), done])
    assert result.status == StoreStatus.READY


def test_running_with_pending_probes_is_degraded_ready():
    result = evaluate_readiness([running("web-0"), running("db-0", ready=False)])
    assert result.status == StoreStatus.READY
    assert "db-0" in result.message


def test_pending_pod_keeps_provisioning():
    result = evaluate_readiness([running("web-0"), pending("db-0")])
    assert result.status == StoreStatus.PROVISIONING
    assert result.message == "1/2 pods ready; pod db-0 is ContainerCreating"


def test_evaluation_is_deterministic():
    units = (running("web-0"), pending("db-0", reason=None))
    assert evaluate_readiness(units) == evaluate_readiness(list(units))
    assert evaluate_readiness(units).message.endswith("pod db-0 is Pending")
