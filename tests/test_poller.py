"""Readiness poller state machine."""

import pytest

from store_platform.errors import ClusterError, ProvisioningTimeoutError
from store_platform.models import ReadinessResult, StoreStatus
from store_platform.services.poller import PollPhase, PollState, ReadinessPoller

PROVISIONING = ReadinessResult(StoreStatus.PROVISIONING, "0/1 pods ready")
READY = ReadinessResult(StoreStatus.READY, "All 1 pods ready")
FAILED = ReadinessResult(StoreStatus.FAILED, "Pod web-0 failed")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds


def scripted(*results):
    remaining = list(results)
    calls = []

    async def probe():
        calls.append(1)
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    probe.calls = calls
    return probe


def make_poller(probe, clock, interval=5, max_attempts=10, timeout=300):
    return ReadinessPoller(
        probe, interval=interval, max_attempts=max_attempts, timeout=timeout,
        label="store-1", sleep=clock.sleep, clock=clock,
    )


def test_advance_is_pure():
    poller = make_poller(scripted(READY), FakeClock(), max_attempts=3, timeout=100)
    state = PollState(started_at=0.0, attempt=1)

    assert poller.advance(state, READY, 1.0).phase == PollPhase.READY
    assert poller.advance(state, FAILED, 1.0).phase == PollPhase.FAILED
    assert poller.advance(state, PROVISIONING, 1.0).phase == PollPhase.POLLING
    assert poller.advance(state, PROVISIONING, 100.0).phase == PollPhase.TIMED_OUT
    assert poller.advance(PollState(0.0, attempt=3), PROVISIONING, 1.0).phase == PollPhase.TIMED_OUT
    # input state untouched
    assert state.phase == PollPhase.POLLING and state.last_result is None


@pytest.mark.asyncio
async def test_returns_once_ready():
    clock = FakeClock()
    probe = scripted(PROVISIONING, PROVISIONING, READY)

    result = await make_poller(probe, clock).run()

    assert result == READY
    assert len(probe.calls) == 3
    assert clock.now == 10


@pytest.mark.asyncio
async def test_failed_classification_raises_cluster_error():
    probe = scripted(PROVISIONING, FAILED)
    with pytest.raises(ClusterError, match="Pod web-0 failed"):
        await make_poller(probe, FakeClock()).run()


@pytest.mark.asyncio
async def test_attempt_bound():
    probe = scripted(PROVISIONING)
    with pytest.raises(ProvisioningTimeoutError, match="after 4 attempts"):
        await make_poller(probe, FakeClock(), max_attempts=4).run()
    assert len(probe.calls) == 4


@pytest.mark.asyncio
async def test_wall_clock_bound_triggers_first():
    probe = scripted(PROVISIONING)
    with pytest.raises(ProvisioningTimeoutError):
        await make_poller(probe, FakeClock(), interval=30, max_attempts=100, timeout=60).run()
    # t=0, 30, 60 -> third probe sees the deadline
    assert len(probe.calls) == 3


def test_timeout_error_is_a_builtin_timeout():
    assert issubclass(ProvisioningTimeoutError, TimeoutError)
