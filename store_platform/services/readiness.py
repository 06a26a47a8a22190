"""
Readiness evaluation — classifies the pods of a store namespace into an
aggregate lifecycle state.

Pure and deterministic: same units in, same result out. The provisioning
task, the status endpoint and the reconciler all go through here.
"""

from typing import Iterable

from ..models import ReadinessResult, StoreStatus, WorkloadUnitStatus

DEFAULT_RESTART_THRESHOLD = 5

_SUCCEEDED = "Succeeded"
_RUNNING = "Running"
_FAILED = "Failed"


def evaluate_readiness(
    units: Iterable[WorkloadUnitStatus],
    restart_threshold: int = DEFAULT_RESTART_THRESHOLD,
) -> ReadinessResult:
    """
    Rules, first match wins:
      - no pods                              -> PROVISIONING
      - any pod Failed, or restarting too much -> FAILED
      - every pod Succeeded or Running+ready  -> READY
      - every pod at least Running            -> READY (probes still pending)
      - anything else                         -> PROVISIONING
    """
    units = list(units)
    if not units:
        return ReadinessResult(StoreStatus.PROVISIONING, "No pods found yet")

    for unit in units:
        if unit.phase == _FAILED:
            return ReadinessResult(StoreStatus.FAILED, f"Pod {unit.name} failed")
        if unit.restart_count > restart_threshold:
            reason = f" ({unit.waiting_reason})" if unit.waiting_reason else ""
            return ReadinessResult(
                StoreStatus.FAILED,
                f"Pod {unit.name} restarted {unit.restart_count} times{reason}",
            )

    if all(u.phase == _SUCCEEDED or (u.phase == _RUNNING and u.ready) for u in units):
        return ReadinessResult(StoreStatus.READY, f"All {len(units)} pods ready")

    if all(u.phase in (_RUNNING, _SUCCEEDED) for u in units):
        pending = [u.name for u in units if u.phase == _RUNNING and not u.ready]
        return ReadinessResult(
            StoreStatus.READY,
            f"All pods running; readiness probes pending for {', '.join(pending)}",
        )

    ready = sum(1 for u in units if u.phase == _SUCCEEDED or (u.phase == _RUNNING and u.ready))
    waiting = next(u for u in units if u.phase not in (_RUNNING, _SUCCEEDED))
    detail = waiting.waiting_reason or waiting.phase
    return ReadinessResult(
        StoreStatus.PROVISIONING,
        f"{ready}/{len(units)} pods ready; pod {waiting.name} is {detail}",
    )
