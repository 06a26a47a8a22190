"""
Readiness polling as an explicit state machine.

Each probe result feeds `advance`, a pure transition function, so the loop
itself only sleeps and dispatches. Bounded by attempt count and wall-clock
timeout, whichever triggers first.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..errors import ClusterError, ProvisioningTimeoutError
from ..models import ReadinessResult, StoreStatus

logger = logging.getLogger("poller")


class PollPhase(str, Enum):
    POLLING = "POLLING"
    READY = "READY"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


@dataclass(frozen=True)
class PollState:
    started_at: float
    attempt: int = 0
    phase: PollPhase = PollPhase.POLLING
    last_result: Optional[ReadinessResult] = None


class ReadinessPoller:
    def __init__(
        self,
        probe: Callable[[], Awaitable[ReadinessResult]],
        interval: float,
        max_attempts: int,
        timeout: float,
        label: str = "",
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.probe = probe
        self.interval = interval
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.label = label
        self._sleep = sleep
        self._clock = clock

    def advance(self, state: PollState, result: ReadinessResult, now: float) -> PollState:
        if result.status == StoreStatus.READY:
            phase = PollPhase.READY
        elif result.status == StoreStatus.FAILED:
            phase = PollPhase.FAILED
        elif state.attempt >= self.max_attempts or now - state.started_at >= self.timeout:
            phase = PollPhase.TIMED_OUT
        else:
            phase = PollPhase.POLLING
        return replace(state, phase=phase, last_result=result)

    async def run(self) -> ReadinessResult:
        """Returns the READY result; raises ClusterError or ProvisioningTimeoutError otherwise."""
        state = PollState(started_at=self._clock())
        while True:
            state = replace(state, attempt=state.attempt + 1)
            result = await self.probe()
            now = self._clock()
            state = self.advance(state, result, now)
            logger.info(
                f"[{self.label}] Attempt {state.attempt}/{self.max_attempts} - "
                f"Status: {result.status.value}, Message: {result.message}"
            )

            if state.phase == PollPhase.READY:
                return result
            if state.phase == PollPhase.FAILED:
                raise ClusterError(f"Store provisioning failed: {result.message}")
            if state.phase == PollPhase.TIMED_OUT:
                elapsed = now - state.started_at
                raise ProvisioningTimeoutError(
                    f"Provisioning timeout exceeded after {state.attempt} attempts "
                    f"({elapsed:.0f}s): {result.message}"
                )
            await self._sleep(self.interval)
