"""
Bounded worker pool for detached background work (provisioning, resume,
startup reconciliation).

Requests return as soon as a task is submitted; at most
MAX_PARALLEL_PROVISIONS tasks run their body at once, the rest wait on the
semaphore. A task that raises is logged by the done-callback and never
propagates to the request that submitted it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger("task_runner")


class ProvisioningTaskRunner:
    def __init__(self, max_parallel: int = 3):
        self.max_parallel = max_parallel
        self._semaphore = asyncio.Semaphore(max_parallel)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._counter = 0

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, work: Callable[[], Awaitable[None]]) -> asyncio.Task:
        """Schedule `work()` on the event loop. Must be called from within a running loop."""
        self._counter += 1
        key = f"{name}#{self._counter}"
        task = asyncio.create_task(self._run(key, work), name=key)
        self._tasks[key] = task

        def cleanup(t: asyncio.Task):
            self._tasks.pop(key, None)
            if t.cancelled():
                logger.warning(f"Task {key} cancelled")
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f"Task {key} crashed: {exc}", exc_info=exc)

        task.add_done_callback(cleanup)
        return task

    async def _run(self, key: str, work: Callable[[], Awaitable[None]]) -> None:
        async with self._semaphore:
            logger.debug(f"Task {key} started")
            await work()
            logger.debug(f"Task {key} finished")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every submitted task, including ones submitted while waiting."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                break
            await asyncio.wait(pending, timeout=timeout)
            if timeout is not None:
                break
        # let done-callbacks run
        await asyncio.sleep(0)

    async def shutdown(self) -> None:
        """Cancel outstanding tasks; the reconciler picks their stores up on next start."""
        pending = list(self._tasks.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info(f"Cancelled {len(pending)} background tasks on shutdown")
