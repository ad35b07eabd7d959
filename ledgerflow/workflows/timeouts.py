"""In-process timers that expire pending approvals."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)

TimeoutCallback = Callable[[str, str], Awaitable[object]]


class ApprovalTimeoutScheduler:
    """One asyncio task per suspended run.

    Timers live only in this process. After a restart, call
    ``WorkflowRunner.expire_overdue`` to catch up on approvals whose expiry
    passed while no timer was armed.
    """

    def __init__(self, callback: TimeoutCallback) -> None:
        self._callback = callback
        self._tasks: Dict[str, asyncio.Task] = {}

    def arm(self, run_id: str, step_id: str, delay_seconds: float) -> None:
        self.disarm(run_id)
        self._tasks[run_id] = asyncio.create_task(
            self._fire(run_id, step_id, max(delay_seconds, 0.0))
        )
        logger.debug(f"Armed approval timeout for run {run_id} in {delay_seconds:.0f}s")

    def disarm(self, run_id: str) -> None:
        task = self._tasks.pop(run_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def armed(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def _fire(self, run_id: str, step_id: str, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        self._tasks.pop(run_id, None)
        try:
            await self._callback(run_id, step_id)
        except Exception:
            logger.exception(f"Approval timeout handler failed for run {run_id}")

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
