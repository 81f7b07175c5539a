"""Execution dispatch — create the execution, advance the schedule, hand off.

Hand-off goes through an unbounded ``asyncio.Queue``.  There is no
backpressure and no result path back to the scheduler loop: a slow or
failing engine only ever shows up in the logs.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from scheduler.engine import ExecutionEngine
from scheduler.models import Execution, ExecutionStatus, Schedule
from scheduler.next_run import compute_next_for
from scheduler.schedule_store import ScheduleStore
from store.execution_store import ExecutionStore

logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = "scheduler"


class ExecutionDispatcher:
    def __init__(
        self,
        engine: ExecutionEngine,
        schedule_store: ScheduleStore,
        execution_store: ExecutionStore,
    ):
        self._engine = engine
        self._schedules = schedule_store
        self._executions = execution_store
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start draining the queue. Safe to call repeatedly."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name="execution-dispatcher")

    async def stop(self) -> None:
        """Stop taking work off the queue. Running engine calls are left alone."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def join(self) -> None:
        """Wait until every submitted execution has been handed off and finished."""
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._inflight)

    # ── Dispatch ─────────────────────────────────────────────────────────────

    async def trigger(self, schedule: Schedule, now: datetime) -> Execution:
        """Fire *schedule*: queued execution first, then timestamps, then hand-off.

        The schedule is advanced before the engine is invoked, so a crash
        or engine failure after this point never causes a re-fire.
        """
        execution = Execution(
            runbook_id=schedule.runbook_id,
            schedule_id=schedule.schedule_id,
            status=ExecutionStatus.QUEUED,
            triggered_by=schedule.created_by or SCHEDULER_ACTOR,
            environment=schedule.environment,
            input_params=schedule.input_params,
        )
        await self._executions.create(execution)

        next_run_at = compute_next_for(schedule, now)
        await self._schedules.update_timestamps(schedule.schedule_id, now, next_run_at)

        self.submit(execution.execution_id)
        logger.info(
            "Schedule fired",
            extra={
                "schedule_id": schedule.schedule_id,
                "runbook_id": schedule.runbook_id,
                "execution_id": execution.execution_id,
                "next_run_at": next_run_at.isoformat(),
            },
        )
        return execution

    def submit(self, execution_id: str) -> None:
        self._queue.put_nowait(execution_id)

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _drain(self) -> None:
        while True:
            execution_id = await self._queue.get()
            task = asyncio.create_task(self._execute(execution_id))
            self._inflight.add(task)
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        self._queue.task_done()

    async def _execute(self, execution_id: str) -> None:
        try:
            await self._engine.execute(execution_id)
        except Exception:
            logger.exception("Scheduled execution failed", extra={"execution_id": execution_id})
            try:
                await self._executions.set_status(execution_id, ExecutionStatus.FAILED)
            except Exception:
                logger.exception(
                    "Could not mark execution failed", extra={"execution_id": execution_id}
                )
