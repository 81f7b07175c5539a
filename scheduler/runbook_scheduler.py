"""Runbook scheduler — the once-a-minute evaluation loop and schedule lifecycle."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.logging_config import schedule_context, set_tick_id
from scheduler.dispatcher import ExecutionDispatcher
from scheduler.models import Execution, RunbookEnvironment, Schedule, ScheduleFrequency
from scheduler.next_run import compute_next, compute_next_for, is_due
from scheduler.schedule_store import ScheduleStore
from store.execution_store import ExecutionStore

logger = logging.getLogger(__name__)

_TICK_JOB_ID = "runbook-scheduler-tick"

# Fields a partial update may touch
_PATCHABLE = frozenset({
    "name", "frequency", "cron_expression", "timezone",
    "environment", "input_params", "is_active", "ends_at",
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunbookScheduler:
    """Polls active schedules and fires the ones that are due.

    State machine: stopped → running → stopped.  Only :meth:`start` and
    :meth:`stop` touch the timer; the APScheduler instance is private.
    """

    def __init__(
        self,
        schedule_store: ScheduleStore,
        execution_store: ExecutionStore,
        dispatcher: ExecutionDispatcher,
        interval_seconds: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = schedule_store
        self._executions = execution_store
        self._dispatcher = dispatcher
        self._interval = interval_seconds
        self._clock = clock
        self._aps: AsyncIOScheduler | None = None
        # Timer ticks and on-demand ticks share this; passes never overlap
        self._tick_lock = asyncio.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._aps is not None

    async def start(self) -> None:
        """Run one pass now, then every ``interval_seconds``. No-op if running."""
        if self.running:
            logger.info("RunbookScheduler already running")
            return

        # Claimed up front so a concurrent start() sees us as running
        self._aps = AsyncIOScheduler()
        try:
            self._dispatcher.start()
            await self.tick()
            self._aps.add_job(
                self.tick,
                trigger=IntervalTrigger(seconds=self._interval),
                id=_TICK_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self._aps.start()
        except BaseException:
            self._aps = None
            raise
        logger.info("RunbookScheduler started", extra={"interval_seconds": self._interval})

    async def stop(self) -> None:
        """Disarm the timer. In-flight dispatches keep running."""
        if self._aps is None:
            return
        if self._aps.running:
            self._aps.shutdown(wait=False)
        self._aps = None
        logger.info("RunbookScheduler stopped")

    # ── Evaluation pass ──────────────────────────────────────────────────────

    async def tick(self) -> int:
        """Evaluate every active schedule once. Returns how many fired.

        A pass that starts while another is running waits for it, then
        reads the schedules it just advanced.
        """
        async with self._tick_lock:
            now = self._clock()
            set_tick_id(uuid.uuid4().hex[:12])

            try:
                schedules = await self._store.list_active()
            except Exception:
                logger.exception("Could not list active schedules; skipping tick")
                return 0

            fired = 0
            for schedule in schedules:
                with schedule_context(schedule.schedule_id):
                    try:
                        if is_due(schedule, now):
                            await self._dispatcher.trigger(schedule, now)
                            fired += 1
                    except Exception:
                        logger.exception("Error processing schedule")

            logger.debug("Tick finished", extra={"active": len(schedules), "fired": fired})
            return fired

    # ── Schedule management ──────────────────────────────────────────────────

    async def create_schedule(
        self,
        runbook_id: str,
        name: str,
        frequency: ScheduleFrequency,
        created_by: str,
        environment: RunbookEnvironment = RunbookEnvironment.DEVELOPMENT,
        cron_expression: str | None = None,
        timezone: str | None = None,
        input_params: dict[str, Any] | None = None,
        ends_at: datetime | None = None,
    ) -> Schedule:
        """Persist a new active schedule with its first next_run_at."""
        now = self._clock()
        schedule = Schedule(
            runbook_id=runbook_id,
            name=name,
            frequency=frequency,
            cron_expression=cron_expression,
            timezone=timezone or "UTC",
            environment=environment,
            input_params=input_params,
            ends_at=ends_at,
            created_by=created_by,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        schedule.next_run_at = compute_next_for(schedule, now)
        await self._store.save(schedule)
        logger.info(
            "Schedule created",
            extra={"schedule_id": schedule.schedule_id, "runbook_id": runbook_id},
        )
        return schedule

    async def get_schedule(self, schedule_id: str) -> Schedule:
        return await self._store.load(schedule_id)

    async def update_schedule(self, schedule_id: str, changes: dict[str, Any]) -> Schedule:
        """Apply a partial update. Raises KeyError / ValueError.

        Changing the cadence recomputes next_run_at from now.
        """
        unknown = set(changes) - _PATCHABLE
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        current = await self._store.load(schedule_id)
        merged = current.model_dump()
        merged.update(changes)
        if merged["frequency"] != ScheduleFrequency.CRON and "cron_expression" not in changes:
            merged["cron_expression"] = None
        now = self._clock()
        merged["updated_at"] = now
        schedule = Schedule.model_validate(merged)   # raises ValueError subclass

        if (
            schedule.frequency != current.frequency
            or schedule.cron_expression != current.cron_expression
        ):
            schedule.next_run_at = compute_next_for(schedule, now)

        await self._store.save(schedule)
        logger.info(
            "Schedule updated",
            extra={"schedule_id": schedule_id, "fields": sorted(changes)},
        )
        return schedule

    async def delete_schedule(self, schedule_id: str) -> None:
        await self._store.load(schedule_id)   # raises KeyError if missing
        await self._store.delete(schedule_id)
        logger.info("Schedule deleted", extra={"schedule_id": schedule_id})

    async def pause_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self._store.load(schedule_id)
        schedule.is_active = False
        schedule.updated_at = self._clock()
        await self._store.save(schedule)
        logger.info("Schedule paused", extra={"schedule_id": schedule_id})
        return schedule

    async def resume_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self._store.load(schedule_id)
        now = self._clock()
        schedule.is_active = True
        schedule.next_run_at = compute_next(schedule.frequency, schedule.cron_expression, now)
        schedule.updated_at = now
        await self._store.save(schedule)
        logger.info(
            "Schedule resumed",
            extra={"schedule_id": schedule_id, "next_run_at": schedule.next_run_at.isoformat()},
        )
        return schedule

    async def list_schedules_for_runbook(self, runbook_id: str) -> list[Schedule]:
        return await self._store.list_by_runbook(runbook_id)

    async def list_executions(
        self,
        runbook_id: str | None = None,
        schedule_id: str | None = None,
    ) -> list[Execution]:
        return await self._executions.list_all(runbook_id=runbook_id, schedule_id=schedule_id)
