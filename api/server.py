"""FastAPI service layer for the runbook scheduler."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from api.models import (
    CreateScheduleRequest,
    ExecutionResponse,
    FrequenciesResponse,
    ScheduleResponse,
    TickResponse,
    UpdateScheduleRequest,
)
from core.config import Settings
from scheduler.dispatcher import ExecutionDispatcher
from scheduler.engine import ExecutionEngine, HttpExecutionEngine, LoggingExecutionEngine
from scheduler.models import ScheduleFrequency
from scheduler.runbook_scheduler import RunbookScheduler
from scheduler.schedule_store import ScheduleStore
from store.execution_store import ExecutionStore

logger = logging.getLogger(__name__)

# ── Singletons ────────────────────────────────────────────────────────────────
# Tests swap these module attributes for per-test instances.

_settings = Settings.from_env()


def _build_engine(settings: Settings) -> ExecutionEngine:
    if settings.engine_url:
        return HttpExecutionEngine(settings.engine_url, timeout=settings.engine_timeout)
    return LoggingExecutionEngine()


_schedule_store = ScheduleStore(_settings.db_url)
_execution_store = ExecutionStore(_settings.db_url)
_dispatcher = ExecutionDispatcher(_build_engine(_settings), _schedule_store, _execution_store)
_scheduler = RunbookScheduler(
    _schedule_store,
    _execution_store,
    _dispatcher,
    interval_seconds=_settings.interval_seconds,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _schedule_store.init()
    await _execution_store.init()
    await _scheduler.start()
    yield
    await _scheduler.stop()
    await _dispatcher.stop()


app = FastAPI(
    title="Runbook Scheduler API",
    description="Recurring triggers for runbook executions.",
    version="0.1.0",
    lifespan=lifespan,
)


def _not_found(schedule_id: str) -> HTTPException:
    return HTTPException(404, detail=f"Schedule '{schedule_id}' not found")


# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "scheduler_running": _scheduler.running}


@app.get("/frequencies", response_model=FrequenciesResponse)
async def frequencies():
    return FrequenciesResponse(frequencies=[f.value for f in ScheduleFrequency])


@app.get("/runbooks/{runbook_id}/schedules", response_model=list[ScheduleResponse])
async def list_schedules(runbook_id: str):
    """List a runbook's schedules, newest first."""
    schedules = await _scheduler.list_schedules_for_runbook(runbook_id)
    return [ScheduleResponse.from_schedule(s) for s in schedules]


@app.post("/runbooks/{runbook_id}/schedules", response_model=ScheduleResponse, status_code=201)
async def create_schedule(runbook_id: str, req: CreateScheduleRequest):
    """Create an active schedule; next_run_at is computed from now."""
    try:
        schedule = await _scheduler.create_schedule(
            runbook_id=runbook_id,
            name=req.name,
            frequency=req.frequency,
            cron_expression=req.cron_expression,
            timezone=req.timezone,
            environment=req.environment,
            input_params=req.input_params,
            ends_at=req.ends_at,
            created_by=req.created_by,
        )
    except ValueError as e:
        raise HTTPException(422, detail=str(e))
    return ScheduleResponse.from_schedule(schedule)


@app.get("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(schedule_id: str):
    try:
        schedule = await _scheduler.get_schedule(schedule_id)
    except KeyError:
        raise _not_found(schedule_id)
    return ScheduleResponse.from_schedule(schedule)


@app.patch("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(schedule_id: str, req: UpdateScheduleRequest):
    """Partially update a schedule. Only fields present in the body change."""
    changes = req.model_dump(exclude_unset=True)
    try:
        schedule = await _scheduler.update_schedule(schedule_id, changes)
    except KeyError:
        raise _not_found(schedule_id)
    except ValueError as e:
        raise HTTPException(422, detail=str(e))
    return ScheduleResponse.from_schedule(schedule)


@app.delete("/schedules/{schedule_id}", status_code=204)
async def delete_schedule(schedule_id: str):
    try:
        await _scheduler.delete_schedule(schedule_id)
    except KeyError:
        raise _not_found(schedule_id)


@app.post("/schedules/{schedule_id}/pause", response_model=ScheduleResponse)
async def pause_schedule(schedule_id: str):
    """Stop firing; timestamps are left untouched."""
    try:
        schedule = await _scheduler.pause_schedule(schedule_id)
    except KeyError:
        raise _not_found(schedule_id)
    return ScheduleResponse.from_schedule(schedule)


@app.post("/schedules/{schedule_id}/resume", response_model=ScheduleResponse)
async def resume_schedule(schedule_id: str):
    """Re-activate a schedule and plan its next run from now."""
    try:
        schedule = await _scheduler.resume_schedule(schedule_id)
    except KeyError:
        raise _not_found(schedule_id)
    return ScheduleResponse.from_schedule(schedule)


@app.get("/executions", response_model=list[ExecutionResponse])
async def list_executions(runbook_id: str | None = None, schedule_id: str | None = None):
    executions = await _scheduler.list_executions(runbook_id=runbook_id, schedule_id=schedule_id)
    return [ExecutionResponse.from_execution(e) for e in executions]


@app.post("/scheduler/tick", response_model=TickResponse)
async def run_tick():
    """Run one evaluation pass immediately."""
    return TickResponse(fired=await _scheduler.tick())
