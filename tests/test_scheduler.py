"""Tests for the runbook scheduler loop and schedule lifecycle."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from core.logging_config import get_schedule_id, get_tick_id
from scheduler import runbook_scheduler
from scheduler.dispatcher import ExecutionDispatcher
from scheduler.models import RunbookEnvironment, Schedule, ScheduleFrequency
from scheduler.runbook_scheduler import RunbookScheduler
from scheduler.schedule_store import ScheduleStore, _schedules
from store.execution_store import ExecutionStore

START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeEngine:
    def __init__(self):
        self.calls: list[str] = []

    async def execute(self, execution_id: str) -> None:
        self.calls.append(execution_id)


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
async def stores(tmp_path):
    sched_store = ScheduleStore(f"sqlite+aiosqlite:///{tmp_path}/sched.db")
    await sched_store.init()
    exec_store = ExecutionStore(f"sqlite+aiosqlite:///{tmp_path}/sched.db")
    await exec_store.init()
    yield sched_store, exec_store
    await sched_store.close()
    await exec_store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
async def dispatcher(stores, engine):
    sched_store, exec_store = stores
    d = ExecutionDispatcher(engine, sched_store, exec_store)
    d.start()
    yield d
    await d.stop()


@pytest.fixture
async def scheduler(stores, dispatcher, clock):
    sched_store, exec_store = stores
    s = RunbookScheduler(sched_store, exec_store, dispatcher, interval_seconds=3600, clock=clock)
    yield s
    await s.stop()


async def create_hourly(scheduler, runbook_id: str = "rb-1", **kwargs) -> Schedule:
    return await scheduler.create_schedule(
        runbook_id=runbook_id,
        name=kwargs.pop("name", "hourly"),
        frequency=ScheduleFrequency.HOURLY,
        created_by="user-1",
        **kwargs,
    )


# ── End-to-end ───────────────────────────────────────────────────────────────

async def test_hourly_end_to_end(scheduler, stores, clock, dispatcher, engine):
    sched_store, exec_store = stores
    schedule = await create_hourly(scheduler)
    assert schedule.next_run_at == START + timedelta(hours=1)

    assert await scheduler.tick() == 0

    clock.advance(hours=1, minutes=1)
    assert await scheduler.tick() == 1
    await dispatcher.join()

    executions = await exec_store.list_all()
    assert len(executions) == 1
    assert executions[0].trigger_type == "scheduled"
    assert engine.calls == [executions[0].execution_id]

    loaded = await sched_store.load(schedule.schedule_id)
    assert loaded.last_run_at == clock.now
    assert loaded.next_run_at == clock.now + timedelta(hours=1)

    # Immediately again: nothing more fires
    assert await scheduler.tick() == 0
    assert len(await exec_store.list_all()) == 1


async def test_cron_schedule_fires_once_per_match(scheduler, stores, clock, dispatcher):
    _, exec_store = stores
    await scheduler.create_schedule(
        runbook_id="rb-1",
        name="quarter-hour",
        frequency=ScheduleFrequency.CRON,
        cron_expression="*/15 * * * *",
        created_by="user-1",
    )
    fired = 0
    for _ in range(60):
        clock.advance(minutes=1)
        fired += await scheduler.tick()
        fired += await scheduler.tick()   # second pass in the same minute
    await dispatcher.join()
    assert fired == 4
    assert len(await exec_store.list_all()) == 4


async def test_frequency_fallback_without_next_run(scheduler, stores, clock):
    sched_store, exec_store = stores
    stale = Schedule(
        runbook_id="rb-2",
        frequency=ScheduleFrequency.DAILY,
        last_run_at=clock.now - timedelta(hours=25),
    )
    fresh = Schedule(
        runbook_id="rb-3",
        frequency=ScheduleFrequency.DAILY,
        last_run_at=clock.now - timedelta(hours=1),
    )
    await sched_store.save(stale)
    await sched_store.save(fresh)

    assert await scheduler.tick() == 1
    assert [e.runbook_id for e in await exec_store.list_all()] == ["rb-2"]


async def test_paused_schedule_never_fires(scheduler, stores, clock):
    _, exec_store = stores
    schedule = await create_hourly(scheduler)
    await scheduler.pause_schedule(schedule.schedule_id)
    clock.advance(hours=5)
    assert await scheduler.tick() == 0
    assert await exec_store.list_all() == []


async def test_ended_schedule_stops_firing(scheduler, stores, clock):
    _, exec_store = stores
    await create_hourly(scheduler, ends_at=START + timedelta(minutes=90))
    clock.advance(hours=1)
    assert await scheduler.tick() == 1
    clock.advance(hours=1)
    assert await scheduler.tick() == 0
    assert len(await exec_store.list_all()) == 1


# ── Failure isolation ────────────────────────────────────────────────────────

async def test_failing_schedule_does_not_block_others(scheduler, stores, clock, monkeypatch, caplog):
    _, exec_store = stores
    bad = await create_hourly(scheduler, runbook_id="rb-bad")
    good = await create_hourly(scheduler, runbook_id="rb-good")

    real_is_due = runbook_scheduler.is_due

    def flaky_is_due(schedule, now):
        if schedule.schedule_id == bad.schedule_id:
            raise RuntimeError("boom")
        return real_is_due(schedule, now)

    monkeypatch.setattr(runbook_scheduler, "is_due", flaky_is_due)
    clock.advance(hours=2)
    with caplog.at_level(logging.ERROR, logger="scheduler.runbook_scheduler"):
        assert await scheduler.tick() == 1

    assert "Error processing schedule" in caplog.text
    executions = await exec_store.list_all()
    assert [e.runbook_id for e in executions] == ["rb-good"]
    assert good.schedule_id == executions[0].schedule_id


async def test_trigger_failure_is_isolated(scheduler, stores, clock, dispatcher, monkeypatch):
    _, exec_store = stores
    first = await create_hourly(scheduler, runbook_id="rb-a")
    await create_hourly(scheduler, runbook_id="rb-b")

    real_trigger = dispatcher.trigger

    async def trigger(schedule, now):
        if schedule.schedule_id == first.schedule_id:
            raise ConnectionError("store went away")
        return await real_trigger(schedule, now)

    monkeypatch.setattr(dispatcher, "trigger", trigger)
    clock.advance(hours=2)
    assert await scheduler.tick() == 1
    assert [e.runbook_id for e in await exec_store.list_all()] == ["rb-b"]


async def test_list_failure_aborts_tick(scheduler, stores, monkeypatch, caplog):
    sched_store, _ = stores

    async def broken():
        raise OSError("database unavailable")

    monkeypatch.setattr(sched_store, "list_active", broken)
    with caplog.at_level(logging.ERROR, logger="scheduler.runbook_scheduler"):
        assert await scheduler.tick() == 0
    assert "skipping tick" in caplog.text


async def test_unreadable_row_does_not_block_others(scheduler, stores, clock, caplog):
    sched_store, exec_store = stores
    good = await create_hourly(scheduler, runbook_id="rb-good")
    broken = await scheduler.create_schedule(
        runbook_id="rb-broken",
        name="broken",
        frequency=ScheduleFrequency.CRON,
        cron_expression="0 * * * *",
        created_by="user-1",
    )
    # A row written before stricter validation existed
    data = broken.model_dump_json().replace('"0 * * * *"', '"0 * * *"')
    async with sched_store._engine.begin() as conn:
        await conn.execute(
            sa.update(_schedules)
            .where(_schedules.c.schedule_id == broken.schedule_id)
            .values(data=data)
        )

    clock.advance(hours=2)
    with caplog.at_level(logging.WARNING, logger="scheduler.schedule_store"):
        assert await scheduler.tick() == 1

    assert "Skipping unreadable schedule" in caplog.text
    skipped = [r for r in caplog.records if r.getMessage() == "Skipping unreadable schedule"]
    assert [r.schedule_id for r in skipped] == [broken.schedule_id]
    executions = await exec_store.list_all()
    assert [e.schedule_id for e in executions] == [good.schedule_id]


async def test_tick_binds_tick_id(scheduler):
    await scheduler.tick()
    assert get_tick_id() != "-"


async def test_tick_binds_schedule_id_per_schedule(scheduler, clock, monkeypatch):
    a = await create_hourly(scheduler, runbook_id="rb-a")
    b = await create_hourly(scheduler, runbook_id="rb-b")
    seen = []

    def recording_is_due(schedule, now):
        seen.append((schedule.schedule_id, get_schedule_id()))
        return False

    monkeypatch.setattr(runbook_scheduler, "is_due", recording_is_due)
    await scheduler.tick()
    assert seen == [(a.schedule_id, a.schedule_id), (b.schedule_id, b.schedule_id)]
    assert get_schedule_id() is None


# ── Overlapping passes ───────────────────────────────────────────────────────

async def test_concurrent_ticks_fire_once(scheduler, stores, clock):
    _, exec_store = stores
    await create_hourly(scheduler)
    clock.advance(hours=2)

    results = await asyncio.gather(scheduler.tick(), scheduler.tick())

    assert sorted(results) == [0, 1]
    assert len(await exec_store.list_all()) == 1


async def test_manual_tick_while_timer_running_fires_once(scheduler, stores, clock):
    _, exec_store = stores
    await scheduler.start()
    await create_hourly(scheduler)
    clock.advance(hours=2)

    await asyncio.gather(scheduler.tick(), scheduler.tick(), scheduler.tick())
    assert len(await exec_store.list_all()) == 1


# ── Start / stop ─────────────────────────────────────────────────────────────

async def test_start_runs_immediate_pass(scheduler, stores, clock):
    sched_store, exec_store = stores
    await sched_store.save(
        Schedule(runbook_id="rb-1", frequency=ScheduleFrequency.DAILY, next_run_at=clock.now)
    )
    await scheduler.start()
    assert scheduler.running
    assert len(await exec_store.list_all()) == 1


async def test_start_twice_is_noop(scheduler, stores, clock):
    sched_store, exec_store = stores
    await scheduler.start()
    await sched_store.save(
        Schedule(runbook_id="rb-1", frequency=ScheduleFrequency.DAILY, next_run_at=clock.now)
    )
    await scheduler.start()   # no second immediate pass
    assert await exec_store.list_all() == []


async def test_stop_is_idempotent(scheduler):
    await scheduler.stop()
    await scheduler.start()
    await scheduler.stop()
    await scheduler.stop()
    assert not scheduler.running


async def test_failed_start_can_be_retried(scheduler, monkeypatch):
    async def broken_tick():
        raise OSError("database unavailable")

    monkeypatch.setattr(scheduler, "tick", broken_tick)
    with pytest.raises(OSError):
        await scheduler.start()
    assert not scheduler.running

    monkeypatch.undo()
    await scheduler.start()
    assert scheduler.running


async def test_restart_after_stop(scheduler):
    await scheduler.start()
    await scheduler.stop()
    await scheduler.start()
    assert scheduler.running


class CountingScheduler(RunbookScheduler):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.ticks = 0

    async def tick(self) -> int:
        self.ticks += 1
        return await super().tick()


async def test_timer_repeats_until_stopped(stores, dispatcher, clock):
    sched_store, exec_store = stores
    s = CountingScheduler(sched_store, exec_store, dispatcher, interval_seconds=0.1, clock=clock)
    await s.start()
    await asyncio.sleep(0.45)
    assert s.ticks >= 3   # immediate pass + timer

    await s.stop()
    after_stop = s.ticks
    await asyncio.sleep(0.3)
    assert s.ticks == after_stop


# ── Lifecycle operations ─────────────────────────────────────────────────────

async def test_create_schedule_defaults(scheduler):
    s = await create_hourly(scheduler)
    assert s.is_active
    assert s.timezone == "UTC"
    assert s.environment == RunbookEnvironment.DEVELOPMENT
    assert s.created_by == "user-1"


async def test_create_cron_schedule_probes_next(scheduler, clock):
    s = await scheduler.create_schedule(
        runbook_id="rb-1",
        name="nine",
        frequency=ScheduleFrequency.CRON,
        cron_expression="30 12 * * *",
        created_by="u",
    )
    assert s.next_run_at == clock.now.replace(minute=30)


async def test_create_rejects_missing_cron(scheduler):
    with pytest.raises(ValueError):
        await scheduler.create_schedule(
            runbook_id="rb-1", name="x", frequency=ScheduleFrequency.CRON, created_by="u",
        )


async def test_pause_leaves_timestamps(scheduler, clock):
    s = await create_hourly(scheduler)
    clock.advance(hours=2)
    await scheduler.tick()
    fired = await scheduler.get_schedule(s.schedule_id)

    paused = await scheduler.pause_schedule(s.schedule_id)
    assert paused.is_active is False
    assert paused.last_run_at == fired.last_run_at
    assert paused.next_run_at == fired.next_run_at


async def test_resume_recomputes_from_now(scheduler, clock):
    s = await create_hourly(scheduler)
    await scheduler.pause_schedule(s.schedule_id)
    clock.advance(days=3)

    resumed = await scheduler.resume_schedule(s.schedule_id)
    assert resumed.is_active
    assert resumed.next_run_at > clock.now
    assert resumed.next_run_at == clock.now + timedelta(hours=1)
    assert (await scheduler.get_schedule(s.schedule_id)).is_active


async def test_resume_cron_uses_probe(scheduler, clock):
    s = await scheduler.create_schedule(
        runbook_id="rb-1", name="c", frequency=ScheduleFrequency.CRON,
        cron_expression="0 * * * *", created_by="u",
    )
    await scheduler.pause_schedule(s.schedule_id)
    clock.advance(minutes=10)
    resumed = await scheduler.resume_schedule(s.schedule_id)
    assert resumed.next_run_at == START + timedelta(hours=1)


async def test_update_partial_fields(scheduler):
    s = await create_hourly(scheduler)
    updated = await scheduler.update_schedule(s.schedule_id, {"name": "renamed"})
    assert updated.name == "renamed"
    assert updated.frequency == ScheduleFrequency.HOURLY
    assert updated.next_run_at == s.next_run_at


async def test_update_cadence_recomputes_next_run(scheduler, clock):
    s = await create_hourly(scheduler)
    clock.advance(minutes=5)
    updated = await scheduler.update_schedule(s.schedule_id, {"frequency": ScheduleFrequency.DAILY})
    assert updated.next_run_at == clock.now + timedelta(hours=24)


async def test_update_to_cron_requires_expression(scheduler):
    s = await create_hourly(scheduler)
    with pytest.raises(ValueError):
        await scheduler.update_schedule(s.schedule_id, {"frequency": ScheduleFrequency.CRON})
    updated = await scheduler.update_schedule(
        s.schedule_id,
        {"frequency": ScheduleFrequency.CRON, "cron_expression": "0 9 * * 1-5"},
    )
    assert updated.cron_expression == "0 9 * * 1-5"


async def test_update_away_from_cron_clears_expression(scheduler):
    s = await scheduler.create_schedule(
        runbook_id="rb-1", name="c", frequency=ScheduleFrequency.CRON,
        cron_expression="0 * * * *", created_by="u",
    )
    updated = await scheduler.update_schedule(s.schedule_id, {"frequency": ScheduleFrequency.WEEKLY})
    assert updated.cron_expression is None


async def test_update_rejects_unknown_fields(scheduler):
    s = await create_hourly(scheduler)
    with pytest.raises(ValueError):
        await scheduler.update_schedule(s.schedule_id, {"runbook_id": "other"})


async def test_update_missing_raises(scheduler):
    with pytest.raises(KeyError):
        await scheduler.update_schedule("ghost", {"name": "x"})


async def test_delete_schedule(scheduler):
    s = await create_hourly(scheduler)
    await scheduler.delete_schedule(s.schedule_id)
    with pytest.raises(KeyError):
        await scheduler.get_schedule(s.schedule_id)


async def test_delete_missing_raises(scheduler):
    with pytest.raises(KeyError):
        await scheduler.delete_schedule("ghost")


async def test_pause_missing_raises(scheduler):
    with pytest.raises(KeyError):
        await scheduler.pause_schedule("ghost")


async def test_list_for_runbook_newest_first(scheduler, clock):
    first = await create_hourly(scheduler, name="first")
    clock.advance(minutes=1)
    second = await create_hourly(scheduler, name="second")
    await create_hourly(scheduler, runbook_id="rb-other")

    listed = await scheduler.list_schedules_for_runbook("rb-1")
    assert [s.schedule_id for s in listed] == [second.schedule_id, first.schedule_id]
