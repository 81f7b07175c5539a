"""ScheduleStore — SQLite persistence for Schedule records."""

import logging
from datetime import datetime, timezone

import sqlalchemy as sa
from pydantic import ValidationError
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine

from scheduler.models import Schedule

logger = logging.getLogger(__name__)

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_schedules = sa.Table(
    "runbook_schedules",
    _metadata,
    sa.Column("schedule_id", sa.String,  primary_key=True),
    sa.Column("runbook_id",  sa.String,  nullable=False, index=True),
    sa.Column("is_active",   sa.Boolean, nullable=False, index=True),
    sa.Column("created_at",  sa.String,  nullable=False),
    sa.Column("data",        sa.Text,    nullable=False),   # full Pydantic JSON
)


# ── Store ────────────────────────────────────────────────────────────────────

class ScheduleStore:
    """Persist and query Schedule objects via SQLite."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///schedules.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def save(self, schedule: Schedule) -> None:
        """Insert or update a schedule (upsert)."""
        row = {
            "schedule_id": schedule.schedule_id,
            "runbook_id":  schedule.runbook_id,
            "is_active":   schedule.is_active,
            "created_at":  schedule.created_at.isoformat(),
            "data":        schedule.model_dump_json(),
        }
        async with self._engine.begin() as conn:
            await conn.execute(
                sqlite_insert(_schedules)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["schedule_id"],
                    set_={k: row[k] for k in ("runbook_id", "is_active", "data")},
                )
            )

    async def load(self, schedule_id: str) -> Schedule:
        """Load a Schedule by ID. Raises KeyError if not found."""
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_schedules.c.data).where(_schedules.c.schedule_id == schedule_id)
            )).fetchone()
        if row is None:
            raise KeyError(f"Schedule '{schedule_id}' not found")
        return Schedule.model_validate_json(row.data)

    async def list_active(self) -> list[Schedule]:
        """All schedules with is_active set, in insertion order."""
        query = (
            sa.select(_schedules.c.schedule_id, _schedules.c.data)
            .where(_schedules.c.is_active.is_(True))
            .order_by(_schedules.c.created_at)
        )
        return await self._fetch(query)

    async def list_by_runbook(self, runbook_id: str) -> list[Schedule]:
        """Schedules for one runbook, newest first."""
        query = (
            sa.select(_schedules.c.schedule_id, _schedules.c.data)
            .where(_schedules.c.runbook_id == runbook_id)
            .order_by(_schedules.c.created_at.desc())
        )
        return await self._fetch(query)

    async def update_timestamps(
        self,
        schedule_id: str,
        last_run_at: datetime,
        next_run_at: datetime,
    ) -> Schedule:
        """Record a firing. Single-row write, no version check."""
        schedule = await self.load(schedule_id)
        schedule.last_run_at = last_run_at
        schedule.next_run_at = next_run_at
        schedule.updated_at = datetime.now(timezone.utc)
        await self.save(schedule)
        return schedule

    async def delete(self, schedule_id: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.delete(_schedules).where(_schedules.c.schedule_id == schedule_id)
            )

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _fetch(self, query) -> list[Schedule]:
        """Rows that no longer validate are logged and left out."""
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        schedules = []
        for r in rows:
            try:
                schedules.append(Schedule.model_validate_json(r.data))
            except ValidationError as e:
                logger.warning(
                    "Skipping unreadable schedule",
                    extra={"schedule_id": r.schedule_id, "error": str(e)},
                )
        return schedules
