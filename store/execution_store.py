"""ExecutionStore — SQLite-backed persistence for Execution records."""

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine

from scheduler.models import Execution, ExecutionStatus

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_executions = sa.Table(
    "runbook_executions",
    _metadata,
    sa.Column("execution_id", sa.String, primary_key=True),
    sa.Column("runbook_id",   sa.String, nullable=False, index=True),
    sa.Column("schedule_id",  sa.String, nullable=True,  index=True),
    sa.Column("status",       sa.String, nullable=False),
    sa.Column("created_at",   sa.String, nullable=False),
    sa.Column("data",         sa.Text,   nullable=False),   # full Pydantic JSON
)


# ── Store ────────────────────────────────────────────────────────────────────

class ExecutionStore:
    """Create and load Execution records via SQLite."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///schedules.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def create(self, execution: Execution) -> Execution:
        row = {
            "execution_id": execution.execution_id,
            "runbook_id":   execution.runbook_id,
            "schedule_id":  execution.schedule_id,
            "status":       execution.status.value,
            "created_at":   execution.created_at.isoformat(),
            "data":         execution.model_dump_json(),
        }
        async with self._engine.begin() as conn:
            await conn.execute(sa.insert(_executions).values(**row))
        return execution

    async def load(self, execution_id: str) -> Execution:
        """Load an Execution by ID. Raises KeyError if not found."""
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_executions.c.data).where(_executions.c.execution_id == execution_id)
            )).fetchone()
        if row is None:
            raise KeyError(f"Execution '{execution_id}' not found")
        return Execution.model_validate_json(row.data)

    async def set_status(self, execution_id: str, status: ExecutionStatus) -> Execution:
        execution = await self.load(execution_id)
        execution.status = status
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.update(_executions)
                .where(_executions.c.execution_id == execution_id)
                .values(status=status.value, data=execution.model_dump_json())
            )
        return execution

    async def list_all(
        self,
        runbook_id: str | None = None,
        schedule_id: str | None = None,
    ) -> list[Execution]:
        """Return executions ordered by most recent first."""
        query = sa.select(_executions.c.data)
        if runbook_id:
            query = query.where(_executions.c.runbook_id == runbook_id)
        if schedule_id:
            query = query.where(_executions.c.schedule_id == schedule_id)
        query = query.order_by(_executions.c.created_at.desc())

        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [Execution.model_validate_json(r.data) for r in rows]
