"""API request and response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from scheduler.models import Execution, RunbookEnvironment, Schedule, ScheduleFrequency


class CreateScheduleRequest(BaseModel):
    name: str
    frequency: ScheduleFrequency
    cron_expression: str | None = None
    timezone: str | None = None
    environment: RunbookEnvironment = RunbookEnvironment.DEVELOPMENT
    input_params: dict[str, Any] | None = None
    ends_at: datetime | None = None
    created_by: str = "api"


class UpdateScheduleRequest(BaseModel):
    name: str | None = None
    frequency: ScheduleFrequency | None = None
    cron_expression: str | None = None
    timezone: str | None = None
    environment: RunbookEnvironment | None = None
    input_params: dict[str, Any] | None = None
    is_active: bool | None = None
    ends_at: datetime | None = None


class ScheduleResponse(BaseModel):
    schedule_id: str
    runbook_id: str
    name: str
    frequency: str
    cron_expression: str | None = None
    timezone: str
    environment: str
    is_active: bool
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    ends_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime

    @classmethod
    def from_schedule(cls, s: Schedule) -> "ScheduleResponse":
        return cls(
            schedule_id=s.schedule_id,
            runbook_id=s.runbook_id,
            name=s.name,
            frequency=s.frequency.value,
            cron_expression=s.cron_expression,
            timezone=s.timezone,
            environment=s.environment.value,
            is_active=s.is_active,
            next_run_at=s.next_run_at,
            last_run_at=s.last_run_at,
            ends_at=s.ends_at,
            created_by=s.created_by,
            created_at=s.created_at,
        )


class ExecutionResponse(BaseModel):
    execution_id: str
    runbook_id: str
    schedule_id: str | None = None
    status: str
    triggered_by: str
    triggered_by_name: str
    trigger_type: str
    environment: str
    created_at: datetime

    @classmethod
    def from_execution(cls, e: Execution) -> "ExecutionResponse":
        return cls(
            execution_id=e.execution_id,
            runbook_id=e.runbook_id,
            schedule_id=e.schedule_id,
            status=e.status.value,
            triggered_by=e.triggered_by,
            triggered_by_name=e.triggered_by_name,
            trigger_type=e.trigger_type,
            environment=e.environment.value,
            created_at=e.created_at,
        )


class FrequenciesResponse(BaseModel):
    frequencies: list[str]


class TickResponse(BaseModel):
    fired: int
