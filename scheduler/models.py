"""Scheduler data models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from scheduler import cron


class ScheduleFrequency(str, Enum):
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    CRON = "CRON"


class RunbookEnvironment(str, Enum):
    DEVELOPMENT = "DEVELOPMENT"
    STAGING = "STAGING"
    PRODUCTION = "PRODUCTION"


class ExecutionStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Schedule(BaseModel):
    schedule_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    runbook_id: str
    name: str = ""
    frequency: ScheduleFrequency
    cron_expression: str | None = None   # 5-field, only for CRON
    timezone: str = "UTC"                # stored, not applied to arithmetic
    environment: RunbookEnvironment = RunbookEnvironment.DEVELOPMENT
    input_params: dict[str, Any] | None = None
    is_active: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    ends_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("runbook_id")
    @classmethod
    def runbook_id_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("runbook_id must not be empty")
        return v

    @field_validator("last_run_at", "next_run_at", "ends_at", "created_at", "updated_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        # naive timestamps cannot be compared with the scheduler clock
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def check_cron_expression(self):
        if self.frequency == ScheduleFrequency.CRON:
            if not self.cron_expression:
                raise ValueError("cron_expression is required for CRON frequency")
            cron.validate(self.cron_expression)
        elif self.cron_expression is not None:
            raise ValueError(
                f"cron_expression is only allowed with CRON frequency, got {self.frequency.value}"
            )
        return self


class Execution(BaseModel):
    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    runbook_id: str
    schedule_id: str | None = None
    status: ExecutionStatus = ExecutionStatus.QUEUED
    triggered_by: str
    triggered_by_name: str = "Scheduler"
    trigger_type: str = "scheduled"
    environment: RunbookEnvironment
    input_params: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utcnow)
