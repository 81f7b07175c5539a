"""Service settings read from the environment (and an optional .env file)."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    db_url: str = "sqlite+aiosqlite:///schedules.db"
    interval_seconds: float = Field(60.0, gt=0)
    engine_url: str | None = None      # unset → executions stay queued
    engine_timeout: float | None = None   # no limit unless ENGINE_TIMEOUT is set
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        env = {
            "db_url":           os.getenv("SCHEDULER_DB_URL"),
            "interval_seconds": os.getenv("SCHEDULER_INTERVAL_SECONDS"),
            "engine_url":       os.getenv("ENGINE_URL") or None,
            "engine_timeout":   os.getenv("ENGINE_TIMEOUT"),
            "log_level":        os.getenv("LOG_LEVEL"),
            "host":             os.getenv("HOST"),
            "port":             os.getenv("PORT"),
        }
        return cls.model_validate({k: v for k, v in env.items() if v is not None})
