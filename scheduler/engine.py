"""Execution engine adapters.

The scheduler never runs runbook steps itself; it hands an execution ID to
whatever implements :class:`ExecutionEngine`.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


class ExecutionEngine(Protocol):
    async def execute(self, execution_id: str) -> None: ...


class HttpExecutionEngine:
    """Start executions on a remote engine: ``POST {base_url}/executions/{id}/run``.

    Raises ``httpx.HTTPError`` on connection failures and non-2xx responses.
    """

    def __init__(self, base_url: str, timeout: float | None = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def execute(self, execution_id: str) -> None:
        async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout) as c:
            resp = await c.post(f"/executions/{execution_id}/run")
            resp.raise_for_status()
        logger.info("Execution handed to engine", extra={"execution_id": execution_id})


class LoggingExecutionEngine:
    """Fallback when no engine URL is configured: executions stay queued."""

    async def execute(self, execution_id: str) -> None:
        logger.warning(
            "No execution engine configured; execution left queued",
            extra={"execution_id": execution_id},
        )
