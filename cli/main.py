"""Runbook Scheduler CLI — manage schedules on a running scheduler API server."""

from __future__ import annotations

import json
import sys
from typing import Any

import click
import httpx
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

_FREQUENCIES = ["HOURLY", "DAILY", "WEEKLY", "MONTHLY", "CRON"]
_ENVIRONMENTS = ["DEVELOPMENT", "STAGING", "PRODUCTION"]

_STATUS_COLOR: dict[str, str] = {
    "active": "green",
    "paused": "yellow",
    "QUEUED": "blue",
    "RUNNING": "yellow",
    "SUCCESS": "green",
    "FAILED": "red",
    "CANCELLED": "dim",
    "TIMEOUT": "red",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(status: str) -> str:
    return _STATUS_COLOR.get(status, "white")


def _client(url: str) -> httpx.Client:
    return httpx.Client(base_url=url.rstrip("/"), timeout=30)


def _load_file(path: str) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {msg}")
    sys.exit(code)


def _check(resp: httpx.Response) -> None:
    if resp.status_code == 404:
        _die(resp.json().get("detail", "Not found"))
    if resp.is_error:
        _die(f"HTTP {resp.status_code}: {resp.text}")


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _state(row: dict) -> str:
    return "active" if row.get("is_active") else "paused"


def _cadence(row: dict) -> str:
    if row.get("frequency") == "CRON":
        return f"CRON {row.get('cron_expression') or '?'}"
    return row.get("frequency", "?")


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--url", "-u",
    default="http://localhost:8000",
    envvar="SCHEDULER_URL",
    show_default=True,
    help="Scheduler API base URL.",
)
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, url: str, json_output: bool) -> None:
    """Runbook Scheduler — recurring runbook executions."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["json_output"] = json_output


# ── rbs frequencies ───────────────────────────────────────────────────────────


@cli.command("frequencies")
@click.pass_obj
def frequencies(obj: dict) -> None:
    """List the supported schedule frequencies."""
    with _client(obj["url"]) as c:
        resp = c.get("/frequencies")
    _check(resp)
    data = resp.json()
    if obj["json_output"]:
        _echo_json(data)
        return
    for f in data.get("frequencies", []):
        click.echo(f)


# ── rbs tick ──────────────────────────────────────────────────────────────────


@cli.command("tick")
@click.pass_obj
def tick(obj: dict) -> None:
    """Run one scheduler evaluation pass now."""
    with _client(obj["url"]) as c:
        resp = c.post("/scheduler/tick")
    _check(resp)
    data = resp.json()
    if obj["json_output"]:
        _echo_json(data)
        return
    click.echo(f"Fired  {data['fired']}")


# ── rbs executions ────────────────────────────────────────────────────────────


@cli.command("executions")
@click.option("--runbook", "runbook_id", help="Filter by runbook ID.")
@click.option("--schedule", "schedule_id", help="Filter by schedule ID.")
@click.pass_obj
def executions(obj: dict, runbook_id: str | None, schedule_id: str | None) -> None:
    """List executions created by the scheduler."""
    params: dict[str, Any] = {}
    if runbook_id:
        params["runbook_id"] = runbook_id
    if schedule_id:
        params["schedule_id"] = schedule_id
    with _client(obj["url"]) as c:
        resp = c.get("/executions", params=params)
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    if not data:
        click.echo("No executions found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Execution ID", style="cyan")
    table.add_column("Runbook")
    table.add_column("Status")
    table.add_column("Environment")
    table.add_column("Created")
    for row in data:
        status = row.get("status", "?")
        table.add_row(
            row["execution_id"],
            row.get("runbook_id", ""),
            f"[{_color(status)}]{status}[/]",
            row.get("environment", ""),
            row.get("created_at", "-"),
        )
    console.print(table)


# ── rbs schedule ──────────────────────────────────────────────────────────────


@cli.group("schedule")
def schedule() -> None:
    """Manage runbook schedules."""


@schedule.command("list")
@click.argument("runbook_id")
@click.pass_obj
def schedule_list(obj: dict, runbook_id: str) -> None:
    """List schedules of a runbook."""
    with _client(obj["url"]) as c:
        resp = c.get(f"/runbooks/{runbook_id}/schedules")
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    if not data:
        click.echo("No schedules found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Schedule ID", style="cyan")
    table.add_column("Name")
    table.add_column("Cadence")
    table.add_column("Status")
    table.add_column("Next Run")
    for row in data:
        state = _state(row)
        table.add_row(
            row["schedule_id"],
            row.get("name", ""),
            _cadence(row),
            f"[{_color(state)}]{state}[/]",
            row.get("next_run_at") or "-",
        )
    console.print(table)


@schedule.command("show")
@click.argument("schedule_id")
@click.pass_obj
def schedule_show(obj: dict, schedule_id: str) -> None:
    """Show one schedule."""
    with _client(obj["url"]) as c:
        resp = c.get(f"/schedules/{schedule_id}")
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    state = _state(data)
    console.print(f"[cyan]{data['schedule_id']}[/]  {data.get('name', '')}")
    console.print(f"  runbook      {data['runbook_id']}")
    console.print(f"  cadence      {_cadence(data)}  ({data.get('timezone', 'UTC')})")
    console.print(f"  environment  {data.get('environment', '?')}")
    console.print(f"  status       [{_color(state)}]{state}[/]")
    console.print(f"  next run     {data.get('next_run_at') or '-'}")
    console.print(f"  last run     {data.get('last_run_at') or '-'}")
    if data.get("ends_at"):
        console.print(f"  ends at      {data['ends_at']}")


@schedule.command("create")
@click.argument("runbook_id")
@click.option("--name", help="Schedule name.")
@click.option("--frequency", type=click.Choice(_FREQUENCIES, case_sensitive=False))
@click.option("--cron", "cron_expression", help="5-field cron expression (CRON only).")
@click.option("--timezone", help="Stored with the schedule; defaults to UTC.")
@click.option("--environment", type=click.Choice(_ENVIRONMENTS, case_sensitive=False))
@click.option("--file", "file", type=click.Path(exists=True),
              help="Read the schedule from a YAML or JSON file instead.")
@click.pass_obj
def schedule_create(
    obj: dict,
    runbook_id: str,
    name: str | None,
    frequency: str | None,
    cron_expression: str | None,
    timezone: str | None,
    environment: str | None,
    file: str | None,
) -> None:
    """Create a schedule for a runbook.

    \b
    File format (YAML example):
      name: nightly-backup
      frequency: CRON
      cron_expression: "0 2 * * *"
      environment: PRODUCTION
    """
    payload: dict[str, Any] = _load_file(file) if file else {}
    options = {
        "name": name,
        "frequency": frequency.upper() if frequency else None,
        "cron_expression": cron_expression,
        "timezone": timezone,
        "environment": environment.upper() if environment else None,
    }
    payload.update({k: v for k, v in options.items() if v is not None})
    if "name" not in payload or "frequency" not in payload:
        _die("--name and --frequency are required (or provide them in --file)")

    with _client(obj["url"]) as c:
        resp = c.post(f"/runbooks/{runbook_id}/schedules", json=payload)
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    click.echo(f"Created  {data['schedule_id']}  next: {data.get('next_run_at') or '-'}")


@schedule.command("update")
@click.argument("schedule_id")
@click.option("--name")
@click.option("--frequency", type=click.Choice(_FREQUENCIES, case_sensitive=False))
@click.option("--cron", "cron_expression")
@click.option("--timezone")
@click.option("--ends-at", "ends_at", help="ISO-8601 timestamp after which it stops firing.")
@click.pass_obj
def schedule_update(
    obj: dict,
    schedule_id: str,
    name: str | None,
    frequency: str | None,
    cron_expression: str | None,
    timezone: str | None,
    ends_at: str | None,
) -> None:
    """Change fields of a schedule."""
    changes = {
        "name": name,
        "frequency": frequency.upper() if frequency else None,
        "cron_expression": cron_expression,
        "timezone": timezone,
        "ends_at": ends_at,
    }
    payload = {k: v for k, v in changes.items() if v is not None}
    if not payload:
        _die("Nothing to update")

    with _client(obj["url"]) as c:
        resp = c.patch(f"/schedules/{schedule_id}", json=payload)
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    click.echo(f"Updated  {schedule_id}  next: {data.get('next_run_at') or '-'}")


@schedule.command("delete")
@click.argument("schedule_id")
@click.pass_obj
def schedule_delete(obj: dict, schedule_id: str) -> None:
    """Delete a schedule."""
    with _client(obj["url"]) as c:
        resp = c.delete(f"/schedules/{schedule_id}")
    _check(resp)
    click.echo(f"Deleted  {schedule_id}")


@schedule.command("pause")
@click.argument("schedule_id")
@click.pass_obj
def schedule_pause(obj: dict, schedule_id: str) -> None:
    """Pause a schedule."""
    with _client(obj["url"]) as c:
        resp = c.post(f"/schedules/{schedule_id}/pause")
    _check(resp)
    click.echo(f"Paused  {schedule_id}")


@schedule.command("resume")
@click.argument("schedule_id")
@click.pass_obj
def schedule_resume(obj: dict, schedule_id: str) -> None:
    """Resume a paused schedule."""
    with _client(obj["url"]) as c:
        resp = c.post(f"/schedules/{schedule_id}/resume")
    _check(resp)
    data = resp.json()
    click.echo(f"Resumed  {schedule_id}  next: {data.get('next_run_at') or '-'}")
