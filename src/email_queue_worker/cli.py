# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for email-queue-worker.

Operates on the job store directly, without going through the HTTP API,
except for ``serve`` which runs the worker.

Usage:
    email-queue-worker serve [--no-http]
    email-queue-worker enqueue event.json --priority 1
    email-queue-worker stats
    email-queue-worker jobs --status failed
    email-queue-worker show <job-id>
    email-queue-worker remove <job-id> --yes
    email-queue-worker retry <job-id>
    email-queue-worker clean --status completed --older-than 86400
    email-queue-worker config

Example:
    $ echo '{"type": "WELCOME_EMAIL", "locale": "en", "timestamp": "2025-01-01T00:00:00Z",
    ...      "userId": "u1", "userEmail": "a@b.c", "userName": "Ann"}' | email-queue-worker enqueue -
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from .broker import SqliteJobBroker
from .config import WorkerConfig, load_config
from .errors import BrokerConnectionError, EventValidationError
from .logger import configure_logging

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Execute an async coroutine synchronously from CLI context."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


async def _with_broker(config: WorkerConfig, action):
    broker = SqliteJobBroker(config.db_path, default_max_attempts=config.max_attempts)
    await broker.connect()
    try:
        return await action(broker)
    finally:
        await broker.close()


@click.group()
@click.option("--config", "-c", "config_path", default=None, help="Path to config.ini (default: $EQW_CONFIG).")
@click.pass_context
def main(ctx: click.Context, config_path: str | None) -> None:
    """Transactional email queue worker."""
    config = load_config(config_path)
    configure_logging(config.log_level)
    ctx.obj = config


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from config).")
@click.option("--no-http", is_flag=True, help="Run the worker without the operator API.")
@click.pass_obj
def serve(config: WorkerConfig, host: str | None, port: int | None, no_http: bool) -> None:
    """Run the worker (and the operator API unless --no-http)."""
    from .server import build_app, build_worker, run_worker

    try:
        worker = build_worker(config)
    except (ValueError, TypeError, ImportError) as exc:
        print_error(str(exc))
        raise SystemExit(1)

    if no_http:
        report = run_async(run_worker(config, worker))
        if report.forced:
            print_error(f"Forced shutdown with {len(report.remaining_job_ids)} jobs still active")
            raise SystemExit(1)
        return

    import uvicorn

    app = build_app(config, worker)
    uvicorn.run(app, host=host or config.http_host, port=port or config.http_port)


@main.command("enqueue")
@click.argument("source", type=click.File("r"))
@click.option("--job-id", default=None, help="Explicit job id (default: derived from content).")
@click.option("--max-attempts", type=click.IntRange(1, 25), default=None, help="Attempts before dead-lettering.")
@click.option("--priority", type=int, default=None, help="Broker priority (1 = highest).")
@click.pass_obj
def enqueue(config: WorkerConfig, source, job_id: str | None, max_attempts: int | None, priority: int | None) -> None:
    """Add the event read from SOURCE (JSON file or '-') to the queue."""
    try:
        event = json.load(source)
    except json.JSONDecodeError as exc:
        print_error(f"Invalid JSON: {exc}")
        raise SystemExit(1)

    try:
        result = run_async(
            _with_broker(
                config,
                lambda broker: broker.enqueue(event, job_id=job_id, max_attempts=max_attempts, priority=priority),
            )
        )
    except (EventValidationError, BrokerConnectionError) as exc:
        print_error(exc.message)
        raise SystemExit(1)

    if result["duplicate"]:
        console.print(f"[yellow]Duplicate event, existing job kept:[/yellow] {result['id']}")
    else:
        print_success(f"Job queued: {result['id']} (priority {result['priority']})")


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def stats(config: WorkerConfig, as_json: bool) -> None:
    """Show job counts by status."""
    counts = run_async(_with_broker(config, lambda broker: broker.counts()))
    if as_json:
        print_json(counts)
        return
    table = Table(title="Email Queue")
    table.add_column("Status", style="cyan")
    table.add_column("Jobs", justify="right")
    for key in ("waiting", "delayed", "active", "completed", "failed", "total"):
        table.add_row(key, str(counts.get(key, 0)))
    console.print(table)


@main.command("jobs")
@click.option("--status", "-s", type=click.Choice(["waiting", "active", "completed", "failed"]), default=None)
@click.option("--limit", "-n", type=int, default=20, help="Maximum jobs to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def jobs(config: WorkerConfig, status: str | None, limit: int, as_json: bool) -> None:
    """List jobs, newest first."""
    rows = run_async(_with_broker(config, lambda broker: broker.list_jobs(status, limit=limit)))
    if as_json:
        print_json(rows)
        return
    if not rows:
        console.print("[dim]No jobs found.[/dim]")
        return
    table = Table(title="Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Priority", justify="right")
    table.add_column("Last error")
    for row in rows:
        table.add_row(
            row["id"],
            row["event_type"],
            row["status"],
            f"{row['attempts_made']}/{row['max_attempts']}",
            str(row["priority"]),
            (row.get("last_error") or "")[:60],
        )
    console.print(table)


@main.command("show")
@click.argument("job_id")
@click.pass_obj
def show(config: WorkerConfig, job_id: str) -> None:
    """Show one job as JSON."""
    job = run_async(_with_broker(config, lambda broker: broker.get_job(job_id)))
    if job is None:
        print_error(f"Job {job_id} not found")
        raise SystemExit(1)
    print_json(job)


@main.command("remove")
@click.argument("job_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
def remove(config: WorkerConfig, job_id: str, yes: bool) -> None:
    """Delete a job whatever its status."""
    if not yes and not click.confirm(f"Remove job {job_id}?"):
        console.print("[dim]Aborted.[/dim]")
        return
    removed = run_async(_with_broker(config, lambda broker: broker.remove(job_id)))
    if not removed:
        print_error(f"Job {job_id} not found")
        raise SystemExit(1)
    print_success(f"Job {job_id} removed")


@main.command("retry")
@click.argument("job_id")
@click.pass_obj
def retry(config: WorkerConfig, job_id: str) -> None:
    """Put a failed job back in the queue."""
    result = run_async(_with_broker(config, lambda broker: broker.retry_failed(job_id)))
    if not result["success"]:
        print_error(result["message"])
        raise SystemExit(1)
    print_success(result["message"])


@main.command("clean")
@click.option("--status", "-s", type=click.Choice(["completed", "failed"]), default="completed")
@click.option("--older-than", type=float, default=86400.0, help="Age in seconds (default: one day).")
@click.pass_obj
def clean(config: WorkerConfig, status: str, older_than: float) -> None:
    """Delete finished jobs older than --older-than seconds."""
    removed = run_async(_with_broker(config, lambda broker: broker.clean(status, older_than)))
    print_success(f"Removed {removed} {status} jobs")


@main.command("config")
@click.pass_obj
def show_config(config: WorkerConfig) -> None:
    """Show the effective configuration and its warnings."""
    print_json(config.summary())
    for warning in config.validate():
        err_console.print(f"[yellow]Warning:[/yellow] {warning}")


if __name__ == "__main__":
    main()
