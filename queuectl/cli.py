"""
queuectl command line.

Operator commands for enqueueing jobs, inspecting the queue and the
dead-letter queue, managing store-backed config, and running workers.
"""

import asyncio
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table
from sqlalchemy.ext.asyncio import AsyncSession

from queuectl import __version__
from queuectl.config import get_settings
from queuectl.constants import CONFIG_DEFAULTS, JobState
from queuectl.db import close_db, get_session_context, init_db
from queuectl.db.repository import ConfigRepository, JobRepository
from queuectl.errors import QueueError
from queuectl.observability.logging import setup_logging
from queuectl.types.job import parse_job_spec
from queuectl.worker.pidfile import read_pid, stop_daemon

T = TypeVar("T")

console = Console()


def _truncate(value: str | None, width: int = 50) -> str:
    if not value:
        return ""
    return value if len(value) <= width else value[: width - 3] + "..."


def _format_time(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else ""


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    sys.exit(1)


def run_in_session(operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """
    Run one store operation in its own transaction and event loop.

    Args:
        operation: Coroutine function taking a session.

    Returns:
        Whatever the operation returns.
    """

    async def runner() -> T:
        await init_db()
        try:
            async with get_session_context() as session:
                return await operation(session)
        finally:
            await close_db()

    return asyncio.run(runner())


@click.group()
@click.version_option(__version__, prog_name="queuectl")
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    help="Log level for commands other than 'worker start'.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str):
    """queuectl - a PostgreSQL-backed background job queue"""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    setup_logging(level=log_level)


@cli.command()
@click.argument("job_json")
def enqueue(job_json: str):
    """Add a job: queuectl enqueue '{"id":"job1","command":"sleep 2"}'"""
    try:
        spec = parse_job_spec(job_json)
        job_id = run_in_session(
            lambda session: JobRepository(session).enqueue(
                command=spec.command,
                job_id=spec.id,
                max_retries=spec.max_retries,
                next_run_at=spec.next_run_at,
            )
        )
    except QueueError as e:
        _fail(f"Failed to enqueue job: {e}")
        return

    console.print(f"[green]Enqueued job {job_id}[/green]")


@cli.command("list")
@click.option(
    "--state",
    type=click.Choice([s.value for s in JobState]),
    default=JobState.PENDING.value,
    show_default=True,
    help="Job state to list.",
)
def list_jobs(state: str):
    """List jobs by state."""
    try:
        jobs = run_in_session(lambda session: JobRepository(session).list_by_state(JobState(state)))
    except QueueError as e:
        _fail(f"Error listing jobs: {e}")
        return

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs in {state} state")
    table.add_column("ID", style="cyan")
    table.add_column("Command", style="magenta")
    table.add_column("Attempts", style="yellow")
    table.add_column("Next run", style="blue")
    table.add_column("Locked by")
    table.add_column("Last error", style="red")

    for job in jobs:
        table.add_row(
            job.id,
            _truncate(job.command),
            f"{job.attempts}/{job.max_retries}",
            _format_time(job.next_run_at),
            job.locked_by or "",
            _truncate(job.last_error),
        )

    console.print(table)


@cli.command()
def status():
    """Show job counts per state, stuck jobs and the worker daemon marker."""
    settings = get_settings()

    async def collect(session: AsyncSession):
        repo = JobRepository(session)
        return await repo.summary(), await repo.list_stuck(settings.stuck_job_threshold_seconds)

    try:
        counts, stuck = run_in_session(collect)
    except QueueError as e:
        _fail(f"Error fetching status: {e}")
        return

    table = Table(title="Queue Status")
    table.add_column("State", style="cyan")
    table.add_column("Count", style="magenta", justify="right")
    for state, count in counts.items():
        table.add_row(state, str(count))
    table.add_row("total", str(sum(counts.values())), style="bold")
    console.print(table)

    if stuck:
        console.print(
            f"[yellow]{len(stuck)} job(s) processing for more than "
            f"{settings.stuck_job_threshold_seconds}s (worker may have crashed):[/yellow]"
        )
        for job in stuck:
            console.print(f"  {job.id} locked by {job.locked_by} at {_format_time(job.locked_at)}")

    pid = read_pid(settings.worker_pid_file)
    if pid is not None:
        console.print(f"Worker daemon PID: [green]{pid}[/green] ({settings.worker_pid_file})")
    else:
        console.print("No worker PID file found (workers may be running in the foreground)")


@cli.group()
def dlq():
    """Manage the dead-letter queue."""
    pass


@dlq.command("list")
def dlq_list():
    """List jobs in the dead-letter queue."""
    try:
        entries = run_in_session(lambda session: JobRepository(session).list_dlq())
    except QueueError as e:
        _fail(f"Error listing DLQ: {e}")
        return

    if not entries:
        console.print("[yellow]DLQ empty[/yellow]")
        return

    table = Table(title="Dead Letter Queue")
    table.add_column("ID", style="cyan")
    table.add_column("Command", style="magenta")
    table.add_column("Attempts", style="yellow")
    table.add_column("Moved at", style="blue")
    table.add_column("Last error", style="red")

    for entry in entries:
        table.add_row(
            entry.id,
            _truncate(entry.command),
            f"{entry.attempts}/{entry.max_retries}",
            _format_time(entry.moved_at),
            _truncate(entry.last_error),
        )

    console.print(table)


@dlq.command("retry")
@click.argument("job_id")
def dlq_retry(job_id: str):
    """Move a job from the dead-letter queue back to pending."""
    try:
        job = run_in_session(lambda session: JobRepository(session).retry_dlq_job(job_id))
    except QueueError as e:
        _fail(f"Error retrying DLQ job: {e}")
        return

    console.print(f"[green]Job {job.id} retried from DLQ (attempts so far: {job.attempts})[/green]")


@cli.group()
def worker():
    """Start or stop worker pools."""
    pass


@worker.command("start")
@click.option("--count", default=None, type=click.IntRange(min=1), help="Number of concurrent workers.")
@click.option("--daemon", is_flag=True, default=False, help="Write a PID file so 'worker stop' can reach this pool.")
def worker_start(count: int | None, daemon: bool):
    """Run a worker pool in the foreground until SIGINT/SIGTERM."""
    from queuectl.worker.main import run_async

    settings = get_settings()
    count = count or settings.worker_count
    console.print(f"Starting {count} worker(s){' as daemon' if daemon else ''}...")

    try:
        asyncio.run(run_async(count=count, daemon=daemon))
    except QueueError as e:
        _fail(f"Worker pool failed: {e}")
        return


@worker.command("stop")
@click.option("--pid-file", default=None, help="Daemon marker to read. Defaults to the configured path.")
def worker_stop(pid_file: str | None):
    """Gracefully stop a daemonized worker pool."""
    pid_file = pid_file or get_settings().worker_pid_file
    try:
        pid = stop_daemon(pid_file)
    except FileNotFoundError:
        _fail(f"PID file not found at {pid_file}. Is a worker daemon running?")
        return
    except ProcessLookupError:
        _fail(f"No process matches the PID in {pid_file}; remove the stale file.")
        return

    console.print(f"[green]Sent SIGTERM to PID {pid}[/green]")


@cli.group()
def config():
    """Read and write store-backed config (backoff_base, max_retries)."""
    pass


@config.command("get")
@click.argument("key", required=False)
def config_get(key: str | None):
    """Show one config value, or all of them."""
    settings = get_settings()
    fallbacks = {
        "backoff_base": settings.backoff_base,
        "max_retries": settings.default_max_retries,
    }

    try:
        stored = run_in_session(lambda session: ConfigRepository(session).all())
    except QueueError as e:
        _fail(f"Error getting config: {e}")
        return

    keys = [key] if key else sorted(CONFIG_DEFAULTS)
    for name in keys:
        if name in stored:
            console.print(f"{name} = {stored[name]}")
        elif name in fallbacks:
            console.print(f"{name} = {fallbacks[name]} [dim](default)[/dim]")
        else:
            console.print(f"{name} = [dim]unset[/dim]")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a config value."""
    try:
        run_in_session(lambda session: ConfigRepository(session).set(key, value))
    except QueueError as e:
        _fail(f"Error setting config: {e}")
        return

    console.print(f"[green]Config {key} set to {value}[/green]")


@cli.command()
@click.option("--host", default=None, help="Bind address.")
@click.option("--port", default=None, type=int, help="Bind port.")
def api(host: str | None, port: int | None):
    """Serve the operator HTTP API."""
    from queuectl.api.main import run

    run(host=host, port=port)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
