"""CLI entry point for the GitHub ingestion pipeline.

Runs pipelines once, serves the cron scheduler, manages schedules and
starts the mock GitHub API for local runs.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import click
import uvicorn
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from src.mock_servers.app import create_mock_app
from src.models.config import ConfigManager, PipelineConfig
from src.models.data_models import PipelineRunContext, ScheduleRecord
from src.pipeline.bootstrap import IngestionRuntime
from src.pipeline.output import JSONOutputFormatter
from src.scheduler.service import SchedulerService
from src.storage.repositories import PipelineHistoryRepository, ScheduleRepository

VERSION = "1.0.0"

console = Console()


def _load_config(ctx: click.Context, overrides: Optional[Dict[str, Any]] = None) -> PipelineConfig:
    cli_overrides = dict(ctx.obj["overrides"])
    cli_overrides.update(overrides or {})
    return ConfigManager(ctx.obj["config_path"]).load_config(cli_overrides)


def _invoke(ctx: click.Context, action: Callable[[], Any]) -> Any:
    """Run a command body with the CLI's exit-code conventions."""
    try:
        return action()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)  # Standard exit code for SIGINT
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}", style="bold red")
        if ctx.obj.get("debug"):
            console.print_exception()
        sys.exit(1)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default="config/config.yaml",
    show_default=True,
    help="Path to configuration YAML file",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides config)",
)
@click.option(
    "--database-url",
    help="SQLAlchemy async database URL (overrides config)",
)
@click.option("--debug", is_flag=True, help="Print tracebacks on error")
@click.version_option(version=VERSION, prog_name="github-ingest")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path,
    log_level: Optional[str],
    database_url: Optional[str],
    debug: bool,
) -> None:
    """
    GitHub Ingest - resilient, scheduled ingestion of GitHub data.

    Examples:

        # Sync the configured repositories once
        $ github-ingest run github_sync

        # Sync a specific repository
        $ github-ingest run github_sync --repo octocat/hello-world

        # Enrich stored entities every five minutes
        $ github-ingest schedules add --name enrich --pipeline-type data_enrichment --cron "*/5 * * * *"

        # Run the scheduler in the foreground
        $ github-ingest serve
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["debug"] = debug
    ctx.obj["overrides"] = {
        "log_level": log_level.upper() if log_level else None,
        "database_url": database_url,
    }


# Pipelines


@main.command()
@click.argument("pipeline_type")
@click.option("--repo", "-r", "repos", multiple=True, help="Repository as owner/repo (repeatable)")
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Output JSON file path (overrides config)",
)
@click.option("--quiet", "-q", is_flag=True, help="Print a one-line summary only")
@click.pass_context
def run(ctx: click.Context, pipeline_type: str, repos: Tuple[str, ...], output: Optional[Path], quiet: bool) -> None:
    """Run PIPELINE_TYPE once and save a JSON run summary."""

    def action() -> None:
        config = _load_config(ctx, {"repositories": list(repos) if repos else None})
        context, client_stats = asyncio.run(_run_pipeline(config, pipeline_type))

        output_path = output or config.output_path
        JSONOutputFormatter().save(context, str(output_path), client_stats)
        _display_run(context, output_path, quiet)

        sys.exit(0 if not context.errors else 1)

    _invoke(ctx, action)


async def _run_pipeline(config: PipelineConfig, pipeline_type: str) -> Tuple[PipelineRunContext, Dict[str, Any]]:
    async with IngestionRuntime(config) as runtime:
        context = await runtime.runner.run(pipeline_type)
        return context, runtime.client.stats()


@main.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Load schedules from the database and run them until interrupted."""

    def action() -> None:
        config = _load_config(ctx)
        asyncio.run(_serve(config))

    _invoke(ctx, action)


async def _serve(config: PipelineConfig) -> None:
    async with IngestionRuntime(config) as runtime:
        service = _build_scheduler(runtime)
        count = await service.initialize_from_database(recover_stale=True)
        service.start()
        console.print(f"[cyan]Scheduler running with {count} active schedule(s). Press Ctrl+C to stop.[/cyan]")
        try:
            while True:
                await asyncio.sleep(config.schedule_refresh_sec)
                try:
                    await service.refresh_from_database()
                except SQLAlchemyError as exc:
                    runtime.logger.error("schedule_refresh_failed", error=str(exc))
        finally:
            service.shutdown()


# Schedules


def _build_scheduler(runtime: IngestionRuntime) -> SchedulerService:
    return SchedulerService(
        runtime.runner,
        runtime.registry,
        ScheduleRepository(runtime.database),
        history=PipelineHistoryRepository(runtime.database),
        logger=runtime.logger,
    )


def _with_scheduler(ctx: click.Context, body: Callable[[SchedulerService], Awaitable[Any]]) -> Any:
    config = _load_config(ctx)

    async def runner() -> Any:
        async with IngestionRuntime(config) as runtime:
            service = _build_scheduler(runtime)
            await service.initialize_from_database()
            return await body(service)

    return asyncio.run(runner())


@main.group()
def schedules() -> None:
    """Manage persisted pipeline schedules.

    A running `serve` picks up changes within schedule_refresh_sec seconds.
    """


@schedules.command("list")
@click.option("--pipeline-type", "-p", help="Only show schedules for this pipeline type")
@click.pass_context
def list_schedules(ctx: click.Context, pipeline_type: Optional[str]) -> None:
    """List schedules."""

    async def body(service: SchedulerService) -> List[ScheduleRecord]:
        return service.get_schedules(pipeline_type)

    _invoke(ctx, lambda: _display_schedules(_with_scheduler(ctx, body)))


@schedules.command("add")
@click.option("--name", "-n", required=True, help="Schedule name")
@click.option("--pipeline-type", "-p", required=True, help="Registered pipeline type")
@click.option("--cron", "cron_expression", required=True, help="Five-field cron expression")
@click.option("--time-zone", "-z", default="UTC", show_default=True, help="IANA time zone")
@click.option("--description", "-d", help="Free-form description")
@click.pass_context
def add_schedule(
    ctx: click.Context,
    name: str,
    pipeline_type: str,
    cron_expression: str,
    time_zone: str,
    description: Optional[str],
) -> None:
    """Create a schedule."""

    async def body(service: SchedulerService) -> ScheduleRecord:
        return await service.schedule_job(
            name=name,
            pipeline_type=pipeline_type,
            cron_expression=cron_expression,
            time_zone=time_zone,
            description=description,
        )

    def action() -> None:
        record = _with_scheduler(ctx, body)
        console.print(f"[green]✓[/green] Created schedule {record.id} (next run {record.next_run_at})")

    _invoke(ctx, action)


@schedules.command("update")
@click.argument("schedule_id")
@click.option("--name", "-n", help="New name")
@click.option("--cron", "cron_expression", help="New cron expression")
@click.option("--time-zone", "-z", help="New IANA time zone")
@click.option("--active/--inactive", default=None, help="Enable or disable the schedule")
@click.pass_context
def update_schedule(
    ctx: click.Context,
    schedule_id: str,
    name: Optional[str],
    cron_expression: Optional[str],
    time_zone: Optional[str],
    active: Optional[bool],
) -> None:
    """Update fields of a schedule."""
    patch = {
        "name": name,
        "cron_expression": cron_expression,
        "time_zone": time_zone,
        "is_active": active,
    }
    patch = {k: v for k, v in patch.items() if v is not None}

    async def body(service: SchedulerService) -> ScheduleRecord:
        return await service.update_schedule(schedule_id, **patch)

    def action() -> None:
        record = _with_scheduler(ctx, body)
        console.print(f"[green]✓[/green] Updated schedule {record.id}")

    _invoke(ctx, action)


@schedules.command("trigger")
@click.argument("schedule_id")
@click.pass_context
def trigger_schedule(ctx: click.Context, schedule_id: str) -> None:
    """Run a schedule's pipeline now."""

    async def body(service: SchedulerService) -> Optional[PipelineRunContext]:
        return await service.trigger_job(schedule_id)

    def action() -> None:
        context = _with_scheduler(ctx, body)
        if context is None:
            console.print("[yellow]Run skipped or failed; see logs[/yellow]")
            sys.exit(1)
        _display_run(context, None, quiet=False)

    _invoke(ctx, action)


@schedules.command("delete")
@click.argument("schedule_id")
@click.pass_context
def delete_schedule(ctx: click.Context, schedule_id: str) -> None:
    """Delete a schedule."""

    async def body(service: SchedulerService) -> bool:
        return await service.delete_schedule(schedule_id)

    def action() -> None:
        if not _with_scheduler(ctx, body):
            console.print(f"[yellow]Schedule not found:[/yellow] {schedule_id}")
            sys.exit(1)
        console.print(f"[green]✓[/green] Deleted schedule {schedule_id}")

    _invoke(ctx, action)


@schedules.command("seed")
@click.pass_context
def seed_schedules(ctx: click.Context) -> None:
    """Create or update the schedules declared in the config file."""

    async def body(service: SchedulerService) -> int:
        seeds = _load_config(ctx).schedules
        for seed in seeds:
            existing = service.get_schedules(seed.pipeline_type)
            if existing:
                await service.update_schedule(
                    existing[0].id,
                    name=seed.name,
                    cron_expression=seed.cron_expression,
                    time_zone=seed.time_zone,
                    is_active=True,
                )
            else:
                await service.schedule_job(**seed.model_dump())
        return len(seeds)

    def action() -> None:
        count = _with_scheduler(ctx, body)
        console.print(f"[green]✓[/green] Seeded {count} schedule(s)")

    _invoke(ctx, action)


# Mock server


@main.command("mock-server")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8001, show_default=True, type=int)
@click.option("--error-rate", default=0.0, show_default=True, type=float, help="Probability of a 5xx response")
@click.option("--seed", default=42, show_default=True, type=int, help="Random seed")
@click.pass_context
def mock_server(ctx: click.Context, host: str, port: int, error_rate: float, seed: int) -> None:
    """Serve the mock GitHub API with uvicorn."""
    app = create_mock_app(name="mock-github", random_seed=seed, error_rate=error_rate)
    _invoke(ctx, lambda: uvicorn.run(app, host=host, port=port, log_level="info"))


# Display


def _display_run(context: PipelineRunContext, output_path: Optional[Path], quiet: bool) -> None:
    summary = context.summary()
    if quiet:
        mark = "✓" if summary["success"] else "✗"
        console.print(f"{mark} {summary['pipeline_type']} {summary['run_id']}: "
                      f"{context.items_processed} items, {len(context.errors)} errors")
        if output_path:
            console.print(f"✓ Output saved to: {output_path}")
        return

    title = "[bold green]Run Complete[/bold green]" if summary["success"] else "[bold yellow]Run Completed With Errors[/bold yellow]"
    console.print(f"\n{title}\n")

    stats_table = Table(title=f"{summary['pipeline_type']} ({summary['run_id']})", show_header=False)
    stats_table.add_column("Metric", style="cyan")
    stats_table.add_column("Value", style="green", justify="right")
    for key, value in sorted(summary["stats"].items()):
        stats_table.add_row(key, str(value))
    if summary["duration_seconds"] is not None:
        stats_table.add_row("duration", f"{summary['duration_seconds']:.2f}s")
    console.print(stats_table)

    if context.errors:
        error_table = Table(title="Stage Errors")
        error_table.add_column("Stage", style="cyan")
        error_table.add_column("Type", style="magenta")
        error_table.add_column("Message", style="red")
        for error in context.errors:
            error_table.add_row(error.stage, error.error_type, error.message)
        console.print(error_table)

    if output_path:
        console.print(f"\n[bold]Output saved to:[/bold] {output_path}\n")


def _display_schedules(records: List[ScheduleRecord]) -> None:
    if not records:
        console.print("[yellow]No schedules[/yellow]")
        return

    table = Table(title="Schedules")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Pipeline", style="magenta")
    table.add_column("Cron")
    table.add_column("TZ")
    table.add_column("Active", justify="center")
    table.add_column("Last Run")
    table.add_column("Next Run")
    for record in records:
        table.add_row(
            record.id,
            record.name,
            record.pipeline_type,
            record.cron_expression,
            record.time_zone,
            "✓" if record.is_active else "-",
            record.last_run_at.isoformat() if record.last_run_at else "-",
            record.next_run_at.isoformat() if record.next_run_at else "-",
        )
    console.print(table)


if __name__ == "__main__":
    main()
