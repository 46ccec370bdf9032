"""
Command line interface for running workflows.

Usage:
    ci run WORKFLOW --event push --branch main
    ci validate WORKFLOW
    ci history
    ci show RUN_ID
    ci cleanup

Exit codes: 0 when the pipeline succeeded or the event did not match the
trigger, 1 when the pipeline failed or was cancelled, 2 for an invalid
workflow, 130 when interrupted.
"""

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import click

from ci_common.errors import CIError, InvalidSpec
from ci_common.models import EVENT_KINDS, Event, NoMatch, PipelineRun
from ci_controller.config import ENVIRONMENT_KINDS, RunnerConfig
from ci_controller.container_manager import DockerEnvironment
from ci_controller.environment import ExecutionEnvironment, LocalEnvironment
from ci_controller.orchestrator import PipelineOrchestrator
from ci_controller.workflow import load_workflow
from ci_persistence.sqlite_repository import SQLitePipelineRunRepository

STATUS_SYMBOLS = {
    "succeeded": "✓",
    "failed": "✗",
    "errored": "!",
    "cancelled": "-",
    "skipped": "·",
}

# Characters of failing step output shown in the text report
OUTPUT_TAIL = 2000


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def build_environment(config: RunnerConfig) -> ExecutionEnvironment:
    if config.environment == "docker":
        return DockerEnvironment(
            images=config.runner_images,
            container_name_prefix=config.container_prefix,
        )
    return LocalEnvironment()


@click.group()
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help="Logging level (default: WARNING)",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str):
    """CI - Run workflow pipelines for repository events."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.obj = RunnerConfig.from_env()


@cli.command("run")
@click.argument("workflow", type=click.Path(dir_okay=False))
@click.option(
    "--event",
    "event_kind",
    type=click.Choice(list(EVENT_KINDS)),
    default="push",
    help="Event kind (default: push)",
)
@click.option("--branch", required=True, help="Branch pushed to, or targeted by the pull request")
@click.option("--sha", default=None, help="Commit to check out")
@click.option(
    "--repository",
    default=None,
    help="Repository path or URL to check out (default: current directory)",
)
@click.option(
    "--environment",
    type=click.Choice(list(ENVIRONMENT_KINDS)),
    default=None,
    help="Execution environment (default: CI_ENVIRONMENT env or local)",
)
@click.option("--db-path", default=None, help="Archive database (default: CI_DB_PATH env)")
@click.option(
    "--timeout-minutes",
    type=float,
    default=None,
    help="Job budget when the workflow declares none (default: CI_JOB_TIMEOUT_MINUTES env)",
)
@click.option("--json", "json_output", is_flag=True, help="Output the report as JSON")
@click.option("--stream", is_flag=True, help="Stream step output while jobs run")
@click.pass_obj
def run_command(
    config: RunnerConfig,
    workflow: str,
    event_kind: str,
    branch: str,
    sha: str | None,
    repository: str | None,
    environment: str | None,
    db_path: str | None,
    timeout_minutes: float | None,
    json_output: bool,
    stream: bool,
):
    """Run WORKFLOW for an event."""
    if environment:
        config.environment = environment
    if db_path:
        config.db_path = db_path
    if timeout_minutes is not None:
        config.job_timeout_minutes = timeout_minutes

    try:
        spec = load_workflow(workflow)
        event = Event(
            kind=event_kind,
            branch=branch,
            sha=sha,
            repository=repository or str(Path.cwd()),
        )
    except CIError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    def on_output(job: str, step: str, line: str) -> None:
        click.echo(f"[{job}] {line}", nl=False, err=json_output)

    async def execute():
        repository_obj = None
        if config.db_path:
            repository_obj = SQLitePipelineRunRepository(config.db_path)
            await repository_obj.initialize()

        orchestrator = PipelineOrchestrator(
            spec,
            build_environment(config),
            repository=repository_obj,
            default_timeout_minutes=config.job_timeout_minutes,
            on_output=on_output if stream else None,
        )
        try:
            return await orchestrator.dispatch(event)
        finally:
            if repository_obj is not None:
                await repository_obj.close()

    try:
        result = run_async(execute())
    except KeyboardInterrupt:
        click.echo("\n\nPipeline cancelled by user.", err=True)
        sys.exit(130)

    if isinstance(result, NoMatch):
        if json_output:
            click.echo(json.dumps(result.to_dict(), indent=2))
        else:
            click.echo(f"No match: {result.reason}. Nothing to run.")
        sys.exit(0)

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        print_report(result)
    sys.exit(0 if result.succeeded else 1)


@cli.command("validate")
@click.argument("workflow", type=click.Path(dir_okay=False))
def validate_command(workflow: str):
    """Check that WORKFLOW is a valid workflow document."""
    try:
        spec = load_workflow(workflow)
    except InvalidSpec as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    click.echo(f"✓ Workflow {spec.name!r} is valid")
    for kind, patterns in spec.trigger.branches.items():
        click.echo(f"  on {kind}: {', '.join(patterns)}")
    for job in spec.jobs:
        click.echo(f"  job {job.name} ({job.runs_on}): {len(job.steps)} steps")


@cli.command("history")
@click.option("--db-path", default=None, help="Archive database (default: CI_DB_PATH env)")
@click.option("--limit", type=int, default=20, help="Number of runs to show (default: 20)")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def history_command(config: RunnerConfig, db_path: str | None, limit: int, json_output: bool):
    """List archived pipeline runs."""
    path = require_db_path(db_path or config.db_path)

    async def list_runs():
        repo = SQLitePipelineRunRepository(path)
        await repo.initialize()
        try:
            return await repo.list_runs(limit=limit)
        finally:
            await repo.close()

    runs = run_async(list_runs())

    if json_output:
        click.echo(json.dumps([r.to_summary_dict() for r in runs], indent=2))
        return

    if not runs:
        click.echo("No runs found.")
        return

    click.echo(
        f"{'RUN ID':<38} {'PIPELINE':<16} {'EVENT':<14} {'BRANCH':<20} {'STATUS':<10} {'START TIME':<20}"
    )
    click.echo("-" * 122)
    for run in runs:
        click.echo(
            f"{run.id:<38} {run.pipeline[:16]:<16} {run.event.kind:<14} "
            f"{run.event.branch[:20]:<20} {run.status:<10} {format_time(run.start_time):<20}"
        )


@cli.command("show")
@click.argument("run_id")
@click.option("--db-path", default=None, help="Archive database (default: CI_DB_PATH env)")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def show_command(config: RunnerConfig, run_id: str, db_path: str | None, json_output: bool):
    """Show the report of an archived pipeline run."""
    path = require_db_path(db_path or config.db_path)

    async def get_run():
        repo = SQLitePipelineRunRepository(path)
        await repo.initialize()
        try:
            return await repo.get_run(run_id)
        finally:
            await repo.close()

    run = run_async(get_run())
    if run is None:
        click.echo(f"Error: Run {run_id} not found", err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(run.to_dict(), indent=2))
    else:
        print_report(run)


@cli.command("cleanup")
@click.pass_obj
def cleanup_command(config: RunnerConfig):
    """Remove containers left behind by interrupted docker runs."""
    environment = DockerEnvironment(
        images=config.runner_images, container_name_prefix=config.container_prefix
    )
    try:
        removed = run_async(environment.remove_stale_containers())
    except (RuntimeError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not removed:
        click.echo("No stale containers found.")
        return
    for name in removed:
        click.echo(f"✓ Removed {name}")


def require_db_path(path: str | None) -> str:
    if not path:
        click.echo("Error: no archive database; pass --db-path or set CI_DB_PATH", err=True)
        sys.exit(2)
    return path


def print_report(run: PipelineRun) -> None:
    """Print a human-readable pipeline report."""
    event = run.event
    click.echo(
        f"Pipeline {run.pipeline!r} ({event.kind} on {event.branch}) "
        f"run {run.id}: {run.status.upper()}"
    )
    for job in run.jobs:
        symbol = STATUS_SYMBOLS.get(job.status, "?")
        click.echo(f"  {symbol} {job.name:<20} {job.status}")
        for step in job.steps:
            step_symbol = STATUS_SYMBOLS.get(step.status, "?")
            exit_code = "" if step.exit_code is None else f" (exit={step.exit_code})"
            click.echo(f"      {step_symbol} {step.name}{exit_code}")
        if job.error:
            click.echo(f"    {job.error}")
        if job.failed_step is not None:
            output = job.steps[job.failed_step].output
            if output:
                click.echo("    --- output ---")
                click.echo(output[-OUTPUT_TAIL:].rstrip("\n"))


def format_time(value: datetime | None) -> str:
    """Format a timestamp to human-readable format."""
    if value is None:
        return "N/A"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def main():
    """Main entry point for the CI CLI."""
    cli()


if __name__ == "__main__":
    main()
