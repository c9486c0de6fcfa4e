import logging
import time
from pathlib import Path
from typing import Annotated, Optional

import typer

from .cleanup import full_cleanup_check, register_cleanup_handlers
from .config.settings import Config, ConfigurationError, PipelineLogger
from .config_loader import list_contexts, load_context, load_datasets
from .domain.enums import RunOutcome
from .domain.models import RunOptions
from .osmium import OsmiumTool
from .pipeline.commit import SnapshotCommitter
from .pipeline.driver import PipelineDriver, RunReport, utc_today
from .pipeline.stats import StatsRecorder
from .replication.clock import SequenceClock
from .replication.cursor import CursorStore
from .types import PipelineError
from .utils import format_duration, setup_logging

app = typer.Typer(help="OSM for Cities: daily history replication -> region split -> GeoJSON datasets")

EnvFileOption = Annotated[Optional[Path], typer.Option("--env-file", help="Explicit environment file")]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")]
LogToFileOption = Annotated[bool, typer.Option("--log-to-file", help="Write a timestamped log file under logs/")]
RecursiveOption = Annotated[bool, typer.Option("--recursive", "-r", help="Keep applying days until up to date")]
PrefilterOption = Annotated[bool, typer.Option("--prefilter", help="Reduce the history file to dataset tags after each day")]
S3Option = Annotated[bool, typer.Option("--s3", help="Download the snapshot from object storage first, upload after each day")]
MaxDaysOption = Annotated[Optional[int], typer.Option("--max-days", min=1, help="Stop after this many days")]
SkipCleanupOption = Annotated[bool, typer.Option("--skip-cleanup", help="Keep stale run directories (debugging)")]


def load_config_or_exit(env_file: Optional[Path]) -> Config:
    try:
        return Config(env_file=env_file)
    except ConfigurationError as e:
        typer.echo(f"ERROR: {e}", err=True)
        raise typer.Exit(1)


def log_report(pipeline_logger: PipelineLogger, report: RunReport) -> None:
    pipeline_logger.info("")
    pipeline_logger.phase("OPERATION COMPLETE")
    pipeline_logger.info(f"Outcome: {report.outcome.value if report.outcome else 'none'}")
    pipeline_logger.info(f"Days applied: {len(report.days_applied)}")
    if report.days_applied:
        pipeline_logger.info(f"  {report.days_applied[0].isoformat()} .. {report.days_applied[-1].isoformat()}")
    if report.commits:
        pipeline_logger.info(f"Commits: {len(report.commits)}")
    if report.outcome == RunOutcome.NOT_AVAILABLE and report.stopped_at:
        pipeline_logger.info(f"Stopped at {report.stopped_at.isoformat()}: changefile not available")
    if report.suspected_gap:
        pipeline_logger.warning("Replication history may have a gap, check the changefile listed above")
    pipeline_logger.info(f"Total execution time: {format_duration(report.duration_s)}")


def run_pipeline(
    options: RunOptions,
    context_name: Optional[str],
    verbose: bool,
    log_to_file: bool,
    skip_cleanup: bool,
    env_file: Optional[Path],
) -> RunReport:
    """
    Build and run the pipeline driver with CLI error handling.

    Fatal pipeline and configuration errors exit with status 1; "up to date"
    and "changefile not available" are successful outcomes.
    """
    setup_logging(verbose, context_name or "history", "update", log_to_file)
    pipeline_logger = PipelineLogger(logging.getLogger("osmcities"))
    config = load_config_or_exit(env_file)

    temp = config.get_temp_settings()
    if not full_cleanup_check(config.paths.temp_dir, temp['retention_hours'], temp['warning_gb'],
                              temp['limit_gb'], skip_cleanup=skip_cleanup):
        logging.error("Temp directory size limit exceeded - aborting operation")
        raise typer.Exit(1)

    start_time = time.time()
    try:
        context = load_context(context_name, config) if context_name else None
        datasets = load_datasets() if (options.extract or options.prefilter) else None
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"ERROR: {e}", err=True)
        raise typer.Exit(1)

    pipeline_logger.phase("CONFIGURATION")
    for key, value in config.get_summary().items():
        pipeline_logger.info(f"  {key}: {value}")
    if context:
        pipeline_logger.info(f"  context: {context.name} ({context.country_name})")

    try:
        driver = PipelineDriver(config, options, context=context, datasets=datasets)
        register_cleanup_handlers(driver.workspace)
        report = driver.run()
    except PipelineError as e:
        logging.error(f"Pipeline failed after {format_duration(time.time() - start_time)}: {e}")
        raise typer.Exit(1)

    log_report(pipeline_logger, report)
    return report


@app.command("update-history")
def update_history(
    recursive: RecursiveOption = False,
    prefilter: PrefilterOption = False,
    s3: S3Option = False,
    max_days: MaxDaysOption = None,
    verbose: VerboseOption = False,
    log_to_file: LogToFileOption = False,
    skip_cleanup: SkipCleanupOption = False,
    env_file: EnvFileOption = None,
):
    """
    Apply daily diffs to the history file.

    Examples:
        osmcities update-history
        osmcities update-history --recursive --prefilter --s3
    """
    options = RunOptions(recursive=recursive, prefilter=prefilter, use_s3=s3, max_days=max_days)
    run_pipeline(options, None, verbose, log_to_file, skip_cleanup, env_file)


@app.command("update-context")
def update_context(
    name: Annotated[str, typer.Argument(help="Context name (see list-contexts)")],
    recursive: RecursiveOption = False,
    prefilter: PrefilterOption = False,
    s3: S3Option = False,
    push: Annotated[bool, typer.Option("--push", help="Push the output repository after each commit")] = False,
    max_days: MaxDaysOption = None,
    verbose: VerboseOption = False,
    log_to_file: LogToFileOption = False,
    skip_cleanup: SkipCleanupOption = False,
    env_file: EnvFileOption = None,
):
    """
    Apply daily diffs and publish each day's datasets for a context.

    Every day is split into states, microregions and municipalities,
    extracted into GeoJSON datasets and committed to the context's
    output repository.

    Examples:
        osmcities update-context cities-of-brazil
        osmcities update-context cities-of-brazil -r --push
    """
    options = RunOptions(
        recursive=recursive, extract=True, prefilter=prefilter, use_s3=s3, push=push, max_days=max_days
    )
    run_pipeline(options, name, verbose, log_to_file, skip_cleanup, env_file)


@app.command("refresh-cursor")
def refresh_cursor(
    verbose: VerboseOption = False,
    env_file: EnvFileOption = None,
):
    """Re-read first/last timestamps from the history file into the cursor file."""
    setup_logging(verbose)
    config = load_config_or_exit(env_file)
    history_file = config.paths.history_file

    if not history_file.exists():
        typer.echo(f"ERROR: Latest history file not found: {history_file}", err=True)
        raise typer.Exit(1)

    store = CursorStore(config.paths.cursor_file, OsmiumTool(config.processing.osmium_bin))
    try:
        cursor = store.refresh_from_snapshot(history_file)
    except PipelineError as e:
        typer.echo(f"ERROR: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"First timestamp: {cursor.elements.first_timestamp}")
    typer.echo(f"Last timestamp:  {cursor.elements.last_timestamp}")


@app.command("status")
def status(
    context_name: Annotated[Optional[str], typer.Option("--context", help="Also show output repository status")] = None,
    env_file: EnvFileOption = None,
):
    """Show replication progress and, optionally, a context's processing state."""
    config = load_config_or_exit(env_file)
    history_file = config.paths.history_file
    clock = SequenceClock(config.replication.epoch)

    typer.echo("Replication status")
    typer.echo("=" * 50)
    typer.echo(f"History file: {history_file}")
    if history_file.exists():
        typer.echo(f"  Size: {history_file.stat().st_size / (1024 ** 2):.1f} MB")
    else:
        typer.echo("  (missing)")

    store = CursorStore(config.paths.cursor_file, OsmiumTool(config.processing.osmium_bin))
    try:
        cursor = store.load()
    except PipelineError as e:
        typer.echo(f"ERROR: {e}", err=True)
        raise typer.Exit(1)

    if cursor is None:
        typer.echo("Cursor: not initialized")
    else:
        today = utc_today()
        last_applied = cursor.last_applied
        next_day = clock.replication_day(last_applied)
        typer.echo(f"Cursor last timestamp: {cursor.elements.last_timestamp}")
        typer.echo(f"Last applied day: {last_applied.isoformat()}")
        if clock.is_up_to_date(last_applied, today):
            typer.echo("Up to date")
        else:
            typer.echo(f"Next day: {next_day.isoformat()} (changefile {clock.sequence_for_day(next_day)})")
            typer.echo(f"Days behind: {clock.days_behind(last_applied, today)}")

    if context_name:
        try:
            context = load_context(context_name, config)
            last_processed = StatsRecorder(context.output_dir).last_processed_day()
        except (ValueError, PipelineError) as e:
            typer.echo(f"ERROR: {e}", err=True)
            raise typer.Exit(1)

        typer.echo(f"\nContext: {context.name} ({context.country_name})")
        typer.echo(f"Output repository: {context.output_dir}")
        typer.echo(f"Last processed day: {last_processed.isoformat() if last_processed else 'none'}")
        last_commit = SnapshotCommitter(context.output_dir, config.git).last_commit_date()
        typer.echo(f"Last commit date: {last_commit or 'none'}")


@app.command("list-contexts")
def list_contexts_command(env_file: EnvFileOption = None):
    """List available contexts."""
    config = load_config_or_exit(env_file)
    names = list_contexts(config)

    if not names:
        typer.echo(f"No contexts found in {config.paths.contexts_dir}")
        return

    typer.echo("Available contexts")
    typer.echo("=" * 50)
    for name in names:
        try:
            context = load_context(name, config)
            typer.echo(f"\n* {name}")
            typer.echo(f"   Country: {context.country_name} ({context.country_iso2})")
            typer.echo(f"   Boundaries: {context.boundaries_dir}")
            typer.echo(f"   Output: {context.output_dir}")
        except ValueError as e:
            typer.echo(f"\n* {name} (invalid: {e})")

    typer.echo(f"\nFound {len(names)} contexts")


@app.command("list-datasets")
def list_datasets(
    datasets_file: Annotated[Optional[Path], typer.Option("--file", help="Alternative datasets YAML")] = None,
):
    """List dataset definitions and their osmium tag filters."""
    try:
        datasets = load_datasets(datasets_file)
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"ERROR: {e}", err=True)
        raise typer.Exit(1)

    typer.echo("Available datasets")
    typer.echo("=" * 50)
    for dataset in datasets:
        typer.echo(f"\n* {dataset.id}: {dataset.name}")
        for expression in dataset.filters:
            typer.echo(f"   Filter: {expression}")

    typer.echo(f"\nFound {len(datasets)} datasets")


@app.command("reset-local-git")
def reset_local_git(
    name: Annotated[str, typer.Argument(help="Context name")],
    confirm: Annotated[bool, typer.Option("--confirm", help="Confirm deletion without prompt")] = False,
    env_file: EnvFileOption = None,
):
    """Delete a context's local output repository, including its history."""
    config = load_config_or_exit(env_file)
    try:
        context = load_context(name, config)
    except ValueError as e:
        typer.echo(f"ERROR: {e}", err=True)
        raise typer.Exit(1)

    if not confirm and not typer.confirm(f"Delete {context.output_dir} and all its history?"):
        typer.echo("Operation cancelled.")
        return

    SnapshotCommitter(context.output_dir, config.git).reset()
    typer.echo(f"Removed local repository for {name}")


@app.command("version")
def version():
    """Display version information."""
    from . import __version__
    typer.echo(f"osmcities version: {__version__}")


if __name__ == "__main__":
    app()
