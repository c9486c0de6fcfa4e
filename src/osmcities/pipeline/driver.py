"""
Pipeline driver: one replication day per step, looped until caught up.

Step order:
    ensure snapshot -> load/init cursor -> up-to-date check -> next day ->
    fetch diff -> apply (staged) -> [time filter -> split x3 -> datasets ->
    stats -> commit] -> swap snapshot -> save cursor -> [upload]

The snapshot swap and the cursor write happen only after every other stage of
the day succeeded, so a failed day leaves both exactly as they were loaded.
A day already present in the stats file is not extracted or committed twice.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import requests

from ..cleanup import RunWorkspace
from ..config.regions import RegionRegistry
from ..config.settings import Config, PipelineLogger
from ..config_loader import preset_filter_expressions
from ..domain.enums import RunOutcome
from ..domain.models import Context, Dataset, RunOptions
from ..osmium import OsmiumTool
from ..replication.clock import SequenceClock
from ..replication.cursor import CursorStore
from ..replication.fetch import DiffFetcher
from ..replication.update import SnapshotUpdater
from ..storage import ObjectStorage
from ..types import ChangesetNotAvailable, PipelineError, SnapshotMissingError
from ..utils import format_duration
from . import stats as stages
from .commit import SnapshotCommitter
from .extract import DatasetExtractor, reset_output_tree
from .split import RegionSplitter
from .stats import StatsRecorder

logger = logging.getLogger(__name__)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def end_of_day(day: date) -> str:
    """Timestamp the daily snapshot is cut at."""
    return f"{day.isoformat()}T23:59:59Z"


@dataclass
class RunReport:
    """Summary of one driver run."""
    outcome: Optional[RunOutcome] = None
    days_applied: list[date] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    stopped_at: Optional[date] = None
    suspected_gap: bool = False
    duration_s: float = 0.0

    @property
    def last_day(self) -> Optional[date]:
        return self.days_applied[-1] if self.days_applied else None


class PipelineDriver:
    """Orchestrates replication and, optionally, extraction for one context."""

    def __init__(
        self,
        config: Config,
        options: RunOptions,
        context: Optional[Context] = None,
        datasets: Optional[list[Dataset]] = None,
        osmium: Optional[OsmiumTool] = None,
        session: Optional[requests.Session] = None,
        storage: Optional[ObjectStorage] = None,
        workspace: Optional[RunWorkspace] = None,
        today: Callable[[], date] = utc_today,
    ):
        if options.extract and context is None:
            raise PipelineError("Dataset extraction requires a context")
        if (options.extract or options.prefilter) and not datasets:
            raise PipelineError("Dataset extraction and pre-filtering require at least one dataset")
        if options.push and (context is None or not context.git_remote_url):
            raise PipelineError("Push requested but the context has no git_remote_url")

        self.config = config
        self.options = options
        self.context = context
        self.datasets = datasets or []
        self.today = today
        self.plog = PipelineLogger(logger)

        self.osmium = osmium or OsmiumTool(config.processing.osmium_bin)
        self.workspace = workspace or RunWorkspace.create(config.paths.temp_dir)
        self._owns_workspace = workspace is None

        self.history_file = config.paths.history_file
        self.clock = SequenceClock(config.replication.epoch)
        self.cursor_store = CursorStore(config.paths.cursor_file, self.osmium)
        self.fetcher = DiffFetcher(
            config.replication.base_url,
            self.clock,
            self.workspace.history_dir,
            session=session,
            timeout_s=config.replication.timeout_s,
            max_retries=config.replication.max_retries,
        )
        self.updater = SnapshotUpdater(
            self.osmium,
            prefilter=preset_filter_expressions(self.datasets) if options.prefilter else None,
        )

        self.storage = storage
        if options.use_s3 and self.storage is None:
            self.storage = ObjectStorage(config.storage)

        if options.extract:
            processing = config.processing
            registry = RegionRegistry(context)
            self.splitter = RegionSplitter(
                self.osmium, registry, self.workspace, processing.max_workers, processing.failure_policy
            )
            self.extractor = DatasetExtractor(
                self.osmium, registry, self.workspace, self.datasets, context.output_dir,
                processing.max_workers, processing.failure_policy,
            )
            self.stats = StatsRecorder(context.output_dir)
            self.committer = SnapshotCommitter(context.output_dir, config.git)

    def run(self) -> RunReport:
        """
        Run steps until up to date, the next diff is unavailable, or (when not
        recursive) after a single day.

        Raises:
            PipelineError: On any fatal failure; the cursor stays at the last
                           fully processed day
        """
        report = RunReport()
        start = time.time()

        try:
            if self.options.use_s3:
                self.plog.phase("OBJECT STORAGE DOWNLOAD")
                self.storage.download_snapshot(self.history_file, self.config.paths.cursor_file)

            while True:
                outcome = self.step(report)
                report.outcome = outcome
                if outcome != RunOutcome.DONE or not self.options.recursive:
                    break
                if self.options.max_days and len(report.days_applied) >= self.options.max_days:
                    logger.info(f"Stopping after {len(report.days_applied)} days (--max-days)")
                    break
        finally:
            report.duration_s = time.time() - start
            if self._owns_workspace:
                self.workspace.remove()

        return report

    def step(self, report: Optional[RunReport] = None) -> RunOutcome:
        """Advance the snapshot by at most one day."""
        report = report if report is not None else RunReport()

        if not self.history_file.exists():
            raise SnapshotMissingError(self.history_file)

        cursor = self.cursor_store.load_or_init(self.history_file)
        last_applied = cursor.last_applied
        today = self.today()

        if self.clock.is_up_to_date(last_applied, today):
            logger.info(f"History file is updated (last day {last_applied.isoformat()}).")
            return RunOutcome.UP_TO_DATE

        if last_applied < self.clock.epoch - timedelta(days=1):
            logger.info(
                f"History file is older than {self.clock.epoch.isoformat()}, "
                "applying the first daily diff available."
            )

        day = self.clock.replication_day(last_applied)
        step_start = time.time()
        self.plog.info("")
        self.plog.phase(f"DAY {day.isoformat()}")

        try:
            changeset = self.fetcher.fetch_day(day)
        except ChangesetNotAvailable as e:
            self._report_unavailable(e, today, report)
            return RunOutcome.NOT_AVAILABLE

        staged = self.updater.prepare(self.history_file, changeset)
        try:
            if self.options.extract:
                commit_hash = self.process_day(day, staged)
                if commit_hash:
                    report.commits.append(commit_hash)
            self.updater.swap(staged, self.history_file, changeset)
        except BaseException:
            self.updater.discard(staged)
            if self.options.extract:
                self._log_failure_timings(day)
            raise

        self.cursor_store.refresh_from_snapshot(self.history_file, last_applied_day=day)
        if self.storage is not None:
            self.storage.upload_snapshot(self.history_file, self.config.paths.cursor_file)

        report.days_applied.append(day)
        self.plog.info(f"Day {day.isoformat()} completed in {format_duration(time.time() - step_start)}")
        return RunOutcome.DONE

    def _report_unavailable(self, error: ChangesetNotAvailable, today: date, report: RunReport) -> None:
        report.stopped_at = error.day
        age_days = (today - error.day).days
        if age_days > self.config.replication.gap_grace_days:
            report.suspected_gap = True
            logger.warning(
                f"Changefile {error.sequence} for {error.day.isoformat()} is {age_days} days old "
                f"and still not available; the replication history may have a gap ({error.url})"
            )
        else:
            logger.info(f"Changefile {error.sequence} is not available yet, nothing to do.")

    def _log_failure_timings(self, day: date) -> None:
        logger.error(f"Day {day.isoformat()} failed; snapshot and cursor left unchanged")
        for stage, seconds in self.stats.timings.durations.items():
            logger.error(f"  {stage}: {format_duration(seconds)}")

    def process_day(self, day: date, snapshot: Path) -> Optional[str]:
        """
        Extract and commit the state of a day.

        Returns:
            Commit hash, or None if the day was already processed
        """
        last_processed = self.stats.last_processed_day()
        if last_processed is not None and last_processed >= day:
            logger.info(f"Day {day.isoformat()} already processed, skipping extraction")
            # A previous run may have committed but failed to push
            if self.options.push:
                self.committer.push(self.context.git_remote_url)
            return None

        self.stats.start_day()
        current_day_file = self.workspace.current_day_file
        current_day_file.parent.mkdir(parents=True, exist_ok=True)

        self.plog.phase("PHASE 1: FILTERING")
        with self.stats.stage(stages.FILTERING):
            self.osmium.time_filter(snapshot, end_of_day(day), current_day_file)

        reset_output_tree(self.context.output_dir, keep=[self.stats.stats_file.name])

        if self.osmium.is_empty(current_day_file):
            logger.info(f"No data found for {day.isoformat()}, skipping region split")
        else:
            self.plog.phase("PHASE 2: REGION SPLIT")
            self.splitter.split(
                current_day_file,
                timed=lambda level: self.stats.stage(stages.SPLIT_STAGES[level]),
            )

            self.plog.phase("PHASE 3: DATASETS")
            with self.stats.stage(stages.DATASETS):
                self.extractor.extract_all()

        self.plog.phase("PHASE 4: STATS AND COMMIT")
        self.stats.record(day)
        try:
            commit_hash = self.committer.commit_day(day)
        except BaseException:
            # The stats file is the processed-day marker
            self.stats.discard(day)
            raise
        if self.options.push:
            self.committer.push(self.context.git_remote_url)
        return commit_hash
