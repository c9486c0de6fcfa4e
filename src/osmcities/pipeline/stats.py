"""
Per-day pipeline statistics.

Stats are a JSON array of records stored inside the output tree (committed with
the data), newest last. The latest record is also the durable marker of the
last fully processed day.
"""

import json
import logging
import math
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..domain.enums import RegionLevel
from ..domain.models import StatsRecord
from ..types import PipelineError, StageTimings
from ..utils import directory_size_bytes, format_duration, write_json_atomic

logger = logging.getLogger(__name__)

STATS_FILE_NAME = "git-stats.json"

# Stage names, mapped to StatsRecord duration fields
FILTERING = "filtering"
SPLIT_STATES = "split_states"
SPLIT_MICROREGIONS = "split_microregions"
SPLIT_MUNICIPALITIES = "split_municipalities"
DATASETS = "datasets"

STAGE_FIELDS = {
    FILTERING: "filtering_duration_ms",
    SPLIT_STATES: "split_states_duration_ms",
    SPLIT_MICROREGIONS: "split_microregions_duration_ms",
    SPLIT_MUNICIPALITIES: "split_municipalities_duration_ms",
    DATASETS: "datasets_duration_ms",
}

SPLIT_STAGES = {
    RegionLevel.STATE: SPLIT_STATES,
    RegionLevel.MICROREGION: SPLIT_MICROREGIONS,
    RegionLevel.MUNICIPALITY: SPLIT_MUNICIPALITIES,
}


class StatsRecorder:
    """Times pipeline stages and appends one StatsRecord per processed day."""

    def __init__(self, output_dir: Path, stats_file: Optional[Path] = None):
        self.output_dir = output_dir
        self.stats_file = stats_file or output_dir / STATS_FILE_NAME
        self.timings = StageTimings()
        self._started = time.time()

    def start_day(self) -> None:
        """Reset timings for a new day."""
        self.timings = StageTimings()
        self._started = time.time()

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Accumulate wall-clock time of the wrapped block under a stage name."""
        start = time.time()
        try:
            yield
        finally:
            elapsed = time.time() - start
            self.timings.add(name, elapsed)
            logger.info(f"{name.replace('_', ' ').capitalize()} took {format_duration(elapsed)}")

    def load(self) -> list[StatsRecord]:
        """
        Read all records.

        Raises:
            PipelineError: If the stats file exists but cannot be parsed
        """
        if not self.stats_file.exists():
            return []

        try:
            with open(self.stats_file, encoding='utf-8') as f:
                raw = json.load(f)
            # Older files hold only the latest record
            if isinstance(raw, dict):
                raw = [raw]
            return [StatsRecord.model_validate(item) for item in raw]
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            raise PipelineError(f"Corrupt stats file {self.stats_file}: {e}") from e

    def last_processed_day(self) -> Optional[date]:
        records = self.load()
        return max(record.updated_at for record in records) if records else None

    def record(self, day: date) -> StatsRecord:
        """
        Append the record for a day, replacing any earlier record of that day.

        Output size is measured after all stages ran, like ``du -sk``.
        """
        record = StatsRecord(
            updated_at=day,
            output_size_kb=math.ceil(directory_size_bytes(self.output_dir) / 1024),
            task_duration_ms=int((time.time() - self._started) * 1000),
            **{
                field: int(self.timings.get(stage) * 1000)
                for stage, field in STAGE_FIELDS.items()
            },
        )

        records = [r for r in self.load() if r.updated_at != day]
        records.append(record)
        records.sort(key=lambda r: r.updated_at)
        write_json_atomic(
            self.stats_file,
            [r.model_dump(mode="json", by_alias=True) for r in records],
        )
        logger.info(f"Stats recorded for {day.isoformat()}: {record.output_size_kb} KB")
        return record

    def discard(self, day: date) -> None:
        """Remove the record of a day whose commit did not go through."""
        records = self.load()
        remaining = [r for r in records if r.updated_at != day]
        if len(remaining) == len(records):
            return
        write_json_atomic(
            self.stats_file,
            [r.model_dump(mode="json", by_alias=True) for r in remaining],
        )
        logger.info(f"Stats record for {day.isoformat()} discarded")
