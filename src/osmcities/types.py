"""
Type definitions and exception hierarchy for the replication pipeline.

Fatal conditions derive from PipelineError and abort the current run without
advancing the cursor. ChangesetNotAvailable is deliberately outside that
hierarchy: it is the soft-stop raised when the next daily diff has not been
published yet.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class DailyChangeset:
    """One downloaded daily diff, identified by its 9-digit sequence number."""
    sequence: str
    day: date
    path: Path

    @property
    def size_bytes(self) -> int:
        return self.path.stat().st_size if self.path.exists() else 0


@dataclass
class StageTimings:
    """Wall-clock seconds spent in each named pipeline stage."""
    durations: dict[str, float] = field(default_factory=dict)

    def add(self, stage: str, seconds: float) -> None:
        self.durations[stage] = self.durations.get(stage, 0.0) + seconds

    def get(self, stage: str) -> float:
        return self.durations.get(stage, 0.0)


class PipelineError(Exception):
    """Base exception for fatal pipeline failures."""
    pass


class SnapshotMissingError(PipelineError):
    """The base history snapshot does not exist at run start."""
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Latest history file not found: {path}")


class ExtractionToolError(PipelineError):
    """The external extraction tool exited with a non-zero status."""
    def __init__(self, command: list[str], returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr and stderr.strip() else "no output"
        super().__init__(f"{' '.join(command)} exited with status {returncode}: {detail}")


class FanOutError(PipelineError):
    """One or more independent units of a fan-out stage failed."""
    def __init__(self, stage: str, failures: dict[str, BaseException]):
        self.stage = stage
        self.failures = failures
        names = ", ".join(sorted(failures)[:5])
        more = f" (+{len(failures) - 5} more)" if len(failures) > 5 else ""
        super().__init__(f"{stage}: {len(failures)} unit(s) failed: {names}{more}")


class ReplicationError(PipelineError):
    """Fetching a daily diff failed for a reason other than not-found."""
    def __init__(self, sequence: str, message: str, status_code: Optional[int] = None):
        self.sequence = sequence
        self.status_code = status_code
        super().__init__(f"Changefile {sequence}: {message}")


class CommitError(PipelineError):
    """Recording a day in the history-tracked store failed."""
    pass


class StorageError(PipelineError):
    """Object storage upload or download failed."""
    pass


class ChangesetNotAvailable(Exception):
    """The requested daily diff is not (yet) published on the replication server."""
    def __init__(self, sequence: str, day: date, url: str):
        self.sequence = sequence
        self.day = day
        self.url = url
        super().__init__(f"Changefile {sequence} for {day.isoformat()} is not available at {url}")
