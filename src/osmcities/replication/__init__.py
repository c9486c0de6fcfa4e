"""
Incremental replication of the history snapshot.

- clock: day <-> sequence number arithmetic
- cursor: persisted snapshot progress
- fetch: daily diff download
- update: diff application and atomic snapshot swap
"""

from .clock import SequenceClock, changefile_path, is_up_to_date, next_day_to_process, sequence_for_day
from .cursor import CursorStore
from .fetch import DiffFetcher
from .update import SnapshotUpdater

__all__ = [
    "CursorStore",
    "DiffFetcher",
    "SequenceClock",
    "SnapshotUpdater",
    "changefile_path",
    "is_up_to_date",
    "next_day_to_process",
    "sequence_for_day",
]
