"""
Domain Models and Types

Models:
- Dataset: feature category with osmium tag filters
- AdminRegion: state / microregion / municipality extraction unit
- Context: target country, boundary configs and output tree
- Cursor: persisted replication progress
- StatsRecord: per-day pipeline metrics
- RunOptions: runtime flags

Enums:
- RegionLevel: nested administrative levels
- FailurePolicy: fan-out failure handling
- RunOutcome: terminal state of one pipeline step
"""

from .enums import FailurePolicy, RegionLevel, RunOutcome
from .models import AdminRegion, Context, Cursor, CursorElements, Dataset, RunOptions, StatsRecord

__all__ = [
    "AdminRegion", "Context", "Cursor", "CursorElements", "Dataset", "RunOptions", "StatsRecord",
    "FailurePolicy", "RegionLevel", "RunOutcome",
]
