"""
Daily extraction pipeline.

Components:
- RegionSplitter: three-level region split with empty-file pruning
- DatasetExtractor / GeoJSONExporter: per-municipality dataset files
- StatsRecorder: per-day stage timings and output size
- SnapshotCommitter: one git commit per processed day
- PipelineDriver: orchestration and catch-up loop
"""

from .commit import SnapshotCommitter
from .driver import PipelineDriver, RunReport
from .export import GeoJSONExporter, strip_identifying_properties
from .extract import DatasetExtractor
from .split import RegionSplitter
from .stats import StatsRecorder

__all__ = [
    "DatasetExtractor",
    "GeoJSONExporter",
    "PipelineDriver",
    "RegionSplitter",
    "RunReport",
    "SnapshotCommitter",
    "StatsRecorder",
    "strip_identifying_properties",
]
