"""
Daily diff application with atomic snapshot replacement.

The diff is applied into a staged file next to the snapshot (same
filesystem), optionally reduced to the dataset tag filters, and only then
renamed over the snapshot. Any failure before the rename leaves the snapshot
byte-identical.
"""

import logging
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from ..osmium import OsmiumTool
from ..types import DailyChangeset, SnapshotMissingError
from ..utils import log_duration, remove_file

logger = logging.getLogger(__name__)


class SnapshotUpdater:
    """Applies daily changesets to the history snapshot."""

    def __init__(self, osmium: OsmiumTool, prefilter: Optional[Sequence[str]] = None):
        """
        Args:
            osmium: Extraction tool wrapper
            prefilter: Tag-filter expressions the updated snapshot is reduced to;
                       None keeps the full history
        """
        self.osmium = osmium
        self.prefilter = list(prefilter) if prefilter else None

    @staticmethod
    def staged_path(base: Path, label: str = "staged") -> Path:
        # Keep the .osh.pbf suffix so osmium detects the format
        return base.with_name(f".{label}-{os.getpid()}-{base.name}")

    def prepare(self, base: Path, changeset: DailyChangeset) -> Path:
        """
        Apply a changeset into a staged copy of the snapshot.

        Returns:
            Path of the staged snapshot, a sibling of base

        Raises:
            SnapshotMissingError: If the base snapshot does not exist
            ExtractionToolError: If osmium fails; nothing is left behind
        """
        if not base.exists():
            raise SnapshotMissingError(base)

        applied = self.staged_path(base, "applied")
        staged = self.staged_path(base)

        try:
            logger.info(f"Applying changefile {changeset.sequence} to {base.name}...")
            with log_duration("Duration of changefile apply"):
                self.osmium.apply_changes(base, changeset.path, applied)

            if self.prefilter:
                logger.info(f"Filtering history to {len(self.prefilter)} preset expressions...")
                with log_duration("Duration of preset filter"):
                    self.osmium.tags_filter(applied, self.prefilter, staged)
            else:
                os.replace(applied, staged)
        except BaseException:
            remove_file(staged)
            raise
        finally:
            remove_file(applied)

        return staged

    def swap(self, staged: Path, base: Path, changeset: DailyChangeset) -> Path:
        """Atomically replace the snapshot with a staged one and drop the consumed diff."""
        os.replace(staged, base)
        remove_file(changeset.path)
        logger.info(f"Snapshot updated with changefile {changeset.sequence} ({changeset.day.isoformat()})")
        return base

    def discard(self, staged: Path) -> None:
        remove_file(staged)

    def apply(self, base: Path, changeset: DailyChangeset) -> Path:
        """
        Apply a changeset to the snapshot and swap the result into place.

        Args:
            base: Current history snapshot, replaced on success
            changeset: Downloaded daily diff, deleted on success

        Returns:
            Path of the updated snapshot (same as base)
        """
        staged = self.prepare(base, changeset)
        try:
            return self.swap(staged, base, changeset)
        except BaseException:
            self.discard(staged)
            raise
