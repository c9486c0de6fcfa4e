"""
Persisted replication cursor.

The cursor is a JSON file next to the history snapshot:

    {"elements": {"firstTimestamp": "...", "lastTimestamp": "..."}, ...extra}

Unrelated keys written by other tools are preserved on every rewrite.
"""

import json
import logging
from datetime import date
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from ..domain.models import Cursor
from ..osmium import OsmiumTool
from ..types import PipelineError
from ..utils import write_json_atomic

logger = logging.getLogger(__name__)


class CursorStore:
    """Loads, saves and refreshes the cursor file of one snapshot."""

    def __init__(self, path: Path, osmium: OsmiumTool):
        self.path = path
        self.osmium = osmium

    def load(self) -> Optional[Cursor]:
        """
        Read the cursor file.

        Returns:
            The cursor, or None if no cursor file exists yet

        Raises:
            PipelineError: If the file exists but is not a valid cursor
        """
        if not self.path.exists():
            return None

        try:
            with open(self.path, encoding='utf-8') as f:
                return Cursor.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            raise PipelineError(f"Corrupt cursor file {self.path}: {e}") from e

    def save(self, cursor: Cursor) -> None:
        """Write the cursor atomically (temp file + rename)."""
        write_json_atomic(self.path, cursor.to_json())
        logger.debug(f"Cursor saved: {self.path}")

    def refresh_from_snapshot(
        self,
        snapshot: Path,
        last_applied_day: Optional[date] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> Cursor:
        """
        Re-read embedded timestamps from the snapshot and merge them into the cursor.

        Args:
            snapshot: History snapshot to inspect
            last_applied_day: Day of the last applied diff, if known
            extra: Additional top-level metadata to merge

        Returns:
            The saved cursor
        """
        first_timestamp, last_timestamp = self.osmium.file_timestamps(snapshot)
        if not last_timestamp:
            raise PipelineError(f"Snapshot {snapshot} has no embedded timestamps")

        current = self.load()
        merged: dict[str, Any] = current.to_json() if current else {}
        merged.update(extra or {})
        merged["elements"] = {"firstTimestamp": first_timestamp, "lastTimestamp": last_timestamp}
        if last_applied_day is not None:
            merged["lastAppliedDay"] = last_applied_day.isoformat()

        cursor = Cursor.model_validate(merged)
        self.save(cursor)
        logger.info(f"Cursor updated: last timestamp {last_timestamp}")
        return cursor

    def load_or_init(self, snapshot: Path) -> Cursor:
        """Load the cursor, creating it from the snapshot's timestamps when absent."""
        cursor = self.load()
        if cursor is None:
            logger.info("No cursor file found, reading timestamps from snapshot...")
            cursor = self.refresh_from_snapshot(snapshot)
        return cursor
