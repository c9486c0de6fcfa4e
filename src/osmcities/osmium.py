"""
Osmium command-line wrapper.

All geometry work (diff application, time filtering, polygon extracts, tag
filtering and GeoJSON export) is delegated to the ``osmium`` executable from
osmium-tool. Each method maps to one subcommand; a non-zero exit status raises
ExtractionToolError.
"""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from .types import ExtractionToolError

logger = logging.getLogger(__name__)

# Object attributes carried into exported GeoJSON properties (as "@name")
EXPORT_ATTRIBUTES = ("type", "id", "version", "changeset", "timestamp", "uid", "user")


class OsmiumTool:
    """Runs osmium subcommands as subprocesses."""

    def __init__(self, binary: str = "osmium"):
        self.binary = binary

    def run(self, *args: str) -> str:
        """
        Run one osmium subcommand and return its standard output.

        Raises:
            ExtractionToolError: If osmium is missing or exits non-zero
        """
        command = [self.binary, *args]
        logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(command, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise ExtractionToolError(command, 127, f"{self.binary} not found: {e}") from e

        if result.returncode != 0:
            raise ExtractionToolError(command, result.returncode, result.stderr)
        return result.stdout

    def file_timestamps(self, path: Path) -> tuple[Optional[str], Optional[str]]:
        """First and last object timestamps embedded in an OSM file."""
        first = self.run("fileinfo", "-e", "-g", "data.timestamp.first", str(path)).strip()
        last = self.run("fileinfo", "-e", "-g", "data.timestamp.last", str(path)).strip()
        return first or None, last or None

    def count_objects(self, path: Path) -> int:
        """Number of nodes, ways and relations in an OSM file."""
        output = self.run("fileinfo", "-e", "-j", str(path))
        try:
            counts = json.loads(output)["data"]["count"]
        except (ValueError, KeyError) as e:
            raise ExtractionToolError([self.binary, "fileinfo", "-e", "-j", str(path)], 0,
                                      f"unexpected fileinfo output: {e}") from e
        return int(counts.get("nodes", 0)) + int(counts.get("ways", 0)) + int(counts.get("relations", 0))

    def is_empty(self, path: Path) -> bool:
        return self.count_objects(path) == 0

    def apply_changes(self, source: Path, changes: Path, output: Path) -> None:
        """Apply a change file to a (history) file, writing a new file."""
        self.run("apply-changes", "--overwrite", str(source), str(changes), f"--output={output}")

    def time_filter(self, source: Path, timestamp: str, output: Path) -> None:
        """Snapshot of a history file as it was at the given point in time."""
        self.run("time-filter", str(source), timestamp, "--overwrite", "-o", str(output))

    def extract(self, config: Path, source: Path, directory: Path) -> None:
        """Cut regions described by an extract config out of a file into a directory."""
        self.run("extract", "-c", str(config), str(source), "-d", str(directory), "--overwrite")

    def tags_filter(self, source: Path, expressions: Sequence[str], output: Path) -> None:
        """Keep objects matching any of the filter expressions (plus referenced objects)."""
        if not expressions:
            raise ValueError("At least one tag filter expression is required")
        self.run("tags-filter", str(source), *expressions, "--overwrite", "-o", str(output))

    def export_geojson(self, source: Path, output: Path) -> None:
        """Convert an OSM file to a GeoJSON FeatureCollection."""
        self.run(
            "export", str(source),
            "-f", "geojson",
            f"--attributes={','.join(EXPORT_ATTRIBUTES)}",
            "--add-unique-id=type_id",
            "--overwrite",
            "-o", str(output),
        )
