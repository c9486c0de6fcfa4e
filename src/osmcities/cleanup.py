"""Per-run working directories and temporary file management."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

RUN_DIR_PREFIX = "run_"


def new_run_id() -> str:
    """Run identifier unique across overlapping runs on one host."""
    return f"{datetime.now().strftime('%Y%m%dT%H%M%S')}_{os.getpid()}"


@dataclass(frozen=True)
class RunWorkspace:
    """
    Scratch layout of a single pipeline run.

    Nothing in here survives the run; downstream stages only read files
    written by earlier stages of the same run.
    """
    root: Path

    @classmethod
    def create(cls, temp_root: Path, run_id: Optional[str] = None) -> RunWorkspace:
        workspace = cls(temp_root / f"{RUN_DIR_PREFIX}{run_id or new_run_id()}")
        workspace.root.mkdir(parents=True, exist_ok=True)
        workspace.history_dir.mkdir(exist_ok=True)
        logging.debug(f"Run workspace: {workspace.root}")
        return workspace

    @property
    def run_id(self) -> str:
        return self.root.name[len(RUN_DIR_PREFIX):]

    @property
    def history_dir(self) -> Path:
        """Downloaded diffs and intermediate history files."""
        return self.root / "history"

    @property
    def current_day_dir(self) -> Path:
        return self.root / "current-day"

    @property
    def current_day_file(self) -> Path:
        """Country-level snapshot of the processed day."""
        return self.current_day_dir / "current-day.osm.pbf"

    def level_dir(self, level: int) -> Path:
        return self.current_day_dir / f"level-{level}"

    @property
    def datasets_dir(self) -> Path:
        """Scratch output of per-municipality tag filters."""
        return self.current_day_dir / "datasets"

    def remove(self) -> None:
        if self.root.exists():
            try:
                shutil.rmtree(self.root)
                logging.debug(f"Removed run workspace: {self.root}")
            except OSError as e:
                logging.warning(f"Could not remove run workspace {self.root}: {e}")


def cleanup_stale_runs(temp_root: Path, retention_hours: int = 24) -> int:
    """
    Remove run directories left behind by interrupted runs.

    Args:
        temp_root: Directory holding run_* workspaces
        retention_hours: Workspaces untouched for longer than this are removed

    Returns:
        Number of workspaces removed
    """
    if not temp_root.exists():
        return 0

    cutoff_time = time.time() - (retention_hours * 3600)
    cleaned_count = 0

    for run_dir in temp_root.glob(f"{RUN_DIR_PREFIX}*"):
        if not run_dir.is_dir():
            continue
        try:
            if run_dir.stat().st_mtime < cutoff_time:
                shutil.rmtree(run_dir)
                cleaned_count += 1
                logging.debug(f"Removed stale run workspace: {run_dir}")
        except OSError as e:
            logging.warning(f"Could not remove stale workspace {run_dir}: {e}")

    if cleaned_count > 0:
        logging.info(f"Cleaned up {cleaned_count} stale run workspaces (>{retention_hours}h)")

    return cleaned_count


def get_temp_dir_size(temp_root: Path) -> int:
    """Get total size of temp directory in bytes."""
    if not temp_root.exists():
        return 0

    total_size = 0
    for item in temp_root.rglob("*"):
        if item.is_file():
            try:
                total_size += item.stat().st_size
            except OSError:
                pass

    return total_size


def check_temp_size_limits(temp_root: Path, warning_gb: int = 10, limit_gb: int = 50) -> bool:
    """
    Check temp directory size against limits.

    Returns:
        True if within limits, False if over hard limit
    """
    size_gb = get_temp_dir_size(temp_root) / (1024 ** 3)

    if size_gb > limit_gb:
        logging.error(f"Temp directory size ({size_gb:.1f}GB) exceeds limit ({limit_gb}GB)")
        cleaned = cleanup_stale_runs(temp_root, retention_hours=1)
        logging.info(f"Emergency cleanup removed {cleaned} workspaces")

        new_size_gb = get_temp_dir_size(temp_root) / (1024 ** 3)
        if new_size_gb > limit_gb:
            logging.error(f"Temp directory still too large ({new_size_gb:.1f}GB) after cleanup")
            return False

    elif size_gb > warning_gb:
        logging.warning(f"Temp directory size ({size_gb:.1f}GB) exceeds warning threshold ({warning_gb}GB)")

    return True


def register_cleanup_handlers(workspace: RunWorkspace) -> None:
    """Remove the run workspace when the process is interrupted."""
    def signal_handler(signum: int, frame) -> None:
        logging.info(f"Received signal {signum}, cleaning up run workspace...")
        workspace.remove()
        raise SystemExit(1)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def full_cleanup_check(
    temp_root: Path,
    retention_hours: int = 24,
    warning_gb: int = 10,
    limit_gb: int = 50,
    skip_cleanup: bool = False
) -> bool:
    """
    Purge stale workspaces and verify the temp directory is within limits.

    Returns:
        True if temp directory is healthy, False if issues remain
    """
    temp_root.mkdir(parents=True, exist_ok=True)

    if not skip_cleanup:
        cleanup_stale_runs(temp_root, retention_hours)

    return check_temp_size_limits(temp_root, warning_gb, limit_gb)
