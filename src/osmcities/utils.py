"""
Consolidated Utilities

Sections:
- Logging and timing utilities
- Filesystem and path operations
- Bounded fan-out for subprocess-heavy stages
- Retry and backoff mechanisms
- Configuration file helpers
"""

import functools
import json
import logging
import os
import shutil
import sys
import tempfile
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .domain.enums import FailurePolicy
from .types import FanOutError

logger = logging.getLogger(__name__)

# =============================================================================
# Logging and Timing Utilities
# =============================================================================

def setup_logging(
    verbose: bool,
    target_name: Optional[str] = None,
    mode: Optional[str] = None,
    enable_file_logging: bool = False
) -> None:
    """
    Configure logging with optional timestamped file output.

    Args:
        verbose: Enable debug-level logging if True
        target_name: Context or command name for log file naming
        mode: Operation mode for log file naming
        enable_file_logging: Create timestamped log files when True
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if enable_file_logging and target_name and mode:
        logs_dir = Path("logs")
        logs_dir.mkdir(exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = logs_dir / f"{target_name}_{mode}_{timestamp}.log"

        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
        print(f"Logging to: {log_file}")

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        handlers=handlers,
        force=True
    )


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes < 60:
        return f"{minutes}m {secs:.1f}s"
    hours = minutes // 60
    return f"{hours}h {minutes % 60}m {secs:.0f}s"


@contextmanager
def log_duration(label: str) -> Iterator[None]:
    """Log how long the wrapped block took, at debug level."""
    start = time.monotonic()
    try:
        yield
    finally:
        logger.debug(f"{label}: {format_duration(time.monotonic() - start)}")


# =============================================================================
# Filesystem and Path Operations
# =============================================================================

def ensure_directory(path: Path) -> Path:
    """
    Ensure directory exists, creating it if necessary.

    Args:
        path: Directory path to ensure

    Returns:
        Path object for the directory
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def reset_directory(path: Path) -> Path:
    """Remove a directory with all its contents and create it empty."""
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def remove_file(path: Path) -> None:
    """Delete a file if present."""
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def directory_size_bytes(path: Path) -> int:
    """Total size of all regular files under a directory, like ``du``."""
    if not path.exists():
        return 0

    total_size = 0
    for item in path.rglob("*"):
        if item.is_file() and not item.is_symlink():
            try:
                total_size += item.stat().st_size
            except OSError:
                pass
    return total_size


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write JSON through a sibling temp file and rename it into place.

    A crash mid-write leaves the previous file untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = tempfile.NamedTemporaryFile(
        mode="w", encoding="utf-8", dir=str(path.parent),
        prefix=f".{path.name}.", suffix=".tmp", delete=False
    )
    try:
        with tmp:
            json.dump(data, tmp, indent=2, ensure_ascii=False)
            tmp.write("\n")
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp.name, path)
    except BaseException:
        remove_file(Path(tmp.name))
        raise


# =============================================================================
# Bounded Fan-out
# =============================================================================

def run_bounded(
    stage: str,
    units: Mapping[str, Callable[[], Any]],
    max_workers: int = 5,
    policy: FailurePolicy = FailurePolicy.STRICT,
) -> dict[str, Any]:
    """
    Run independent units of work on a bounded thread pool.

    Every unit runs to completion regardless of sibling failures; the call
    returns only once the pool has drained.

    Args:
        stage: Stage name used in logs and errors
        units: Mapping of unit name to zero-argument callable
        max_workers: Maximum number of units running at once
        policy: STRICT raises FanOutError if any unit failed, BEST_EFFORT logs and continues

    Returns:
        Results of the successful units keyed by unit name

    Raises:
        FanOutError: Under STRICT policy when one or more units failed
    """
    results: dict[str, Any] = {}
    failures: dict[str, BaseException] = {}

    if not units:
        return results

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=stage) as executor:
        futures = {executor.submit(fn): name for name, fn in units.items()}

        for future in as_completed(futures):
            name = futures[future]
            try:
                results[name] = future.result()
            except Exception as e:
                failures[name] = e
                logger.error(f"{stage}: unit {name} failed: {e}")

    if failures:
        if policy == FailurePolicy.BEST_EFFORT:
            logger.warning(f"{stage}: continuing after {len(failures)} failed unit(s) (best-effort)")
        else:
            raise FanOutError(stage, failures)

    return results


# =============================================================================
# Retry and Backoff Mechanisms
# =============================================================================

def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
) -> Callable:
    """
    Decorator for retry logic with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds
        backoff_factor: Multiplier for delay between attempts
        exceptions: Exception types to retry on

    Returns:
        Decorated function with retry logic
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < max_retries:
                        delay = base_delay * (backoff_factor ** attempt)
                        logging.warning(f"{func.__name__} attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s...")
                        time.sleep(delay)
                    else:
                        logging.error(f"{func.__name__} failed after {max_retries + 1} attempts")

            raise last_exception

        return wrapper
    return decorator


# =============================================================================
# Configuration File Helpers
# =============================================================================

def load_yaml_file(file_path: Path) -> dict[str, Any]:
    """
    Load YAML configuration file with error handling.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If file is not valid YAML
    """
    import yaml

    if not file_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    try:
        with open(file_path, encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {file_path}: {e}") from e
