"""
Daily commits of the output tree.

The output tree is a git working tree. Every processed day becomes exactly one
commit by a fixed identity, dated at the processed day rather than at the time
the pipeline ran, so the repository history reads as a day-by-day timeline.
"""

import logging
import os
import shutil
import subprocess
from datetime import date
from pathlib import Path
from typing import Optional

from ..config.settings import GitConfig
from ..types import CommitError

logger = logging.getLogger(__name__)


def day_timestamp(day: date) -> str:
    """ISO timestamp used as commit date and in the commit message."""
    return f"{day.isoformat()}T00:00:00Z"


class SnapshotCommitter:
    """Commits the output tree once per processed day."""

    def __init__(self, repo_dir: Path, config: Optional[GitConfig] = None):
        self.repo_dir = repo_dir
        self.config = config or GitConfig()

    def _git(self, *args: str, env: Optional[dict[str, str]] = None) -> str:
        command = [self.config.git_bin, *args]
        try:
            result = subprocess.run(
                command,
                cwd=self.repo_dir,
                capture_output=True,
                text=True,
                env={**os.environ, **(env or {})},
            )
        except FileNotFoundError as e:
            raise CommitError(f"git executable not found: {self.config.git_bin}") from e

        if result.returncode != 0:
            raise CommitError(f"{' '.join(command)} failed ({result.returncode}): {result.stderr.strip()}")
        return result.stdout.strip()

    def identity_env(self, day: date) -> dict[str, str]:
        timestamp = day_timestamp(day)
        return {
            "GIT_AUTHOR_NAME": self.config.author_name,
            "GIT_AUTHOR_EMAIL": self.config.author_email,
            "GIT_AUTHOR_DATE": timestamp,
            "GIT_COMMITTER_NAME": self.config.author_name,
            "GIT_COMMITTER_EMAIL": self.config.author_email,
            "GIT_COMMITTER_DATE": timestamp,
        }

    @property
    def is_repository(self) -> bool:
        return (self.repo_dir / ".git").exists()

    def ensure_repository(self) -> None:
        self.repo_dir.mkdir(parents=True, exist_ok=True)
        if not self.is_repository:
            logger.info(f"Initializing git repository at {self.repo_dir}")
            self._git("init")

    def commit_day(self, day: date) -> str:
        """
        Commit the whole tree as the status of a day.

        A day without changes still gets its (empty) commit.

        Returns:
            Hash of the new commit
        """
        self.ensure_repository()
        timestamp = day_timestamp(day)

        self._git("add", "-A")
        self._git(
            "commit", "--allow-empty", "--quiet", "-m", f"Status of {timestamp}",
            env=self.identity_env(day),
        )
        commit_hash = self._git("rev-parse", "HEAD")
        logger.info(f"Committed status of {day.isoformat()} ({commit_hash[:8]})")
        return commit_hash

    def push(self, remote_url: str) -> None:
        """Push the current branch to a remote."""
        logger.info("Pushing output repository...")
        self._git("push", remote_url, "HEAD")

    def last_commit_date(self) -> Optional[str]:
        """Author date of HEAD, or None for a missing or empty repository."""
        if not self.is_repository:
            return None
        try:
            return self._git("log", "-1", "--format=%aI")
        except CommitError:
            return None

    def reset(self) -> None:
        """Delete the local output repository, data and history included."""
        if self.repo_dir.exists():
            shutil.rmtree(self.repo_dir)
            logger.info(f"Removed local repository {self.repo_dir}")
