"""
Daily diff download from the replication server.

A 404 means the diff is not published (yet) and is reported as
ChangesetNotAvailable, the pipeline's soft-stop. Connection errors and 5xx
responses are retried with backoff; anything else is a ReplicationError.
"""

import logging
import time
from datetime import date
from pathlib import Path
from typing import Optional

import requests

from ..types import ChangesetNotAvailable, DailyChangeset, ReplicationError
from ..utils import ensure_directory, format_duration, remove_file, retry_with_backoff
from .clock import SequenceClock, changefile_path

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class TransientFetchError(Exception):
    """Retryable transport failure."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class DiffFetcher:
    """Downloads daily diffs into a scratch directory."""

    def __init__(
        self,
        base_url: str,
        clock: SequenceClock,
        download_dir: Path,
        session: Optional[requests.Session] = None,
        timeout_s: int = 120,
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.clock = clock
        self.download_dir = download_dir
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def url_for(self, sequence: str) -> str:
        return f"{self.base_url}/{changefile_path(sequence)}"

    def fetch_day(self, day: date) -> DailyChangeset:
        return self.fetch(self.clock.sequence_for_day(day))

    def fetch(self, sequence: str) -> DailyChangeset:
        """
        Download the daily diff with the given sequence number.

        Args:
            sequence: 9-digit zero-padded sequence number

        Returns:
            The downloaded changeset in the scratch directory

        Raises:
            ChangesetNotAvailable: If the server answers 404
            ReplicationError: On any other failure, after retries
        """
        day = self.clock.day_for_sequence(sequence)
        url = self.url_for(sequence)
        destination = ensure_directory(self.download_dir) / f"{sequence}.osc.gz"

        logger.info(f"Downloading day changefile {sequence} ({day.isoformat()})...")
        download = retry_with_backoff(
            max_retries=self.max_retries,
            base_delay=self.retry_delay,
            exceptions=(TransientFetchError,),
        )(self._download)

        try:
            elapsed = download(url, destination)
        except TransientFetchError as e:
            raise ReplicationError(sequence, str(e), e.status_code) from e
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                raise ChangesetNotAvailable(sequence, day, url) from e
            status = e.response.status_code if e.response is not None else None
            raise ReplicationError(sequence, f"HTTP error: {e}", status) from e
        except (requests.RequestException, OSError) as e:
            raise ReplicationError(sequence, f"Download failed: {e}") from e

        changeset = DailyChangeset(sequence=sequence, day=day, path=destination)
        logger.info(f"Downloaded {changeset.size_bytes / 1024:.0f} KB in {format_duration(elapsed)}")
        return changeset

    def _download(self, url: str, destination: Path) -> float:
        """Stream one URL to disk through a .part file. Returns elapsed seconds."""
        start = time.time()
        partial = destination.with_name(f"{destination.name}.part")
        try:
            with self.session.get(url, stream=True, timeout=self.timeout_s) as response:
                if response.status_code >= 500:
                    raise TransientFetchError(f"Server error {response.status_code} for {url}", response.status_code)
                response.raise_for_status()

                with open(partial, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
            partial.replace(destination)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientFetchError(f"Connection failed for {url}: {e}") from e
        finally:
            remove_file(partial)

        return time.time() - start
