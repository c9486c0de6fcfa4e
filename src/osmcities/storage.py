"""
Object storage of the history snapshot.

The snapshot and its cursor file are kept under fixed keys in one S3 bucket so
a fresh host can seed its local state, and every successful day is persisted
outside the local filesystem. Credentials come from the standard AWS chain.
"""

import logging
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config.settings import StorageConfig
from .types import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage:
    """Upload/download of the snapshot pair by fixed keys."""

    def __init__(self, config: StorageConfig, client: Optional[Any] = None):
        if not config.enabled:
            raise StorageError("Object storage requested but S3_BUCKET is not set")
        self.config = config
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self.config.region,
                endpoint_url=self.config.endpoint_url,
            )
        return self._client

    def download(self, key: str, destination: Path) -> None:
        """
        Download one object to a local path.

        The object is written next to the destination first and renamed into
        place, so an interrupted transfer never replaces a valid local file.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(f"{destination.name}.part")
        logger.info(f"Downloading s3://{self.config.bucket}/{key} -> {destination}")
        try:
            self.client.download_file(self.config.bucket, key, str(partial))
            partial.replace(destination)
        except (BotoCoreError, ClientError) as e:
            partial.unlink(missing_ok=True)
            raise StorageError(f"Download of s3://{self.config.bucket}/{key} failed: {e}") from e

    def upload(self, source: Path, key: str) -> None:
        if not source.exists():
            raise StorageError(f"Cannot upload missing file: {source}")
        logger.info(f"Uploading {source} -> s3://{self.config.bucket}/{key}")
        try:
            self.client.upload_file(str(source), self.config.bucket, key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload to s3://{self.config.bucket}/{key} failed: {e}") from e

    def download_snapshot(self, history_file: Path, cursor_file: Path) -> None:
        """Seed local state from the bucket."""
        self.download(self.config.snapshot_key, history_file)
        self.download(self.config.cursor_key, cursor_file)

    def upload_snapshot(self, history_file: Path, cursor_file: Path) -> None:
        """Persist local state to the bucket. The cursor goes last."""
        self.upload(history_file, self.config.snapshot_key)
        self.upload(cursor_file, self.config.cursor_key)
