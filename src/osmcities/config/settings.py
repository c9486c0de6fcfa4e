"""
Configuration management for the OSM for Cities pipeline.

Usage:
    from osmcities.config.settings import Config
    config = Config()
    history_file = config.paths.history_file

Environment Variables:
    OSMCITIES_DATA_DIR: Base directory for history files and context data
    HISTORY_FILE: Full-history snapshot (.osh.pbf) kept up to date
    CURSOR_FILE: JSON metadata file tracking snapshot progress
    REPLICATION_BASE_URL: Daily replication endpoint
    OSMIUM_BIN: Path to the osmium executable
    MAX_WORKERS: Concurrent osmium invocations during fan-out stages
    S3_BUCKET: Enables object storage of the snapshot when set
"""

import logging
import os
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from ..domain.enums import FailurePolicy

logger = logging.getLogger(__name__)

# First day a daily changefile exists on planet.osm.org (sequence 000000001)
DEFAULT_REPLICATION_EPOCH = "2012-09-12"


@dataclass
class PathsConfig:
    """Filesystem locations used by the pipeline."""
    data_dir: Path
    history_file: Path
    cursor_file: Path
    temp_dir: Path
    contexts_dir: Path

    def __post_init__(self):
        """Validate path configuration."""
        if self.history_file.suffix != ".pbf":
            raise ValueError("History file must be an osmium .pbf file")
        if self.cursor_file == self.history_file:
            raise ValueError("Cursor file cannot be the history file itself")


@dataclass
class ReplicationConfig:
    """Remote daily replication settings."""
    base_url: str
    epoch: date
    timeout_s: int = 120
    max_retries: int = 3
    gap_grace_days: int = 3

    def __post_init__(self):
        """Validate replication configuration."""
        if not self.base_url.startswith(('http://', 'https://')):
            raise ValueError("Replication URL must include protocol (https://)")
        if self.timeout_s < 1:
            raise ValueError("Replication timeout must be positive")
        if self.max_retries < 0:
            raise ValueError("Retry count must be non-negative")
        if self.gap_grace_days < 1:
            raise ValueError("Gap grace period must be at least one day")


@dataclass
class ProcessingConfig:
    """Extraction tool and fan-out configuration."""
    osmium_bin: str = "osmium"
    max_workers: int = 5
    failure_policy: FailurePolicy = FailurePolicy.STRICT

    def __post_init__(self):
        """Validate processing configuration."""
        if self.max_workers < 1:
            raise ValueError("Worker count must be positive")
        if not self.osmium_bin:
            raise ValueError("Osmium binary cannot be empty")


@dataclass
class StorageConfig:
    """Object storage location of the snapshot and its cursor file."""
    bucket: Optional[str] = None
    region: Optional[str] = None
    endpoint_url: Optional[str] = None
    snapshot_key: str = "presets-history.osh.pbf"
    cursor_key: str = "presets-history.osh.pbf.json"

    @property
    def enabled(self) -> bool:
        return bool(self.bucket)

    def __post_init__(self):
        """Validate storage configuration."""
        if self.endpoint_url and not self.endpoint_url.startswith(('http://', 'https://')):
            raise ValueError("S3 endpoint URL must include protocol")
        if self.snapshot_key == self.cursor_key:
            raise ValueError("Snapshot and cursor keys must differ")


@dataclass
class GitConfig:
    """Synthetic identity used for daily commits."""
    author_name: str = "Mapas Livres"
    author_email: str = "https://github.com/mapaslivres"
    git_bin: str = "git"

    def __post_init__(self):
        if not self.author_name:
            raise ValueError("Git author name cannot be empty")


@dataclass
class TempConfig:
    """Temporary file management configuration."""
    retention_hours: int = 24
    warning_gb: int = 10
    limit_gb: int = 50

    def __post_init__(self):
        """Validate temp management configuration."""
        if self.retention_hours < 0:
            raise ValueError("Retention hours must be non-negative")
        if self.warning_gb < 1:
            raise ValueError("Warning threshold must be at least 1GB")
        if self.limit_gb <= self.warning_gb:
            raise ValueError("Size limit must be greater than warning threshold")


class ConfigurationError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass


class PipelineLogger:
    """Thin wrapper adding phase banners to a standard logger."""

    def __init__(self, logger: logging.Logger, width: int = 44):
        self._logger = logger
        self._width = width

    def phase(self, title: str) -> None:
        self._logger.info(f" {title} ".center(self._width, "="))

    def info(self, message: str) -> None:
        self._logger.info(message)

    def warning(self, message: str) -> None:
        self._logger.warning(message)

    def error(self, message: str) -> None:
        self._logger.error(message)


class Config:
    """
    Centralized configuration for the replication and extraction pipeline.

    Environment variables loaded (in order of preference):
    1. Explicit environment file passed to constructor
    2. .env.{ENVIRONMENT} (where ENVIRONMENT=development|production|staging)
    3. .env file in project root
    4. System environment variables

    Example:
        config = Config(environment="production")
        config = Config(env_file=Path("/etc/osmcities/production.env"))
    """

    def __init__(self,
                 environment: Optional[str] = None,
                 env_file: Optional[Path] = None,
                 validate_on_init: bool = True):
        """
        Initialize configuration.

        Args:
            environment: Target environment (development|staging|production)
            env_file: Explicit path to environment file
            validate_on_init: Whether to validate all settings on initialization
        """
        self.environment = environment or os.getenv("ENVIRONMENT", "development")
        self.project_root = self._find_project_root()

        self._load_environment_variables(env_file)

        self._load_paths_config()
        self._load_replication_config()
        self._load_processing_config()
        self._load_storage_config()
        self._load_git_config()
        self._load_temp_config()

        if validate_on_init:
            self.validate()

    def _find_project_root(self) -> Path:
        """Find project root directory containing pyproject.toml, .git, or .env."""
        current = Path(__file__).resolve()

        for parent in current.parents:
            if any((parent / marker).exists() for marker in ['pyproject.toml', '.git']):
                return parent

        if (Path.cwd() / '.env').exists():
            return Path.cwd()

        return Path.cwd()

    def _load_environment_variables(self, env_file: Path | None) -> None:
        """Load environment variables from appropriate source."""
        loaded_files = []

        if env_file:
            if env_file.exists():
                load_dotenv(env_file)
                loaded_files.append(str(env_file))
                logger.info(f"Loaded configuration from {env_file}")
            else:
                raise ConfigurationError(f"Specified env file not found: {env_file}")

        else:
            env_specific_file = self.project_root / f".env.{self.environment}"
            if env_specific_file.exists():
                load_dotenv(env_specific_file)
                loaded_files.append(str(env_specific_file))
                logger.info(f"Loaded environment-specific config: {env_specific_file}")

            generic_env_file = self.project_root / ".env"
            if generic_env_file.exists():
                load_dotenv(generic_env_file)
                loaded_files.append(str(generic_env_file))
                logger.info(f"Loaded generic config: {generic_env_file}")

        if not loaded_files:
            logger.debug("No .env files found, using system environment variables only")

        self._loaded_env_files = loaded_files
        logger.debug(f"Project root: {self.project_root}")
        logger.debug(f"Environment: {self.environment}")

    def _load_paths_config(self) -> None:
        """Load filesystem locations, deriving defaults from the data directory."""
        data_dir = Path(os.getenv("OSMCITIES_DATA_DIR", "./data")).expanduser()
        history_file = Path(os.getenv(
            "HISTORY_FILE", str(data_dir / "history" / "presets-history.osh.pbf")
        )).expanduser()
        cursor_file = Path(os.getenv("CURSOR_FILE", f"{history_file}.json")).expanduser()
        temp_dir = Path(os.getenv("OSMCITIES_TEMP_DIR", str(self.project_root / "temp"))).expanduser()
        contexts_dir = Path(os.getenv(
            "CONTEXTS_DIR", str(Path(__file__).resolve().parent.parent / "data" / "contexts")
        )).expanduser()

        try:
            self.paths = PathsConfig(
                data_dir=data_dir,
                history_file=history_file,
                cursor_file=cursor_file,
                temp_dir=temp_dir,
                contexts_dir=contexts_dir,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid path configuration: {e}")

    def _load_replication_config(self) -> None:
        """Load replication endpoint configuration with planet.osm.org defaults."""
        base_url = os.getenv("REPLICATION_BASE_URL", "https://planet.osm.org/replication/day")
        epoch_raw = os.getenv("REPLICATION_EPOCH", DEFAULT_REPLICATION_EPOCH)

        try:
            self.replication = ReplicationConfig(
                base_url=base_url.rstrip("/"),
                epoch=date.fromisoformat(epoch_raw),
                timeout_s=int(os.getenv("REPLICATION_TIMEOUT", "120")),
                max_retries=int(os.getenv("REPLICATION_MAX_RETRIES", "3")),
                gap_grace_days=int(os.getenv("REPLICATION_GAP_GRACE_DAYS", "3")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid replication configuration: {e}")

    def _load_processing_config(self) -> None:
        """Load osmium and worker pool configuration."""
        try:
            self.processing = ProcessingConfig(
                osmium_bin=os.getenv("OSMIUM_BIN", "osmium"),
                max_workers=int(os.getenv("MAX_WORKERS", "5")),
                failure_policy=FailurePolicy(os.getenv("FAILURE_POLICY", "strict").lower().replace("_", "-")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid processing configuration: {e}")

    def _load_storage_config(self) -> None:
        """Load object storage configuration. Credentials come from the AWS chain."""
        try:
            self.storage = StorageConfig(
                bucket=os.getenv("S3_BUCKET") or None,
                region=os.getenv("S3_REGION") or None,
                endpoint_url=os.getenv("S3_ENDPOINT_URL") or None,
                snapshot_key=os.getenv("S3_SNAPSHOT_KEY", "presets-history.osh.pbf"),
                cursor_key=os.getenv("S3_CURSOR_KEY", "presets-history.osh.pbf.json"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid storage configuration: {e}")

    def _load_git_config(self) -> None:
        try:
            self.git = GitConfig(git_bin=os.getenv("GIT_BIN", "git"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid git configuration: {e}")

    def _load_temp_config(self) -> None:
        """Load temporary file management configuration."""
        try:
            self.temp = TempConfig(
                retention_hours=int(os.getenv("TEMP_RETENTION_HOURS", "24")),
                warning_gb=int(os.getenv("TEMP_SIZE_WARNING_GB", "10")),
                limit_gb=int(os.getenv("TEMP_SIZE_LIMIT_GB", "50")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid temp management configuration: {e}")

    def get_temp_settings(self) -> dict[str, Any]:
        """
        Get temp management configuration settings as dictionary.

        Returns:
            Dictionary of temp management settings
        """
        return {
            'retention_hours': self.temp.retention_hours,
            'warning_gb': self.temp.warning_gb,
            'limit_gb': self.temp.limit_gb
        }

    def validate(self) -> None:
        """
        Cross-section configuration validation.

        Raises:
            ConfigurationError: If any configuration is invalid
        """
        validation_errors = []

        if self.processing.max_workers > 64:
            validation_errors.append("Worker count > 64 will oversubscribe most hosts")

        if self.paths.temp_dir.resolve() == self.paths.data_dir.resolve():
            validation_errors.append("Temp directory must differ from the data directory")

        if self.replication.epoch > date.today():
            validation_errors.append(f"Replication epoch {self.replication.epoch} is in the future")

        if validation_errors:
            raise ConfigurationError(
                "Configuration validation failed:\n" +
                "\n".join(f"  - {error}" for error in validation_errors)
            )

        logger.debug("Configuration validation passed")

    def get_summary(self) -> dict[str, Any]:
        """
        Get configuration summary for run logs (no secrets).

        Returns:
            Dictionary with the effective configuration
        """
        return {
            'environment': self.environment,
            'loaded_env_files': self._loaded_env_files,
            'history_file': str(self.paths.history_file),
            'cursor_file': str(self.paths.cursor_file),
            'replication_url': self.replication.base_url,
            'replication_epoch': self.replication.epoch.isoformat(),
            'osmium_bin': self.processing.osmium_bin,
            'max_workers': self.processing.max_workers,
            'failure_policy': self.processing.failure_policy.value,
            's3_bucket': self.storage.bucket,
        }

    def __repr__(self) -> str:
        return (
            f"Config(environment={self.environment}, "
            f"history_file={self.paths.history_file}, "
            f"max_workers={self.processing.max_workers})"
        )
