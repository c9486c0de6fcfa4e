"""
Configuration module for the OSM for Cities pipeline.
"""

from .settings import (
    Config,
    ConfigurationError,
    GitConfig,
    PathsConfig,
    PipelineLogger,
    ProcessingConfig,
    ReplicationConfig,
    StorageConfig,
)

__all__ = [
    'Config',
    'ConfigurationError',
    'GitConfig',
    'PathsConfig',
    'PipelineLogger',
    'ProcessingConfig',
    'ReplicationConfig',
    'StorageConfig',
]
