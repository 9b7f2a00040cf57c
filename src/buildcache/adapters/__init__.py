"""Adapters for buildcache ports."""

from .clock_utc import UtcClockAdapter
from .logger_std import StdLoggerAdapter
from .metrics_logging import LoggingMetricsAdapter
from .metrics_noop import NoopMetricsAdapter
from .storage_local import LocalStorageAdapter
from .storage_s3 import S3StorageAdapter

__all__ = [
    "LocalStorageAdapter",
    "LoggingMetricsAdapter",
    "NoopMetricsAdapter",
    "S3StorageAdapter",
    "StdLoggerAdapter",
    "UtcClockAdapter",
]
