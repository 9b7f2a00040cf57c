"""Centralized configuration for buildcache."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError

BACKENDS = ("s3", "local")


@dataclass(slots=True)
class BuildCacheConfig:
    """All buildcache configuration in one place.

    Environment variables (all optional):
        BC_BACKEND:            "s3" (default) or "local".
        BC_BUCKET:             Bucket holding the caches.
        BC_PREFIX:             Key prefix inside the bucket. Default "".
        BC_LOCAL_ROOT:         Root directory of the local backend.
                               Default "~/.buildcache".
        BC_MAX_CACHE_SIZE_MB:  Maximum size of a cache scope before it is
                               cleared. 0 (default) disables the check.
        BC_DEFAULT_BRANCH:     Branch whose caches are used as fallback.
        BC_LOG_LEVEL:          Logging level. Default "INFO".
        BC_METRICS:            Metrics backend: "noop" (default) or "logging".
        BC_MAX_RETRIES:        Retry attempts of the S3 client. Default 5.
    """

    backend: str = "s3"
    bucket: str = ""
    prefix: str = ""
    local_root: Path = field(default_factory=lambda: Path.home() / ".buildcache")
    max_cache_size_mb: int = 0
    default_branch: str | None = None
    log_level: str = "INFO"
    metrics_type: str = "noop"
    max_retries: int = 5

    # Connection params (typically passed by CLI, not env vars)
    endpoint_url: str | None = field(default=None, repr=False)
    region: str | None = None
    profile: str | None = None

    @property
    def max_cache_size_bytes(self) -> int:
        return self.max_cache_size_mb * 1024 * 1024

    def validate(self) -> None:
        if self.backend not in BACKENDS:
            raise ConfigurationError(
                f"Unknown backend '{self.backend}', expected one of: {', '.join(BACKENDS)}"
            )
        if not self.bucket:
            raise ConfigurationError("No bucket configured (set BC_BUCKET or --bucket)")
        if self.max_cache_size_mb < 0:
            raise ConfigurationError("Maximum cache size must not be negative")

    @classmethod
    def from_env(
        cls,
        *,
        log_level: str = "INFO",
        bucket: str | None = None,
        prefix: str | None = None,
        backend: str | None = None,
        endpoint_url: str | None = None,
        region: str | None = None,
        profile: str | None = None,
    ) -> "BuildCacheConfig":
        """Build config from environment variables + explicit overrides."""
        local_root = os.environ.get("BC_LOCAL_ROOT")
        try:
            max_cache_size_mb = int(os.environ.get("BC_MAX_CACHE_SIZE_MB", "0"))
            max_retries = int(os.environ.get("BC_MAX_RETRIES", "5"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        return cls(
            backend=backend or os.environ.get("BC_BACKEND", "s3"),
            bucket=bucket or os.environ.get("BC_BUCKET", ""),
            prefix=prefix if prefix is not None else os.environ.get("BC_PREFIX", ""),
            local_root=Path(local_root) if local_root else Path.home() / ".buildcache",
            max_cache_size_mb=max_cache_size_mb,
            default_branch=os.environ.get("BC_DEFAULT_BRANCH") or None,
            log_level=os.environ.get("BC_LOG_LEVEL", log_level),
            metrics_type=os.environ.get("BC_METRICS", "noop"),
            max_retries=max_retries,
            endpoint_url=endpoint_url,
            region=region,
            profile=profile,
        )
