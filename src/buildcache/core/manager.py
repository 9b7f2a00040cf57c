"""Restores and saves all caches of a job around a build."""

import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from ..ports import ClockPort, LoggerPort, MetricsPort, StoragePort
from .arbitrary import ArbitraryFileCache, Saver
from .eviction import EvictionDecision
from .locks import JOB_LOCKS, JobLocks
from .models import StorageScope
from .object_path import ObjectPath


class CacheManager:
    """Job level cache handling.

    Restores run under the job lock so concurrent builds of the same job
    do not read a half written cache. Saving first measures the local size
    of every cache; past ``max_cache_size_mb`` the job's whole cache is
    deleted instead, so the next build starts fresh.
    """

    def __init__(
        self,
        storage: StoragePort,
        bucket: str,
        prefix: str,
        clock: ClockPort,
        logger: LoggerPort,
        metrics: MetricsPort,
        locks: JobLocks = JOB_LOCKS,
        cancel: threading.Event | None = None,
    ):
        self.storage = storage
        self.bucket = bucket
        self.prefix = prefix
        self.clock = clock
        self.logger = logger
        self.metrics = metrics
        self.locks = locks
        self.cancel = cancel

    def cache_path(self, job: str) -> ObjectPath:
        return self._object_path(StorageScope.for_job(self.bucket, self.prefix, job))

    def cache_path_for_branch(self, job: str, branch: str | None) -> ObjectPath | None:
        if not branch:
            return None
        return self._object_path(StorageScope.for_branch(self.bucket, self.prefix, job, branch))

    def _object_path(self, scope: StorageScope) -> ObjectPath:
        return ObjectPath(self.storage, scope, self.clock, self.logger, self.cancel)

    def cache(
        self,
        job: str,
        workspace: Path,
        caches: Sequence[ArbitraryFileCache],
        default_branch: str | None = None,
        skip_restore: bool = False,
        env: Mapping[str, str] | None = None,
        echo: Callable[[str], Any] = print,
    ) -> list[Saver]:
        """Restore every cache into ``workspace`` and return their savers."""
        cache_path = self.cache_path(job)
        default_cache_path = self.cache_path_for_branch(job, default_branch)

        self.logger.debug("Preparing cache", job=job, caches=len(caches))
        with self.locks.lock_for(job):
            return [
                cache.cache(
                    cache_path,
                    default_cache_path,
                    workspace,
                    self.logger,
                    self.clock,
                    echo=echo,
                    env=env,
                    skip_restore=skip_restore,
                )
                for cache in caches
            ]

    def savers(
        self, caches: Sequence[ArbitraryFileCache], env: Mapping[str, str] | None = None
    ) -> list[Saver]:
        """Savers for caches restored by an earlier process."""
        return [Saver(cache, cache.expand_path(env), self.logger, self.clock) for cache in caches]

    def save(
        self,
        job: str,
        workspace: Path,
        savers: Sequence[Saver],
        max_cache_size_mb: int = 0,
        default_branch: str | None = None,
        echo: Callable[[str], Any] = print,
    ) -> EvictionDecision:
        """Save every cache, or clear the job cache once it grew too large."""
        cache_path = self.cache_path(job)
        default_cache_path = self.cache_path_for_branch(job, default_branch)

        decision = self._check_size(workspace, savers, max_cache_size_mb)

        with self.locks.lock_for(job):
            if decision.exceeded:
                echo(
                    f"Removing job cache as it has grown beyond configured maximum size of "
                    f"{max_cache_size_mb}M. Next build will start with no cache."
                )
                if cache_path.exists():
                    deleted = cache_path.delete_recursive()
                    self.metrics.increment("buildcache.eviction.triggered", tags={"job": job})
                    self.logger.info("Removed job cache", job=job, deleted=deleted)
                else:
                    echo(
                        "Cache does not exist even though max cache was reached."
                        "  You may want to consider increasing maximum cache size."
                    )
            else:
                self.logger.debug("Saving cache", job=job, caches=len(savers))
                for saver in savers:
                    saver.save(cache_path, default_cache_path, workspace, echo=echo)

        return decision

    def _check_size(
        self, workspace: Path, savers: Sequence[Saver], max_cache_size_mb: int
    ) -> EvictionDecision:
        max_bytes = max_cache_size_mb * 1024 * 1024
        if max_bytes <= 0:
            return EvictionDecision(total_size=0, max_bytes=0)
        total_size = sum(saver.calculate_size(workspace) for saver in savers)
        return EvictionDecision(total_size=total_size, max_bytes=max_bytes)
