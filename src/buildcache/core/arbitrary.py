"""Cache of an arbitrary workspace directory, stored as a single archive."""

import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any

from ..ports import ClockPort, LoggerPort
from .archive import CompressionMethod
from .hashing import derive_cache_path, md5_of_files
from .models import DEFAULT_FILTER
from .object_path import ObjectPath
from .patterns import PathFilter, create_temp_file, directory_size, split_patterns

HASH_FILE_EXTENSION = ".hash"
CACHE_NAME_SEPARATOR = "-"

Echo = Callable[[str], Any]


@dataclass(frozen=True)
class ExistingCache:
    cache: ObjectPath
    compression_method: CompressionMethod

    def restore(self, target: Path, workspace: Path) -> None:
        self.compression_method.strategy.restore(self.cache, target, workspace)


class ArbitraryFileCache:
    """Caches the directory ``path`` (relative to the workspace).

    ``path`` may reference environment variables (``$HOME/.m2``). The cache
    is stored below the job's cache root as ``md5(path)[-cache_name]`` plus
    the archive extension of the compression method.

    When ``cache_validity_deciding_file`` is set (comma separated patterns,
    ``!`` excludes), an MD5 of the matching files is stored next to the
    archive; a cache whose stored hash differs is outdated and neither
    restored nor kept.
    """

    def __init__(
        self,
        path: str,
        includes: str | None = None,
        excludes: str | None = None,
        use_default_excludes: bool = True,
        cache_validity_deciding_file: str | None = None,
        compression_method: CompressionMethod | str | None = CompressionMethod.TARGZ,
        cache_name: str | None = None,
    ):
        self.path = path
        self.includes = includes if includes and includes.strip() else DEFAULT_FILTER
        self.excludes = excludes
        self.use_default_excludes = use_default_excludes
        self.cache_validity_deciding_file = cache_validity_deciding_file
        self.compression_method = CompressionMethod.parse(compression_method)
        self.cache_name = cache_name

    @property
    def path_filter(self) -> PathFilter:
        return PathFilter(self.includes, self.excludes, self.use_default_excludes)

    def create_cache_base_name(self) -> str:
        base = derive_cache_path(self.path)
        if not self.cache_name:
            return base
        return f"{base}{CACHE_NAME_SEPARATOR}{self.cache_name}"

    def expand_path(self, env: Mapping[str, str] | None = None) -> str:
        return Template(self.path).safe_substitute(env or {})

    def cache(
        self,
        caches_root: ObjectPath,
        fallback_caches_root: ObjectPath | None,
        workspace: Path,
        logger: LoggerPort,
        clock: ClockPort,
        echo: Echo = print,
        env: Mapping[str, str] | None = None,
        skip_restore: bool = False,
    ) -> "Saver":
        """Restore the newest valid cache into the workspace, return its saver.

        A failing restore removes the half restored directory and is not
        fatal for the build.
        """
        expanded_path = self.expand_path(env)
        resolved_path = workspace / expanded_path
        log = self._log_to(echo)

        existing = self._resolve_valid_cache_with_fallback(caches_root, fallback_caches_root, workspace, log)
        if existing is None:
            log("Skip restoring cache as no up-to-date cache exists")
            return Saver(self, expanded_path, logger, clock)

        if skip_restore:
            log("Skip restoring cache due skipRestore parameter")
            return Saver(self, expanded_path, logger, clock)

        log("Restoring cache...")
        start = clock.now()
        try:
            existing.restore(resolved_path, workspace)
            elapsed_ms = int((clock.now() - start).total_seconds() * 1000)
            log(f"Cache restored in {elapsed_ms}ms")
        except Exception as e:
            log(f"Failed to restore cache, cleaning up {self.path}...")
            logger.error("Cache restore failed", path=self.path, cache=str(existing.cache), error=str(e))
            shutil.rmtree(resolved_path, ignore_errors=True)

        return Saver(self, expanded_path, logger, clock)

    def _resolve_valid_cache_with_fallback(
        self,
        caches_root: ObjectPath,
        fallback_caches_root: ObjectPath | None,
        workspace: Path,
        log: Echo,
    ) -> ExistingCache | None:
        log("Searching cache in job specific caches...")
        cache = self.resolve_valid_cache(caches_root, workspace, log)
        if cache is not None:
            log("Found cache in job specific caches")
            return cache

        log("Searching cache in default caches...")
        cache = self.resolve_valid_cache(fallback_caches_root, workspace, log)
        if cache is not None:
            log("Found cache in default caches")
            return cache

        return None

    def resolve_valid_cache(
        self, caches_root: ObjectPath | None, workspace: Path, log: Echo
    ) -> ExistingCache | None:
        if caches_root is None:
            return None
        existing = self.resolve_existing_cache(caches_root)
        if existing is None or not existing.compression_method.supported:
            return None

        if not self.cache_validity_deciding_file:
            return existing

        if not self._validity_deciding_files(workspace):
            log(
                "cacheValidityDecidingFile configured, but file(s) not present in workspace"
                " - considering cache anyway"
            )
            return existing

        return None if self._is_outdated(caches_root, workspace, log) else existing

    def resolve_existing_cache(self, caches_root: ObjectPath | None) -> ExistingCache | None:
        """Find a stored archive of this cache in any compression method."""
        if caches_root is None:
            return None
        for method in CompressionMethod:
            cache = self.cache_path(caches_root, method)
            if cache.exists():
                return ExistingCache(cache, method)
        return None

    def cache_path(self, caches_root: ObjectPath, method: CompressionMethod) -> ObjectPath:
        return caches_root.child(method.strategy.create_cache_name(self.create_cache_base_name()))

    def hash_file_path(self, caches_root: ObjectPath) -> ObjectPath:
        return caches_root.child(self.create_cache_base_name() + HASH_FILE_EXTENSION)

    def _is_outdated(self, caches_root: ObjectPath, workspace: Path, log: Echo) -> bool:
        previous_hash_file = self.hash_file_path(caches_root)
        if not previous_hash_file.exists():
            log("cacheValidityDecidingFile configured, but previous hash not available - cache outdated")
            return True

        with create_temp_file(workspace, HASH_FILE_EXTENSION) as tmp:
            previous_hash_file.copy_to(tmp)
            previous_hash = tmp.read_text(encoding="utf-8")

        if previous_hash != self.current_validity_hash(workspace, log):
            log("cacheValidityDecidingFile configured, but previous hash does not match - cache outdated")
            return True
        return False

    def _validity_deciding_files(self, workspace: Path) -> list[Path]:
        includes: list[str] = []
        excludes: list[str] = []
        for pattern in split_patterns(self.cache_validity_deciding_file):
            if pattern.startswith("!"):
                excludes.append(pattern[1:])
            else:
                includes.append(pattern)
        if not includes:
            return []
        path_filter = PathFilter(",".join(includes), ",".join(excludes))
        return [path for path, _ in path_filter.scan(workspace)]

    def current_validity_hash(self, workspace: Path, log: Echo | None = None) -> str:
        files = self._validity_deciding_files(workspace)
        if not files:
            raise ValueError(
                f"path {self.cache_validity_deciding_file} cannot be resolved within the current workspace"
            )
        digest = md5_of_files(files)
        if log is not None:
            log(
                f"got hash {digest} for cacheValidityDecidingFile(s) - actual file(s): "
                + ", ".join(str(f) for f in files)
            )
        return digest

    def _log_to(self, echo: Echo) -> Echo:
        identifier = self.path if self.cache_name is None else f"{self.path} ({self.cache_name})"
        prefix = f"[Cache for {identifier} with id {derive_cache_path(self.path)}] "

        def log(message: str) -> None:
            echo(prefix + message)

        return log

    def __repr__(self) -> str:
        return (
            f"ArbitraryFileCache(path={self.path!r}, includes={self.includes!r}, "
            f"compression_method={self.compression_method.name}, cache_name={self.cache_name!r})"
        )


class Saver:
    """Writes one cache back to the store after the build."""

    def __init__(
        self, cache: ArbitraryFileCache, expanded_path: str, logger: LoggerPort, clock: ClockPort
    ):
        self.cache = cache
        self.expanded_path = expanded_path
        self.logger = logger
        self.clock = clock

    def calculate_size(self, workspace: Path) -> int:
        """Local size of the directory that would be cached."""
        return directory_size(workspace / self.expanded_path, self.cache.path_filter)

    def save(
        self,
        caches_root: ObjectPath,
        default_caches_root: ObjectPath | None,
        workspace: Path,
        echo: Echo = print,
    ) -> bool:
        """Store the directory unless an up-to-date cache already exists.

        Returns True when a new archive was written. Failures while creating
        the archive are logged and do not fail the build.
        """
        cache = self.cache
        log = cache._log_to(echo)
        resolved_path = workspace / self.expanded_path
        if not resolved_path.exists():
            log("Cannot create cache as the path does not exist")
            return False

        if cache.cache_validity_deciding_file:
            if cache.resolve_valid_cache(default_caches_root, workspace, log) is not None:
                log("Skip cache creation as the default cache is still valid")
                return False
            if cache.resolve_valid_cache(caches_root, workspace, log) is not None:
                log("Skip cache creation as the cache is up-to-date")
                return False

        existing = cache.resolve_existing_cache(caches_root)
        if existing is not None and existing.compression_method is not cache.compression_method:
            log("Delete existing cache as the compression method has been changed")
            existing.cache.delete_recursive()

        target = cache.cache_path(caches_root, cache.compression_method)
        log("Creating cache...")
        start = self.clock.now()
        try:
            cache.compression_method.strategy.cache(resolved_path, cache.path_filter, target, workspace)
            if cache.cache_validity_deciding_file and cache._validity_deciding_files(workspace):
                self._update_validity_hash(caches_root, workspace, log)
        except Exception as e:
            log("Failed to create cache")
            self.logger.error("Cache creation failed", path=cache.path, cache=str(target), error=str(e))
            return False

        elapsed_ms = int((self.clock.now() - start).total_seconds() * 1000)
        log(f"Cache created in {elapsed_ms}ms")
        return True

    def _update_validity_hash(self, caches_root: ObjectPath, workspace: Path, log: Echo) -> None:
        with create_temp_file(workspace, HASH_FILE_EXTENSION) as tmp:
            tmp.write_text(self.cache.current_validity_hash(workspace, log), encoding="utf-8")
            self.cache.hash_file_path(caches_root).copy_from(tmp)
