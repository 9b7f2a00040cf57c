"""Cache session: restore, run the build body, save."""

from collections.abc import Callable, Iterable
from contextlib import closing, nullcontext
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, ContextManager, Generic, TypeVar

from ..ports import ClockPort, LoggerPort, MetricsPort, StoragePort
from .archive import extract_tar, write_tar
from .errors import CacheSaveError
from .eviction import EvictionPolicy
from .locks import JobLocks
from .models import (
    DEFAULT_FILTER,
    BackupRequest,
    CacheResult,
    Outcome,
    RestoreKeySet,
    RestoreRequest,
    performance,
)
from .patterns import PathFilter
from .repository import ObjectRepository

T = TypeVar("T")


class SessionState(Enum):
    IDLE = "idle"
    RESTORING = "restoring"
    BODY_RUNNING = "body_running"
    SAVING = "saving"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SessionResult(Generic[T]):
    """Results of both cache steps plus the body's return value."""

    restore: CacheResult
    save: CacheResult
    value: T


class CacheSession:
    """Runs one build step wrapped in a cache restore and save.

    Status lines go to ``echo`` (the build log). A failing body is never
    followed by a save; its exception propagates unchanged.
    """

    def __init__(
        self,
        repository: ObjectRepository,
        clock: ClockPort,
        logger: LoggerPort,
        metrics: MetricsPort,
        eviction: EvictionPolicy | None = None,
        locks: JobLocks | None = None,
        job: str | None = None,
        echo: Callable[[str], Any] = print,
    ):
        self.repository = repository
        self.clock = clock
        self.logger = logger
        self.metrics = metrics
        self.eviction = eviction
        self.locks = locks
        self.job = job
        self.echo = echo
        self.state = SessionState.IDLE

    def restore(self, path: Path | str, restore_keys: Iterable[str]) -> CacheResult:
        """Restore the best matching cache into ``path``."""
        path = Path(path)
        scope = str(self.repository.scope)
        if path.exists() and not path.is_dir():
            return CacheResult(Outcome.NOT_RESTORED).add_info(
                "Cache not restored (path is not a directory)"
            )

        key = self.repository.find_key(restore_keys)
        if key is None:
            self.metrics.increment("buildcache.restore.miss", tags={"scope": scope})
            return CacheResult(Outcome.NOT_RESTORED).add_info("Cache not restored (no such key found)")

        self.logger.info("Starting restore", key=key, scope=scope, path=str(path))
        start = self.clock.now()
        with closing(self.repository.open(key)) as stream:
            extract_tar(stream, path)
        self.repository.update_last_access(key)
        size = self.repository.content_length(key)
        elapsed = (self.clock.now() - start).total_seconds()

        self.metrics.increment("buildcache.restore.hit", tags={"scope": scope})
        self.metrics.timing("buildcache.restore.duration", elapsed, tags={"scope": scope})
        self.logger.log_operation(
            op="restore",
            key=key,
            scope=scope,
            sizes={"content": size},
            durations={"total": elapsed},
        )
        return (
            CacheResult(Outcome.RESTORED, key=key, size=size, elapsed=elapsed)
            .add_info(f"Cache restored successfully ({key})")
            .add_info(performance(size, elapsed))
        )

    def save(self, path: Path | str, key: str, filter: str | None = None) -> CacheResult:
        """Archive ``path`` under ``key`` unless the key already exists."""
        path = Path(path)
        scope = str(self.repository.scope)
        if not path.exists():
            return CacheResult(Outcome.NOT_SAVED).add_info("Cache not saved (path not exists)")
        if not path.is_dir():
            return CacheResult(Outcome.NOT_SAVED).add_info("Cache not saved (path is not a directory)")

        if self.repository.exists(key):
            return CacheResult(Outcome.NOT_SAVED, key=key).add_info(
                f"Cache not saved ({key} already exists)"
            )

        if self.eviction is not None:
            decision = self.eviction.check()
            if decision.exceeded:
                self.eviction.evict()
                return CacheResult(Outcome.EVICTED, key=key).add_info(decision.message)

        self.logger.info("Starting save", key=key, scope=scope, path=str(path))
        start = self.clock.now()
        with self.repository.create_write_stream(key) as out:
            files = write_tar(path, out, PathFilter(filter or DEFAULT_FILTER))  # type: ignore[arg-type]
        size = self.repository.content_length(key)
        elapsed = (self.clock.now() - start).total_seconds()

        self.metrics.timing("buildcache.save.duration", elapsed, tags={"scope": scope})
        self.metrics.gauge("buildcache.transfer.files", files, tags={"scope": scope})
        self.logger.log_operation(
            op="save",
            key=key,
            scope=scope,
            sizes={"content": size},
            durations={"total": elapsed},
            files=files,
        )
        return (
            CacheResult(Outcome.SAVED, key=key, size=size, elapsed=elapsed)
            .add_info(f"Cache saved successfully ({key})")
            .add_info(performance(size, elapsed))
        )

    def execute(
        self,
        path: Path | str,
        key: str,
        restore_keys: Iterable[str] | None,
        body: Callable[[], T],
        filter: str | None = None,
    ) -> SessionResult[T]:
        """Restore, run ``body``, then save.

        Raises whatever ``body`` raises, unchanged. A failing save raises
        ``CacheSaveError``.
        """
        keys = RestoreKeySet.of(key, restore_keys)
        lock = self._lock()

        self.state = SessionState.RESTORING
        try:
            with lock:
                restore_result = self.restore(path, keys)
        except BaseException:
            self.state = SessionState.FAILED
            raise
        restore_result.print_infos(self.echo)

        self.state = SessionState.BODY_RUNNING
        try:
            value = body()
        except BaseException:
            self.state = SessionState.FAILED
            self.echo("Cache not saved (inner-step execution failed)")
            raise

        self.state = SessionState.SAVING
        try:
            with lock:
                save_result = self.save(path, key, filter)
        except Exception as e:
            self.state = SessionState.FAILED
            raise CacheSaveError(f"Failed to save cache {key}: {e}") from e
        save_result.print_infos(self.echo)

        self.state = SessionState.DONE
        return SessionResult(restore=restore_result, save=save_result, value=value)

    def _lock(self) -> ContextManager[Any]:
        if self.locks is None or not self.job:
            return nullcontext()
        return self.locks.lock_for(self.job)


def request_from_dict(data: dict[str, Any]) -> RestoreRequest | BackupRequest:
    """Decode a request message produced by ``to_dict()``."""
    kind = data.get("type")
    if kind == "restore":
        return RestoreRequest.from_dict(data)
    if kind == "backup":
        return BackupRequest.from_dict(data)
    raise ValueError(f"Unknown request type: {kind!r}")


def execute_request(
    request: RestoreRequest | BackupRequest,
    storage: StoragePort,
    clock: ClockPort,
    logger: LoggerPort,
    metrics: MetricsPort,
    max_bytes: int = 0,
) -> CacheResult:
    """Run a restore or backup request where the files live."""
    repository = ObjectRepository(storage, request.scope, clock, logger)
    eviction = EvictionPolicy(repository, max_bytes, logger, metrics) if max_bytes > 0 else None
    session = CacheSession(repository, clock, logger, metrics, eviction=eviction)

    if isinstance(request, RestoreRequest):
        return session.restore(request.path, request.restore_keys)
    return session.save(request.path, request.key, request.filter)
