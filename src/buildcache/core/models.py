"""Core domain models."""

from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import quote

DEFAULT_FILTER = "**/*"


@dataclass(frozen=True)
class CacheItem:
    """A cached object as materialized from a store listing.

    Timestamps are unix epoch milliseconds.
    """

    key: str
    content_length: int
    last_modified: int
    last_access: int = 0


@dataclass(frozen=True)
class StorageScope:
    """Bucket/prefix namespace that keys are resolved and written in."""

    bucket: str
    prefix: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "prefix", self.prefix.strip("/"))

    @classmethod
    def for_job(cls, bucket: str, prefix: str, job: str) -> "StorageScope":
        """Cache scope of a job: ``<prefix>/<job>/cache``."""
        return cls(bucket, "/".join(p for p in (prefix.strip("/"), job.strip("/"), "cache") if p))

    @classmethod
    def for_branch(cls, bucket: str, prefix: str, job: str, branch: str) -> "StorageScope":
        """Cache scope of a sibling branch job, used as a fallback for new branches.

        ``job`` is the full name of a branch job (``folder/project/branch``),
        so the sibling lives next to it under the url-quoted branch name.
        """
        parent = job.strip("/").rsplit("/", 1)[0] if "/" in job.strip("/") else ""
        parts = (prefix.strip("/"), parent, quote(branch, safe=""), "cache")
        return cls(bucket, "/".join(p for p in parts if p))

    def key(self, name: str) -> str:
        """Object key of ``name`` inside this scope."""
        return f"{self.prefix}/{name}" if self.prefix else name

    def full_key(self, name: str) -> str:
        """``bucket/key`` form used by storage ports."""
        return f"{self.bucket}/{self.key(name)}"

    def relative(self, key: str) -> str:
        """Strip this scope's prefix from an object key."""
        if self.prefix and key.startswith(f"{self.prefix}/"):
            return key[len(self.prefix) + 1 :]
        return key

    def child(self, name: str) -> "StorageScope":
        return StorageScope(self.bucket, self.key(name.strip("/")))

    def __str__(self) -> str:
        return f"{self.bucket}/{self.prefix}" if self.prefix else self.bucket


@dataclass(frozen=True)
class RestoreKeySet:
    """Ordered candidate keys: the primary key first, then fallbacks."""

    keys: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.keys:
            raise ValueError("A restore key set needs at least the primary key")

    @classmethod
    def of(cls, key: str, restore_keys: Iterable[str] | None = None) -> "RestoreKeySet":
        """Build from a primary key and optional fallbacks; blank fallbacks are dropped."""
        if not key:
            raise ValueError("Cache key must not be empty")
        return cls((key, *(k for k in restore_keys or () if k)))

    @property
    def primary(self) -> str:
        return self.keys[0]

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys)

    def __len__(self) -> int:
        return len(self.keys)


class Outcome(Enum):
    """Outcome of a restore or save step."""

    RESTORED = "restored"
    NOT_RESTORED = "not_restored"
    SAVED = "saved"
    NOT_SAVED = "not_saved"
    EVICTED = "evicted"
    SKIPPED = "skipped"


@dataclass
class CacheResult:
    """Status lines of one cache operation plus timing info."""

    outcome: Outcome
    infos: list[str] = field(default_factory=list)
    key: str | None = None
    size: int = 0
    elapsed: float = 0.0

    def add_info(self, info: str) -> "CacheResult":
        self.infos.append(info)
        return self

    def print_infos(self, echo: Callable[[str], Any] = print) -> None:
        for info in self.infos:
            echo(info)

    @property
    def throughput(self) -> int:
        """Bytes per second, 0 if nothing was timed."""
        return int(self.size / self.elapsed) if self.elapsed > 0 else 0


def performance(size: int, elapsed: float) -> str:
    """Render transfer size, duration and speed as a status line."""
    speed = int(size / elapsed) if elapsed > 0 else size
    return f"{size} bytes in {elapsed:.2f} secs ({speed} bytes/sec)"


@dataclass(frozen=True)
class RestoreRequest:
    """Everything a worker needs to restore a cache into ``path``."""

    bucket: str
    prefix: str
    path: str
    restore_keys: Sequence[str]

    @property
    def scope(self) -> StorageScope:
        return StorageScope(self.bucket, self.prefix)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = "restore"
        data["restore_keys"] = list(self.restore_keys)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RestoreRequest":
        return cls(
            bucket=data["bucket"],
            prefix=data.get("prefix", ""),
            path=data["path"],
            restore_keys=tuple(data["restore_keys"]),
        )


@dataclass(frozen=True)
class BackupRequest:
    """Everything a worker needs to save ``path`` under ``key``."""

    bucket: str
    prefix: str
    path: str
    key: str
    filter: str = DEFAULT_FILTER

    @property
    def scope(self) -> StorageScope:
        return StorageScope(self.bucket, self.prefix)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = "backup"
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupRequest":
        return cls(
            bucket=data["bucket"],
            prefix=data.get("prefix", ""),
            path=data["path"],
            key=data["key"],
            filter=data.get("filter") or DEFAULT_FILTER,
        )
