"""Object repository: cache items stored in one bucket/prefix scope."""

import tempfile
from collections.abc import Iterable, Iterator, Sequence
from datetime import datetime
from types import TracebackType
from typing import BinaryIO

from ..ports import ClockPort, LoggerPort, ObjectHead, StoragePort
from .errors import NotFoundError
from .models import CacheItem, StorageScope

LAST_ACCESS = "last-access"
LIST_PAGE_SIZE = 1000
DELETE_BATCH_SIZE = 1000
SPOOL_MAX_SIZE = 16 * 1024 * 1024  # 16 MB


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class ObjectWriteStream:
    """Writable stream whose content becomes an object once closed.

    Data is spooled in memory (then on disk past 16 MB) and uploaded on a
    successful ``close()``. Leaving a ``with`` block through an exception
    discards the data, so no partial object is ever written.
    """

    def __init__(self, storage: StoragePort, full_key: str, metadata: dict[str, str]):
        self._storage = storage
        self._full_key = full_key
        self._metadata = metadata
        self._buffer = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
        self._closed = False
        self.bytes_written = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def writable(self) -> bool:
        return True

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to closed object stream")
        written = self._buffer.write(data)
        self.bytes_written += written
        return written

    def flush(self) -> None:
        self._buffer.flush()

    def close(self) -> None:
        """Upload the buffered content and release the buffer."""
        if self._closed:
            return
        self._closed = True
        try:
            self._buffer.seek(0)
            self._storage.put(self._full_key, self._buffer, self._metadata)  # type: ignore[arg-type]
        finally:
            self._buffer.close()

    def abort(self) -> None:
        """Discard buffered content without uploading."""
        if not self._closed:
            self._closed = True
            self._buffer.close()

    def __enter__(self) -> "ObjectWriteStream":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            self.abort()
        else:
            self.close()


class ObjectRepository:
    """Cache items of one storage scope.

    Keys passed to and returned from the repository are relative to the
    scope prefix.
    """

    def __init__(
        self,
        storage: StoragePort,
        scope: StorageScope,
        clock: ClockPort,
        logger: LoggerPort,
        page_size: int = LIST_PAGE_SIZE,
    ):
        self.storage = storage
        self.scope = scope
        self.clock = clock
        self.logger = logger
        self.page_size = page_size

    def exists(self, key: str) -> bool:
        """Return True if an object with exactly this key exists."""
        return self.storage.head(self.scope.full_key(key)) is not None

    def find_key(self, restore_keys: Iterable[str] | None) -> str | None:
        """Find the best matching key for an ordered list of restore keys.

        Restore keys do not have to be existing keys, they can also be
        prefixes of existing keys:

        1. the first restore key that exists as an exact key wins
        2. otherwise the first restore key that is a prefix of any key wins;
           among several keys sharing that prefix the latest modified one is
           returned

        Returns None if nothing matches at all.
        """
        if restore_keys is None:
            return None
        candidates = list(restore_keys)

        for restore_key in candidates:
            if restore_key and self.exists(restore_key):
                return restore_key

        for restore_key in candidates:
            key = self._find_key_by_prefix(restore_key)
            if key is not None:
                return key

        return None

    def list(self, prefix: str = "") -> Iterator[CacheItem]:
        """Lazily list all cache items, following truncated listings.

        Each call lists from scratch. Every item costs one HEAD request to
        read its last access timestamp.
        """
        for obj in self.iter_objects(prefix):
            head = self.storage.head(f"{self.scope.bucket}/{obj.key}")
            if head is None:
                # deleted between listing and HEAD
                continue
            yield CacheItem(
                key=self.scope.relative(obj.key),
                content_length=head.size,
                last_modified=to_millis(obj.last_modified),
                last_access=self.last_access_of(head),
            )

    def total_size(self, prefix: str = "") -> int:
        """Total size in bytes of all objects in the scope."""
        return sum(obj.size for obj in self.iter_objects(prefix))

    def delete(self, keys: Iterable[str]) -> int:
        """Bulk delete keys, returning how many the store reported as removed."""
        batch: list[str] = []
        deleted = 0
        for key in keys:
            batch.append(self.scope.key(key))
            if len(batch) == DELETE_BATCH_SIZE:
                deleted += len(self.storage.delete_objects(self.scope.bucket, batch))
                batch = []
        if batch:
            deleted += len(self.storage.delete_objects(self.scope.bucket, batch))
        return deleted

    def delete_prefix(self, prefix: str = "") -> int:
        """Recursively delete everything below ``prefix`` (the whole scope by default)."""
        keys = [self.scope.relative(obj.key) for obj in self.iter_objects(prefix)]
        deleted = self.delete(keys)
        self.logger.info(
            "Deleted objects", scope=str(self.scope), prefix=prefix, requested=len(keys), deleted=deleted
        )
        return deleted

    def content_length(self, key: str) -> int:
        head = self.storage.head(self.scope.full_key(key))
        if head is None:
            raise NotFoundError(f"Object not found: {self.scope.full_key(key)}")
        return head.size

    def head(self, key: str) -> ObjectHead | None:
        return self.storage.head(self.scope.full_key(key))

    def open(self, key: str) -> BinaryIO:
        """Open the content stream of an object. The caller closes it."""
        return self.storage.get(self.scope.full_key(key))

    def update_last_access(self, key: str) -> None:
        """Stamp the current time into the object's metadata.

        Object stores cannot patch metadata, so the object is copied onto
        itself with the replaced metadata; content stays the same.
        """
        full_key = self.scope.full_key(key)
        head = self.storage.head(full_key)
        if head is None:
            raise NotFoundError(f"Object not found: {full_key}")

        metadata = dict(head.metadata)
        metadata[LAST_ACCESS] = str(to_millis(self.clock.now()))
        self.storage.copy_with_metadata(full_key, metadata)
        self.logger.debug("Updated last access", key=full_key, last_access=metadata[LAST_ACCESS])

    def create_write_stream(
        self, key: str, metadata: dict[str, str] | None = None
    ) -> ObjectWriteStream:
        """Create a stream that writes an object once it is closed."""
        return ObjectWriteStream(self.storage, self.scope.full_key(key), dict(metadata or {}))

    def bucket_reachable(self) -> bool:
        """Return True if the bucket exists and is accessible.

        A missing bucket yields False, any other failure propagates.
        """
        return self.storage.head_bucket(self.scope.bucket)

    def _list_prefix(self, prefix: str) -> str:
        if prefix:
            return self.scope.key(prefix)
        return f"{self.scope.prefix}/" if self.scope.prefix else ""

    def _pages(self, prefix: str) -> Iterator[Sequence[ObjectHead]]:
        """Yield listing pages until one is not marked truncated."""
        list_prefix = self._list_prefix(prefix)
        token: str | None = None
        while True:
            page = self.storage.list_objects(
                bucket=self.scope.bucket,
                prefix=list_prefix,
                max_keys=self.page_size,
                continuation_token=token,
            )
            yield page.get("objects", [])

            if not page.get("is_truncated"):
                return

            token = page.get("next_continuation_token")
            if not token:
                # Truncated without a token would list the first page forever
                self.logger.warning(
                    "Listing marked truncated but has no continuation token",
                    scope=str(self.scope),
                    prefix=list_prefix,
                )
                return

    def iter_objects(self, prefix: str = "") -> Iterator[ObjectHead]:
        """Raw listing entries below ``prefix``, without per-object HEAD."""
        for page in self._pages(prefix):
            yield from page

    def _find_key_by_prefix(self, prefix: str | None) -> str | None:
        if not prefix:
            return None

        latest: ObjectHead | None = None
        for obj in self.iter_objects(prefix):
            if latest is None or obj.last_modified > latest.last_modified:
                latest = obj

        return self.scope.relative(latest.key) if latest is not None else None

    @staticmethod
    def last_access_of(head: ObjectHead) -> int:
        """Last access epoch millis from object metadata, 0 if missing or invalid."""
        value = head.metadata.get(LAST_ACCESS)
        if not value:
            return 0
        try:
            return int(value)
        except ValueError:
            return 0
