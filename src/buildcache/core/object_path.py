"""Path-like handle on a key (or key prefix) of the object store."""

import threading
from pathlib import Path

from ..ports import ClockPort, LoggerPort, ObjectHead, StoragePort
from .errors import NotFoundError
from .models import StorageScope
from .patterns import PathFilter
from .repository import ObjectRepository, to_millis
from .transfers import Destination, Downloads, Uploads


class ObjectPath:
    """An object key that can also act as a directory of objects.

    ``exists()`` is true for an object stored exactly at the path as well
    as for any object below ``path/``.
    """

    def __init__(
        self,
        storage: StoragePort,
        scope: StorageScope,
        clock: ClockPort,
        logger: LoggerPort,
        cancel: threading.Event | None = None,
    ):
        self.storage = storage
        self.scope = scope
        self.clock = clock
        self.logger = logger
        self.cancel = cancel
        self.repository = ObjectRepository(storage, scope, clock, logger)

    @property
    def bucket(self) -> str:
        return self.scope.bucket

    @property
    def key(self) -> str:
        return self.scope.prefix

    @property
    def full_key(self) -> str:
        return f"{self.scope.bucket}/{self.scope.prefix}"

    def child(self, name: str) -> "ObjectPath":
        return ObjectPath(self.storage, self.scope.child(name), self.clock, self.logger, self.cancel)

    def head(self) -> ObjectHead | None:
        return self.storage.head(self.full_key)

    def exists(self) -> bool:
        if self.head() is not None:
            return True
        page = self.storage.list_objects(self.bucket, prefix=f"{self.key}/", max_keys=1)
        return bool(page.get("objects"))

    def delete_recursive(self) -> int:
        """Delete the object at this path and everything below it."""
        deleted = 0
        if self.head() is not None:
            deleted += len(self.storage.delete_objects(self.bucket, [self.key]))
        deleted += self.repository.delete_prefix()
        return deleted

    def copy_from(self, file: Path) -> None:
        """Upload a single local file to this path."""
        self.logger.debug("Uploading file", file=str(file), key=self.full_key)
        self.storage.put(self.full_key, Path(file), {})

    def copy_to(self, file: Path) -> None:
        """Download the object at this path into a local file."""
        if self.head() is None:
            raise NotFoundError(f"Object not found: {self.full_key}")
        file.parent.mkdir(parents=True, exist_ok=True)
        self.storage.download_file(self.full_key, file)

    def copy_recursive_from(
        self,
        source: Path,
        includes: str | None = None,
        excludes: str | None = None,
        use_default_excludes: bool = True,
    ) -> int:
        """Upload selected files below ``source`` into this path.

        Files whose remote copy is at least as new as the local one are
        skipped. Returns the number of uploaded files.
        """
        path_filter = PathFilter(includes, excludes, use_default_excludes)
        remote = {self.scope.relative(obj.key): obj for obj in self.repository.iter_objects()}

        with Uploads(self.storage, self.logger, cancel=self.cancel) as uploads:
            for path, relative in path_filter.scan(source):
                summary = remote.get(relative)
                if summary is not None and path.stat().st_mtime_ns // 1_000_000 <= to_millis(
                    summary.last_modified
                ):
                    continue
                uploads.start_upload(
                    path, open(path, "rb"), Destination.of(self.full_key, relative)
                )
                if uploads.count() > Uploads.SOFT_LIMIT:
                    uploads.finish()
            uploads.finish()
            return uploads.total

    def copy_recursive_to(
        self,
        target: Path,
        includes: str | None = None,
        excludes: str | None = None,
        use_default_excludes: bool = True,
    ) -> int:
        """Download selected objects below this path into ``target``.

        Returns the number of downloaded files.
        """
        path_filter = PathFilter(includes, excludes, use_default_excludes)
        prefix = f"{self.key}/"

        with Downloads(self.storage, self.logger, cancel=self.cancel) as downloads:
            for obj in self.repository.iter_objects():
                relative = obj.key[len(prefix) :]
                if path_filter.matches(relative):
                    downloads.start_download(target, prefix, obj, self.bucket)
            downloads.finish()
            return downloads.total

    def __str__(self) -> str:
        return self.full_key
