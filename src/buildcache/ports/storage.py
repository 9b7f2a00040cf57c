"""Storage port interface."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Protocol


@dataclass
class ObjectHead:
    """S3 object metadata."""

    key: str
    size: int
    etag: str
    last_modified: datetime
    metadata: dict[str, str] = field(default_factory=dict)


class StoragePort(Protocol):
    """Port for object store operations.

    Full keys are given as ``bucket/key``.
    """

    def head(self, key: str) -> ObjectHead | None:
        """Get object metadata, or None if the object does not exist."""
        ...

    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        max_keys: int = 1000,
        continuation_token: str | None = None,
    ) -> dict[str, Any]:
        """List one page of objects.

        Returns a dict with ``objects`` (list of ObjectHead), ``is_truncated``
        and ``next_continuation_token``.
        """
        ...

    def get(self, key: str) -> BinaryIO:
        """Get object content as a stream."""
        ...

    def put(self, key: str, body: BinaryIO | Path | bytes, metadata: dict[str, str]) -> None:
        """Put object with metadata."""
        ...

    def copy_with_metadata(self, key: str, metadata: dict[str, str]) -> None:
        """Copy an object onto itself replacing its user metadata."""
        ...

    def download_file(self, key: str, target: Path) -> None:
        """Download an object into a local file."""
        ...

    def delete_objects(self, bucket: str, keys: list[str]) -> list[str]:
        """Delete a batch of keys, returning the keys reported as deleted."""
        ...

    def head_bucket(self, bucket: str) -> bool:
        """Return False if the bucket does not exist. Other errors propagate."""
        ...
