"""Local filesystem storage adapter.

Emulates the object store protocol on a directory so that builds running on
the same machine can share a cache without a network store. Layout::

    <root>/<bucket>/objects/<quoted key>
    <root>/<bucket>/meta/<quoted key>.json
    <root>/<bucket>/tmp/       (uploads in progress)
"""

import json
import os
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, BinaryIO
from urllib.parse import quote, unquote

from ..core.errors import NotFoundError
from ..ports.storage import ObjectHead


class LocalStorageAdapter:
    """Filesystem implementation of StoragePort."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _bucket_dir(self, bucket: str) -> Path:
        return self.root / bucket

    def _paths(self, key: str) -> tuple[Path, Path]:
        bucket, _, object_key = key.partition("/")
        if not bucket or not object_key:
            raise ValueError(f"Invalid key: {key}")
        name = quote(object_key, safe="")
        bucket_dir = self._bucket_dir(bucket)
        return bucket_dir / "objects" / name, bucket_dir / "meta" / f"{name}.json"

    def _read_meta(self, meta_path: Path) -> dict[str, str]:
        if not meta_path.exists():
            return {}
        with open(meta_path, encoding="utf-8") as f:
            data: dict[str, str] = json.load(f)
        return data

    def _write_meta(self, meta_path: Path, metadata: dict[str, str]) -> None:
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", dir=meta_path.parent, delete=False, encoding="utf-8"
        ) as tmp:
            json.dump(metadata, tmp)
        os.replace(tmp.name, meta_path)

    def _to_head(self, object_key: str, object_path: Path, metadata: dict[str, str]) -> ObjectHead:
        stat = object_path.stat()
        return ObjectHead(
            key=object_key,
            size=stat.st_size,
            etag=f"{stat.st_mtime_ns:x}-{stat.st_size:x}",
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            metadata=metadata,
        )

    def head(self, key: str) -> ObjectHead | None:
        """Get object metadata."""
        object_path, meta_path = self._paths(key)
        if not object_path.is_file():
            return None
        return self._to_head(key.split("/", 1)[1], object_path, self._read_meta(meta_path))

    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        max_keys: int = 1000,
        continuation_token: str | None = None,
    ) -> dict[str, Any]:
        """List one page of objects in key order.

        The continuation token is the last key of the previous page.
        """
        objects_dir = self._bucket_dir(bucket) / "objects"
        keys: list[str] = []
        if objects_dir.is_dir():
            keys = sorted(
                key
                for key in (unquote(entry.name) for entry in objects_dir.iterdir())
                if key.startswith(prefix)
            )
        if continuation_token:
            keys = [key for key in keys if key > continuation_token]

        page = keys[:max_keys]
        objects = []
        for key in page:
            object_path = objects_dir / quote(key, safe="")
            if object_path.is_file():
                objects.append(self._to_head(key, object_path, {}))

        is_truncated = len(keys) > max_keys
        return {
            "objects": objects,
            "is_truncated": is_truncated,
            "next_continuation_token": page[-1] if is_truncated else None,
        }

    def get(self, key: str) -> BinaryIO:
        """Open object content for reading."""
        object_path, _ = self._paths(key)
        if not object_path.is_file():
            raise NotFoundError(f"Object not found: {key}")
        return open(object_path, "rb")

    def put(self, key: str, body: BinaryIO | Path | bytes, metadata: dict[str, str]) -> None:
        """Write object atomically, then its metadata."""
        object_path, meta_path = self._paths(key)
        object_path.parent.mkdir(parents=True, exist_ok=True)
        staging = object_path.parent.parent / "tmp"
        staging.mkdir(exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=staging, delete=False) as tmp:
            try:
                if isinstance(body, bytes):
                    tmp.write(body)
                elif isinstance(body, Path):
                    with open(body, "rb") as src:
                        shutil.copyfileobj(src, tmp)
                else:
                    shutil.copyfileobj(body, tmp)
            except BaseException:
                tmp.close()
                os.unlink(tmp.name)
                raise
        os.replace(tmp.name, object_path)
        self._write_meta(meta_path, metadata)

    def copy_with_metadata(self, key: str, metadata: dict[str, str]) -> None:
        """Replace metadata; like an S3 self-copy this refreshes last-modified."""
        object_path, meta_path = self._paths(key)
        if not object_path.is_file():
            raise NotFoundError(f"Object not found: {key}")
        self._write_meta(meta_path, metadata)
        os.utime(object_path)

    def download_file(self, key: str, target: Path) -> None:
        """Copy an object into a local file."""
        object_path, _ = self._paths(key)
        if not object_path.is_file():
            raise NotFoundError(f"Object not found: {key}")
        shutil.copyfile(object_path, target)

    def delete_objects(self, bucket: str, keys: list[str]) -> list[str]:
        """Delete keys; absent keys are skipped and not reported."""
        deleted = []
        for key in keys:
            object_path, meta_path = self._paths(f"{bucket}/{key}")
            try:
                object_path.unlink()
            except FileNotFoundError:
                continue
            meta_path.unlink(missing_ok=True)
            deleted.append(key)
        return deleted

    def head_bucket(self, bucket: str) -> bool:
        """A bucket is a directory below the root."""
        return self._bucket_dir(bucket).is_dir()
