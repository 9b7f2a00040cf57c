import io
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from botocore.exceptions import ClientError

from buildcache.adapters import LocalStorageAdapter, NoopMetricsAdapter, S3StorageAdapter
from buildcache.core.models import StorageScope
from buildcache.core.repository import ObjectRepository

BUCKET = "caches"
START = datetime(2024, 1, 1, tzinfo=UTC)


class FixedClock:
    def __init__(self, now: datetime = START):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class RecordingLogger:
    """LoggerPort that keeps records in memory."""

    def __init__(self):
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def _record(self, level: str, message: str, **kwargs: Any) -> None:
        self.records.append((level, message, kwargs))

    def debug(self, message: str, **kwargs: Any) -> None:
        self._record("debug", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._record("info", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._record("warning", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._record("error", message, **kwargs)

    def log_operation(self, op, key, scope, sizes, durations, **kwargs: Any) -> None:
        self._record("info", f"Operation: {op}", key=key, scope=scope, **kwargs)

    def messages(self, level: str | None = None) -> list[str]:
        return [m for lvl, m, _ in self.records if level is None or lvl == level]


class RecordingMetrics(NoopMetricsAdapter):
    def __init__(self):
        self.counters: dict[str, int] = {}
        self.gauges: dict[str, float] = {}
        self.timings: dict[str, float] = {}

    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        self.counters[name] = self.counters.get(name, 0) + value

    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        self.gauges[name] = value

    def timing(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        self.timings[name] = value


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "Not Found"}}, operation)


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client.

    Every write advances the store's own clock by one second so objects
    get distinct LastModified values in write order.
    """

    def __init__(self, buckets=(BUCKET,)):
        self.buckets = set(buckets)
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[str] = []
        self.clock = START
        self.page_token_broken = False
        self._lock = threading.Lock()

    def _tick(self) -> datetime:
        self.clock += timedelta(seconds=1)
        return self.clock

    def _check_bucket(self, bucket: str, operation: str) -> None:
        if bucket not in self.buckets:
            raise _client_error("NoSuchBucket", operation)

    def _store(self, bucket: str, key: str, data: bytes, metadata: dict[str, str]) -> None:
        self._check_bucket(bucket, "PutObject")
        with self._lock:
            self.objects[(bucket, key)] = {
                "Body": data,
                "Metadata": dict(metadata),
                "LastModified": self._tick(),
            }

    def _get(self, bucket: str, key: str, operation: str) -> dict[str, Any]:
        self._check_bucket(bucket, operation)
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise _client_error("404" if operation == "HeadObject" else "NoSuchKey", operation) from None

    def head_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self.calls.append("head_object")
        obj = self._get(Bucket, Key, "HeadObject")
        return {
            "ContentLength": len(obj["Body"]),
            "ETag": f'"{hash(obj["Body"]) & 0xFFFFFFFF:x}"',
            "LastModified": obj["LastModified"],
            "Metadata": dict(obj["Metadata"]),
        }

    def list_objects_v2(
        self,
        Bucket: str,
        MaxKeys: int = 1000,
        Prefix: str = "",
        ContinuationToken: str | None = None,
    ) -> dict[str, Any]:
        self.calls.append("list_objects_v2")
        self._check_bucket(Bucket, "ListObjectsV2")
        keys = sorted(k for b, k in self.objects if b == Bucket and k.startswith(Prefix))
        if ContinuationToken:
            keys = [k for k in keys if k > ContinuationToken]
        page = keys[:MaxKeys]
        truncated = len(keys) > MaxKeys
        response: dict[str, Any] = {
            "Contents": [
                {
                    "Key": k,
                    "Size": len(self.objects[(Bucket, k)]["Body"]),
                    "LastModified": self.objects[(Bucket, k)]["LastModified"],
                    "ETag": '"etag"',
                }
                for k in page
            ],
            "IsTruncated": truncated,
        }
        if truncated and not self.page_token_broken:
            response["NextContinuationToken"] = page[-1]
        return response

    def get_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self.calls.append("get_object")
        obj = self._get(Bucket, Key, "GetObject")
        return {"Body": io.BytesIO(obj["Body"])}

    def put_object(self, Bucket: str, Key: str, Body: bytes, Metadata: dict[str, str]) -> dict:
        self.calls.append("put_object")
        self._store(Bucket, Key, Body, Metadata)
        return {}

    def upload_file(self, Filename: str, Bucket: str, Key: str, ExtraArgs=None) -> None:
        self.calls.append("upload_file")
        self._store(Bucket, Key, Path(Filename).read_bytes(), (ExtraArgs or {}).get("Metadata", {}))

    def upload_fileobj(self, Fileobj, Bucket: str, Key: str, ExtraArgs=None) -> None:
        self.calls.append("upload_fileobj")
        self._store(Bucket, Key, Fileobj.read(), (ExtraArgs or {}).get("Metadata", {}))

    def copy_object(self, Bucket, Key, CopySource, Metadata, MetadataDirective) -> dict:
        self.calls.append("copy_object")
        source = self._get(CopySource["Bucket"], CopySource["Key"], "CopyObject")
        assert MetadataDirective == "REPLACE"
        self._store(Bucket, Key, source["Body"], Metadata)
        return {}

    def download_file(self, Bucket: str, Key: str, Filename: str) -> None:
        self.calls.append("download_file")
        obj = self._get(Bucket, Key, "HeadObject")
        Path(Filename).write_bytes(obj["Body"])

    def delete_objects(self, Bucket: str, Delete: dict[str, Any]) -> dict[str, Any]:
        self.calls.append("delete_objects")
        self._check_bucket(Bucket, "DeleteObjects")
        assert len(Delete["Objects"]) <= 1000
        deleted = []
        with self._lock:
            for entry in Delete["Objects"]:
                if self.objects.pop((Bucket, entry["Key"]), None) is not None:
                    deleted.append({"Key": entry["Key"]})
        return {"Deleted": deleted}

    def head_bucket(self, Bucket: str) -> dict:
        self.calls.append("head_bucket")
        if Bucket not in self.buckets:
            raise _client_error("404", "HeadBucket")
        return {}

    def keys(self, bucket: str = BUCKET) -> list[str]:
        return sorted(k for b, k in self.objects if b == bucket)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def logger():
    return RecordingLogger()


@pytest.fixture
def metrics():
    return RecordingMetrics()


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def s3_storage(s3_client):
    return S3StorageAdapter(client=s3_client)


@pytest.fixture
def local_storage(tmp_path):
    (tmp_path / "store" / BUCKET).mkdir(parents=True)
    return LocalStorageAdapter(tmp_path / "store")


@pytest.fixture
def scope():
    return StorageScope(BUCKET, "ci/job/cache")


@pytest.fixture
def repository(s3_storage, scope, clock, logger):
    return ObjectRepository(s3_storage, scope, clock, logger)


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


def make_tree(base: Path, files: dict[str, str]) -> Path:
    """Create files below ``base`` from a ``{relative path: content}`` mapping."""
    for relative, content in files.items():
        path = base / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return base


@pytest.fixture
def tree():
    return make_tree
