"""S3 storage adapter."""

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from ..core.errors import StorageError
from ..ports.storage import ObjectHead

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client

NOT_FOUND_CODES = ("404", "NoSuchKey", "NoSuchBucket", "NotFound")


def _split_key(key: str) -> tuple[str, str]:
    """Split ``bucket/key`` into its parts."""
    parts = key.split("/", 1)
    if len(parts) != 2 or not parts[0]:
        raise ValueError(f"Invalid key: {key}")
    return parts[0], parts[1]


def _is_not_found(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in NOT_FOUND_CODES


class S3StorageAdapter:
    """S3 implementation of StoragePort."""

    def __init__(
        self,
        client: "S3Client | None" = None,
        endpoint_url: str | None = None,
        region: str | None = None,
        profile: str | None = None,
        max_retries: int = 5,
    ):
        """Initialize with an S3 client.

        Args:
            client: Pre-built boto3 client. Built from the other arguments if None.
            endpoint_url: Custom endpoint for S3-compatible stores (MinIO, SeaweedFS, ...)
            region: AWS region
            profile: Named AWS profile
            max_retries: Retry attempts handled by botocore
        """
        if client is None:
            session = boto3.Session(profile_name=profile) if profile else boto3.Session()
            client = session.client(
                "s3",
                endpoint_url=endpoint_url or os.environ.get("AWS_ENDPOINT_URL"),
                region_name=region,
                config=Config(
                    s3={"addressing_style": "path"},
                    retries={"max_attempts": max_retries, "mode": "standard"},
                ),
            )
        self.client = client

    def head(self, key: str) -> ObjectHead | None:
        """Get object metadata."""
        bucket, object_key = _split_key(key)
        try:
            response = self.client.head_object(Bucket=bucket, Key=object_key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise
        return ObjectHead(
            key=object_key,
            size=response["ContentLength"],
            etag=response.get("ETag", "").strip('"'),
            last_modified=response["LastModified"],
            metadata=dict(response.get("Metadata", {})),
        )

    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        max_keys: int = 1000,
        continuation_token: str | None = None,
    ) -> dict[str, Any]:
        """List one page of objects (ListObjectsV2)."""
        params: dict[str, Any] = {"Bucket": bucket, "MaxKeys": max_keys}
        if prefix:
            params["Prefix"] = prefix
        if continuation_token:
            params["ContinuationToken"] = continuation_token

        response = self.client.list_objects_v2(**params)

        objects = [
            ObjectHead(
                key=content["Key"],
                size=content.get("Size", 0),
                etag=content.get("ETag", "").strip('"'),
                last_modified=content["LastModified"],
            )
            for content in response.get("Contents", [])
            if "Key" in content
        ]
        return {
            "objects": objects,
            "is_truncated": response.get("IsTruncated", False),
            "next_continuation_token": response.get("NextContinuationToken"),
        }

    def get(self, key: str) -> BinaryIO:
        """Get object content as a stream."""
        bucket, object_key = _split_key(key)
        response = self.client.get_object(Bucket=bucket, Key=object_key)
        return response["Body"]  # type: ignore[return-value]

    def put(self, key: str, body: BinaryIO | Path | bytes, metadata: dict[str, str]) -> None:
        """Put object with metadata.

        Streams and paths go through the managed transfer so large objects
        are uploaded as multipart.
        """
        bucket, object_key = _split_key(key)
        extra_args = {"Metadata": metadata}
        if isinstance(body, bytes):
            self.client.put_object(Bucket=bucket, Key=object_key, Body=body, Metadata=metadata)
        elif isinstance(body, Path):
            self.client.upload_file(str(body), bucket, object_key, ExtraArgs=extra_args)
        else:
            self.client.upload_fileobj(body, bucket, object_key, ExtraArgs=extra_args)

    def copy_with_metadata(self, key: str, metadata: dict[str, str]) -> None:
        """Rewrite user metadata by copying the object onto itself."""
        bucket, object_key = _split_key(key)
        self.client.copy_object(
            Bucket=bucket,
            Key=object_key,
            CopySource={"Bucket": bucket, "Key": object_key},
            Metadata=metadata,
            MetadataDirective="REPLACE",
        )

    def download_file(self, key: str, target: Path) -> None:
        """Download an object into a local file."""
        bucket, object_key = _split_key(key)
        self.client.download_file(bucket, object_key, str(target))

    def delete_objects(self, bucket: str, keys: list[str]) -> list[str]:
        """Delete a batch of at most 1000 keys."""
        if not keys:
            return []
        response = self.client.delete_objects(
            Bucket=bucket,
            Delete={"Objects": [{"Key": key} for key in keys], "Quiet": False},
        )
        errors = response.get("Errors", [])
        if errors:
            first = errors[0]
            raise StorageError(
                f"Failed to delete {len(errors)} object(s), first: "
                f"{first.get('Key')} ({first.get('Code')}: {first.get('Message')})"
            )
        return [deleted["Key"] for deleted in response.get("Deleted", []) if "Key" in deleted]

    def head_bucket(self, bucket: str) -> bool:
        """Check that the bucket exists and is accessible."""
        try:
            self.client.head_bucket(Bucket=bucket)
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise
        return True
