"""Concurrent multi-file transfers with a join barrier."""

import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from ..ports import LoggerPort, ObjectHead, StoragePort
from .errors import TransferInterrupted
from .repository import to_millis

DEFAULT_MAX_WORKERS = 10
POLL_INTERVAL = 0.1  # seconds between cancellation checks


@dataclass(frozen=True)
class Destination:
    """Where a file ends up: bucket plus object key.

    ``Destination.of("bucket/some/prefix", "dir/file")`` puts ``dir/file``
    below ``some/prefix`` in ``bucket``. Windows separators are normalized.
    """

    bucket: str
    key: str

    @classmethod
    def of(cls, bucket_path: str, file_name: str) -> "Destination":
        bucket, _, prefix = bucket_path.strip("/").partition("/")
        prefix = prefix.strip("/")
        file_name = file_name.replace("\\", "/").lstrip("/")
        return cls(bucket, f"{prefix}/{file_name}" if prefix else file_name)

    @property
    def full_key(self) -> str:
        return f"{self.bucket}/{self.key}"

    def __str__(self) -> str:
        return self.full_key


@dataclass
class PendingTransfer:
    """A started transfer. ``stream`` is owned by the tracker until it completes."""

    file: Path
    target: str
    future: Future[Any]
    stream: BinaryIO | None = None
    remote_timestamp: int = 0  # epoch millis, downloads only
    part: Path | None = None  # downloads are written here, then renamed to ``file``


class _TransferTracker:
    """Runs transfers on a thread pool and joins them in ``finish()``.

    ``cancel`` is the host's cancellation flag. When it is set while
    ``finish()`` waits, every in-flight transfer is cleaned up before
    ``TransferInterrupted`` is raised; the flag is left set.
    """

    def __init__(
        self,
        storage: StoragePort,
        logger: LoggerPort,
        cancel: threading.Event | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.storage = storage
        self.logger = logger
        self.cancel = cancel or threading.Event()
        self.poll_interval = poll_interval
        self.total = 0
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="buildcache")
        self._pending: dict[Future[Any], PendingTransfer] = {}
        self._abandoned: list[PendingTransfer] = []
        self._lock = threading.Lock()

    def count(self) -> int:
        """Number of transfers started since the last ``finish()``."""
        with self._lock:
            return len(self._pending)

    def _track(self, transfer: PendingTransfer) -> None:
        with self._lock:
            self._pending[transfer.future] = transfer
        self.total += 1

    def finish(self) -> None:
        """Block until every started transfer completed.

        The first transfer failure is raised after all remaining transfers
        were cleaned up.
        """
        try:
            self._await_all()
        except BaseException:
            self.cleanup()
            raise

    def _await_all(self) -> None:
        with self._lock:
            remaining = set(self._pending)
        while remaining:
            if self.cancel.is_set():
                raise TransferInterrupted(f"Interrupted with {len(remaining)} transfers in flight")
            done, remaining = wait(remaining, timeout=self.poll_interval, return_when=FIRST_COMPLETED)
            for future in done:
                with self._lock:
                    transfer = self._pending.pop(future, None)
                if transfer is None:
                    continue
                try:
                    future.result()
                    self._completed(transfer)
                except BaseException:
                    self._discard(transfer)
                    raise
                finally:
                    self._close_stream(transfer)

    def cleanup(self) -> None:
        """Cancel queued transfers and close every still open stream once."""
        with self._lock:
            transfers = list(self._pending.values())
            self._pending.clear()
        for transfer in transfers:
            transfer.future.cancel()
            self._close_stream(transfer)
            self._discard(transfer)
        self._abandoned.extend(transfers)

    def shutdown(self) -> None:
        """Cancel queued transfers and join the worker threads.

        Transfers that were already running when they got abandoned are
        discarded again once their thread is done.
        """
        self.cleanup()
        self._executor.shutdown(wait=True, cancel_futures=True)
        abandoned, self._abandoned = self._abandoned, []
        for transfer in abandoned:
            self._discard(transfer)

    def _close_stream(self, transfer: PendingTransfer) -> None:
        stream, transfer.stream = transfer.stream, None
        if stream is None:
            return
        try:
            stream.close()
        except OSError as e:
            self.logger.warning("Failed to close stream", file=str(transfer.file), error=str(e))

    def _completed(self, transfer: PendingTransfer) -> None:
        """Hook run after a transfer finished successfully."""

    def _discard(self, transfer: PendingTransfer) -> None:
        """Hook run for a transfer that failed or was abandoned."""

    def __enter__(self) -> "_TransferTracker":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()


class Uploads(_TransferTracker):
    """Tracks file uploads. Callers drain with ``finish()`` past ``SOFT_LIMIT``."""

    SOFT_LIMIT = 20

    def start_upload(
        self,
        file: Path,
        stream: BinaryIO,
        destination: Destination,
        metadata: dict[str, str] | None = None,
    ) -> PendingTransfer:
        """Start uploading ``stream`` (the content of ``file``). Does not block."""
        self.logger.debug("Start uploading", file=str(file), destination=str(destination))
        future = self._executor.submit(
            self.storage.put, destination.full_key, stream, dict(metadata or {})
        )
        transfer = PendingTransfer(file=file, target=destination.full_key, future=future, stream=stream)
        self._track(transfer)
        return transfer


class Downloads(_TransferTracker):
    """Tracks file downloads into a local directory."""

    def start_download(self, base: Path, prefix: str, item: ObjectHead, bucket: str) -> bool:
        """Download ``item`` below ``base`` unless the local copy is up to date.

        ``prefix`` is the key part stripped to get the local relative path.
        Returns False when the download was skipped.
        """
        relative = item.key[len(prefix) :].lstrip("/") if prefix else item.key
        target = base / relative
        remote_timestamp = to_millis(item.last_modified)

        if target.is_file() and target.stat().st_mtime_ns // 1_000_000 >= remote_timestamp:
            self.logger.debug("Skipping up to date file", file=str(target))
            return False

        target.parent.mkdir(parents=True, exist_ok=True)
        full_key = f"{bucket}/{item.key}"
        part = target.with_name(f".{target.name}.part")
        future = self._executor.submit(self.storage.download_file, full_key, part)
        self._track(
            PendingTransfer(
                file=target,
                target=full_key,
                future=future,
                remote_timestamp=remote_timestamp,
                part=part,
            )
        )
        return True

    def _completed(self, transfer: PendingTransfer) -> None:
        # the target only ever holds complete downloads
        if transfer.part is not None:
            os.replace(transfer.part, transfer.file)
        timestamp = transfer.remote_timestamp / 1000
        try:
            os.utime(transfer.file, (timestamp, timestamp))
        except OSError as e:
            self.logger.warning(
                "Could not set last modified time", file=str(transfer.file), error=str(e)
            )

    def _discard(self, transfer: PendingTransfer) -> None:
        if transfer.part is None:
            return
        try:
            transfer.part.unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning(
                "Could not remove partial download", file=str(transfer.part), error=str(e)
            )
