"""Archive codecs used to pack a directory into a single cache object."""

import gzip
import tarfile
import zipfile
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

import zstandard

from .errors import UnsupportedCompressionError
from .patterns import PathFilter, create_temp_file

if TYPE_CHECKING:
    from .object_path import ObjectPath


def write_tar(source: Path, fileobj: BinaryIO, path_filter: PathFilter | None = None) -> int:
    """Stream an uncompressed tar of the selected files below ``source``.

    Returns the number of archived files. Symlinks are stored as links.
    """
    path_filter = path_filter or PathFilter()
    count = 0
    with tarfile.open(fileobj=fileobj, mode="w|") as tar:
        for path, relative in path_filter.scan(source):
            tar.add(path, arcname=relative, recursive=False)
            count += 1
    return count


def extract_tar(fileobj: BinaryIO, target: Path) -> None:
    """Extract a tar stream into ``target``.

    Members escaping ``target`` (absolute paths, ``..``, outside links) are
    rejected by the ``data`` extraction filter.
    """
    target.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=fileobj, mode="r|") as tar:
        tar.extractall(target, filter="data")


class CacheStrategy:
    """How a directory is stored in a single object."""

    extension = ""

    def create_cache_name(self, name: str) -> str:
        return name + self.extension

    def cache(
        self, source: Path, path_filter: PathFilter, target: "ObjectPath", workspace: Path
    ) -> None:
        raise NotImplementedError

    def restore(self, source: "ObjectPath", target: Path, workspace: Path) -> None:
        raise NotImplementedError


class LegacyStrategy(CacheStrategy):
    """Uncompressed per-file copies. No longer supported."""

    def cache(
        self, source: Path, path_filter: PathFilter, target: "ObjectPath", workspace: Path
    ) -> None:
        raise UnsupportedCompressionError("Compression method NONE is no longer supported")

    def restore(self, source: "ObjectPath", target: Path, workspace: Path) -> None:
        raise UnsupportedCompressionError("Compression method NONE is no longer supported")


class CompressingStrategy(CacheStrategy):
    """Packs into a local temp file which is then copied to the store."""

    def compress(self, source: Path, path_filter: PathFilter, target: Path) -> None:
        raise NotImplementedError

    def uncompress(self, source: Path, target: Path) -> None:
        raise NotImplementedError

    def cache(
        self, source: Path, path_filter: PathFilter, target: "ObjectPath", workspace: Path
    ) -> None:
        with create_temp_file(workspace, self.extension) as archive:
            self.compress(source, path_filter, archive)
            target.copy_from(archive)

    def restore(self, source: "ObjectPath", target: Path, workspace: Path) -> None:
        target.mkdir(parents=True, exist_ok=True)
        with create_temp_file(workspace, self.extension) as archive:
            source.copy_to(archive)
            self.uncompress(archive, target)


def _plain(stream: BinaryIO) -> BinaryIO:
    return stream


class TarStrategy(CompressingStrategy):
    """Tar archive, optionally wrapped in a compressing stream."""

    def __init__(
        self,
        extension: str,
        wrap_output: Callable[[BinaryIO], BinaryIO] = _plain,
        wrap_input: Callable[[BinaryIO], BinaryIO] = _plain,
    ):
        self.extension = extension
        self._wrap_output = wrap_output
        self._wrap_input = wrap_input

    def compress(self, source: Path, path_filter: PathFilter, target: Path) -> None:
        with open(target, "wb") as raw:
            out = self._wrap_output(raw)
            try:
                write_tar(source, out, path_filter)
            finally:
                if out is not raw:
                    out.close()

    def uncompress(self, source: Path, target: Path) -> None:
        with open(source, "rb") as raw:
            stream = self._wrap_input(raw)
            try:
                extract_tar(stream, target)
            finally:
                if stream is not raw:
                    stream.close()


class ZipStrategy(CompressingStrategy):
    extension = ".zip"

    def compress(self, source: Path, path_filter: PathFilter, target: Path) -> None:
        with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for path, relative in path_filter.scan(source):
                archive.write(path, relative)

    def uncompress(self, source: Path, target: Path) -> None:
        with zipfile.ZipFile(source) as archive:
            archive.extractall(target)


def _gzip_writer(level: int) -> Callable[[BinaryIO], BinaryIO]:
    def wrap(stream: BinaryIO) -> BinaryIO:
        return gzip.GzipFile(fileobj=stream, mode="wb", compresslevel=level)  # type: ignore[return-value]

    return wrap


def _gzip_reader(stream: BinaryIO) -> BinaryIO:
    return gzip.GzipFile(fileobj=stream, mode="rb")  # type: ignore[return-value]


def _zstd_writer(stream: BinaryIO) -> BinaryIO:
    # threads=-1 compresses on all cores
    compressor = zstandard.ZstdCompressor(threads=-1)
    return compressor.stream_writer(stream, closefd=False)  # type: ignore[return-value]


def _zstd_reader(stream: BinaryIO) -> BinaryIO:
    reader = zstandard.ZstdDecompressor().stream_reader(stream, closefd=False)
    return reader  # type: ignore[return-value]


class CompressionMethod(Enum):
    """Supported archive formats of an arbitrary file cache."""

    NONE = "NONE"
    ZIP = "ZIP"
    TARGZ = "TARGZ"
    TARGZ_BEST_SPEED = "TARGZ_BEST_SPEED"
    TAR = "TAR"
    TAR_ZSTD = "TAR_ZSTD"

    @property
    def strategy(self) -> CacheStrategy:
        return _STRATEGIES[self]

    @property
    def supported(self) -> bool:
        return self is not CompressionMethod.NONE

    @classmethod
    def parse(cls, value: "str | CompressionMethod | None") -> "CompressionMethod":
        """Parse a method name; ``None`` and the legacy ``NONE`` map to TARGZ."""
        if value is None:
            return cls.TARGZ
        method = value if isinstance(value, cls) else cls(value.strip().upper())
        return method if method.supported else cls.TARGZ


_STRATEGIES: dict[CompressionMethod, CacheStrategy] = {
    CompressionMethod.NONE: LegacyStrategy(),
    CompressionMethod.ZIP: ZipStrategy(),
    CompressionMethod.TARGZ: TarStrategy(".tgz", _gzip_writer(9), _gzip_reader),
    CompressionMethod.TARGZ_BEST_SPEED: TarStrategy(".tgz", _gzip_writer(1), _gzip_reader),
    CompressionMethod.TAR: TarStrategy(".tar"),
    CompressionMethod.TAR_ZSTD: TarStrategy(".tar.zst", _zstd_writer, _zstd_reader),
}
