"""Content hashes of workspace files, used to build cache keys."""

import hashlib
from collections.abc import Iterable
from pathlib import Path

from .patterns import PathFilter

CHUNK_SIZE = 1024 * 1024


def md5_of_files(paths: Iterable[Path]) -> str:
    """MD5 over the concatenated content of ``paths``, in the given order."""
    digest = hashlib.md5()
    for path in paths:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                digest.update(chunk)
    return digest.hexdigest()


def hash_files(workspace: Path, pattern: str) -> str:
    """Hash all files below ``workspace`` matching an Ant-style ``pattern``.

    Files are hashed in sorted path order, so the result only changes when
    file contents (or the set of matched files) change. Without any
    matching file the hash of the empty input is returned.
    """
    files = sorted(path for path, _ in PathFilter(pattern).scan(workspace))
    return md5_of_files(files)


def derive_cache_path(path: str) -> str:
    """Stable object name for a cached path."""
    return hashlib.md5(path.encode("utf-8")).hexdigest()
