"""Workspace boundary: Ant-style file selection, sizes and temp files."""

import os
import re
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .models import DEFAULT_FILTER

DEFAULT_EXCLUDES = (
    "**/*~",
    "**/#*#",
    "**/.#*",
    "**/%*%",
    "**/._*",
    "**/CVS/**",
    "**/.cvsignore",
    "**/SCCS/**",
    "**/vssver.scc",
    "**/.svn/**",
    "**/.DS_Store",
    "**/.git/**",
    "**/.gitattributes",
    "**/.gitignore",
    "**/.gitmodules",
    "**/.hg/**",
    "**/.hgignore",
    "**/.hgsub",
    "**/.hgsubstate",
    "**/.hgtags",
    "**/.bzr/**",
    "**/.bzrignore",
)


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile an Ant-style pattern (``**``, ``*``, ``?``) into a regex.

    A trailing ``/`` matches everything below that directory.
    """
    pattern = pattern.strip().replace("\\", "/")
    if pattern.endswith("/"):
        pattern += "**"

    parts = pattern.split("/")
    regex = ""
    for i, part in enumerate(parts):
        last = i == len(parts) - 1
        if part == "**":
            regex += ".*" if last else "(?:[^/]*/)*"
            continue
        for char in part:
            if char == "*":
                regex += "[^/]*"
            elif char == "?":
                regex += "[^/]"
            else:
                regex += re.escape(char)
        if not last:
            regex += "/"
    return re.compile(regex)


def split_patterns(patterns: str | None) -> list[str]:
    if not patterns:
        return []
    return [p.strip() for p in patterns.split(",") if p.strip()]


class PathFilter:
    """Selects files below a base directory by include and exclude patterns."""

    def __init__(
        self,
        includes: str | None = DEFAULT_FILTER,
        excludes: str | None = None,
        use_default_excludes: bool = True,
    ):
        self.includes = [compile_pattern(p) for p in split_patterns(includes or DEFAULT_FILTER)]
        exclude_patterns = split_patterns(excludes)
        if use_default_excludes:
            exclude_patterns.extend(DEFAULT_EXCLUDES)
        self.excludes = [compile_pattern(p) for p in exclude_patterns]

    def matches(self, relative_path: str) -> bool:
        if not any(p.fullmatch(relative_path) for p in self.includes):
            return False
        return not any(p.fullmatch(relative_path) for p in self.excludes)

    def scan(self, base: Path) -> Iterator[tuple[Path, str]]:
        """Yield ``(path, relative posix path)`` of matching files, sorted.

        Symlinked directories are not followed.
        """
        for root, dirs, files in os.walk(base, followlinks=False):
            dirs.sort()
            root_path = Path(root)
            for name in sorted(files):
                path = root_path / name
                relative = path.relative_to(base).as_posix()
                if self.matches(relative):
                    yield path, relative


def directory_size(base: Path, path_filter: PathFilter) -> int:
    """Sum of the sizes of all selected regular files."""
    if not base.is_dir():
        return 0
    return sum(path.stat().st_size for path, _ in path_filter.scan(base) if path.is_file())


def temp_dir(workspace: Path) -> Path:
    """Temp directory next to the workspace (``<workspace>@tmp``)."""
    directory = workspace.parent / f"{workspace.name}@tmp"
    directory.mkdir(parents=True, exist_ok=True)
    return directory


@contextmanager
def create_temp_file(workspace: Path, suffix: str) -> Iterator[Path]:
    """Reserve a temp file scoped to the workspace, deleted on exit."""
    fd, name = tempfile.mkstemp(prefix=f"{uuid.uuid4().hex}-", suffix=suffix, dir=temp_dir(workspace))
    os.close(fd)
    path = Path(name)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)
