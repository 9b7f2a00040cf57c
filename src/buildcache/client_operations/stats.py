"""Statistics and listing operations on a cache scope.

This module contains the read-only reporting operations:
- list_cache_items
- get_scope_stats
"""

import concurrent.futures
from dataclasses import dataclass
from typing import Any

from ..core.models import CacheItem
from ..core.repository import ObjectRepository, to_millis
from ..ports import ObjectHead

# ============================================================================
# Internal Helper Functions
# ============================================================================


def _collect_objects(repository: ObjectRepository, prefix: str = "") -> list[ObjectHead]:
    """Collect all listing entries of the scope.

    Raises:
        RuntimeError: If listing fails with no objects collected
    """
    objects: list[ObjectHead] = []
    try:
        for obj in repository.iter_objects(prefix):
            objects.append(obj)
    except Exception as e:
        if not objects:
            raise RuntimeError(f"Failed to list objects in scope '{repository.scope}': {e}") from e
        repository.logger.warning(
            f"_collect_objects: Listing error after {len(objects)} objects: {e}. "
            f"Returning partial results."
        )
    return objects


def _fetch_last_access(
    repository: ObjectRepository,
    objects: list[ObjectHead],
    max_workers: int = 10,
    max_timeout: int = 600,
) -> dict[str, int]:
    """HEAD every object in parallel to read its last access timestamp.

    Args:
        repository: Repository of the scope
        objects: Listing entries
        max_workers: Parallel HEAD requests
        max_timeout: Maximum total timeout in seconds (default: 600 = 10 min)

    Returns:
        Dict mapping object key -> last access epoch millis (0 if never recorded)
    """
    access_map: dict[str, int] = {}
    if not objects:
        return access_map

    bucket = repository.scope.bucket

    def fetch_single(key: str) -> tuple[str, int]:
        try:
            head = repository.storage.head(f"{bucket}/{key}")
            if head is not None:
                return key, ObjectRepository.last_access_of(head)
        except Exception as e:
            repository.logger.debug(f"Failed to fetch metadata for {key}: {e}")
        return key, 0

    with concurrent.futures.ThreadPoolExecutor(max_workers=min(max_workers, len(objects))) as executor:
        futures = [executor.submit(fetch_single, obj.key) for obj in objects]
        try:
            for future in concurrent.futures.as_completed(futures, timeout=max_timeout):
                key, last_access = future.result()
                access_map[key] = last_access
        except concurrent.futures.TimeoutError:
            repository.logger.warning(
                f"_fetch_last_access: Timeout after {max_timeout}s. "
                f"Fetched {len(access_map)}/{len(objects)} entries. "
                f"Continuing with partial metadata..."
            )
            for future in futures:
                future.cancel()

    return access_map


# ============================================================================
# Public API
# ============================================================================


@dataclass
class ScopeStats:
    """Size and usage summary of one cache scope."""

    scope: str
    object_count: int
    total_size: int
    oldest_modified: int = 0
    newest_modified: int = 0
    last_access: int = 0
    never_accessed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "object_count": self.object_count,
            "total_size": self.total_size,
            "oldest_modified": self.oldest_modified,
            "newest_modified": self.newest_modified,
            "last_access": self.last_access,
            "never_accessed": self.never_accessed,
        }


def list_cache_items(
    repository: ObjectRepository,
    prefix: str = "",
    sort_by: str = "key",
) -> list[CacheItem]:
    """List cache items with their last access time.

    Args:
        repository: Repository of the scope
        prefix: Only list keys starting with this prefix
        sort_by: "key", "size", "modified" or "access" (newest first for the latter three)
    """
    objects = _collect_objects(repository, prefix)
    access_map = _fetch_last_access(repository, objects)

    items = [
        CacheItem(
            key=repository.scope.relative(obj.key),
            content_length=obj.size,
            last_modified=to_millis(obj.last_modified),
            last_access=access_map.get(obj.key, 0),
        )
        for obj in objects
    ]

    if sort_by == "key":
        items.sort(key=lambda item: item.key)
    elif sort_by == "size":
        items.sort(key=lambda item: item.content_length, reverse=True)
    elif sort_by == "modified":
        items.sort(key=lambda item: item.last_modified, reverse=True)
    elif sort_by == "access":
        items.sort(key=lambda item: item.last_access, reverse=True)
    else:
        raise ValueError(f"Unknown sort order: {sort_by}")
    return items


def get_scope_stats(repository: ObjectRepository, detailed: bool = False) -> ScopeStats:
    """Get statistics of a cache scope.

    Quick stats (default) only LIST the scope. Detailed stats additionally
    HEAD every object to report access times.
    """
    objects = _collect_objects(repository)
    stats = ScopeStats(
        scope=str(repository.scope),
        object_count=len(objects),
        total_size=sum(obj.size for obj in objects),
    )
    if objects:
        modified = [to_millis(obj.last_modified) for obj in objects]
        stats.oldest_modified = min(modified)
        stats.newest_modified = max(modified)

    if detailed and objects:
        access_map = _fetch_last_access(repository, objects)
        stats.last_access = max(access_map.values(), default=0)
        stats.never_accessed = sum(1 for obj in objects if not access_map.get(obj.key))

    return stats
