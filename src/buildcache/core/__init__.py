"""Core domain logic."""

from .arbitrary import ArbitraryFileCache, Saver
from .archive import CompressionMethod
from .config import BuildCacheConfig
from .errors import (
    BuildCacheError,
    CacheSaveError,
    ConfigurationError,
    NotFoundError,
    StorageError,
    TransferInterrupted,
    UnsupportedCompressionError,
)
from .eviction import EvictionDecision, EvictionPolicy
from .locks import JOB_LOCKS, JobLocks
from .manager import CacheManager
from .models import (
    BackupRequest,
    CacheItem,
    CacheResult,
    Outcome,
    RestoreKeySet,
    RestoreRequest,
    StorageScope,
)
from .object_path import ObjectPath
from .repository import ObjectRepository
from .session import CacheSession, execute_request, request_from_dict
from .transfers import Downloads, Uploads

__all__ = [
    "ArbitraryFileCache",
    "BackupRequest",
    "BuildCacheConfig",
    "BuildCacheError",
    "CacheItem",
    "CacheManager",
    "CacheResult",
    "CacheSaveError",
    "CacheSession",
    "CompressionMethod",
    "ConfigurationError",
    "Downloads",
    "EvictionDecision",
    "EvictionPolicy",
    "JOB_LOCKS",
    "JobLocks",
    "NotFoundError",
    "ObjectPath",
    "ObjectRepository",
    "Outcome",
    "RestoreKeySet",
    "RestoreRequest",
    "Saver",
    "StorageError",
    "StorageScope",
    "TransferInterrupted",
    "Uploads",
    "UnsupportedCompressionError",
    "execute_request",
    "request_from_dict",
]
