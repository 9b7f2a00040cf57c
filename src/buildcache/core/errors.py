"""Core domain errors."""


class BuildCacheError(Exception):
    """Base error for buildcache."""


class NotFoundError(BuildCacheError):
    """Object not found."""


class StorageError(BuildCacheError):
    """Object store failure."""


class TransferInterrupted(BuildCacheError):
    """A batch of transfers was cancelled before completing."""


class CacheSaveError(BuildCacheError):
    """Saving the cache failed after the build body succeeded."""


class UnsupportedCompressionError(BuildCacheError):
    """Compression method can no longer be used to create or restore caches."""


class ConfigurationError(BuildCacheError):
    """Invalid or incomplete configuration."""
