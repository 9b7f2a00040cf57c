"""buildcache - Remote build cache on S3-compatible object storage."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("buildcache")
except PackageNotFoundError:
    # Package is not installed, so version is not available
    __version__ = "0.0.0+unknown"
