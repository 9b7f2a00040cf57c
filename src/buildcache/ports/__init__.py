"""Port interfaces."""

from .clock import ClockPort
from .logger import LoggerPort
from .metrics import MetricsPort
from .storage import ObjectHead, StoragePort

__all__ = [
    "ClockPort",
    "LoggerPort",
    "MetricsPort",
    "ObjectHead",
    "StoragePort",
]
