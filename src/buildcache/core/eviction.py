"""Whole-scope eviction once a cache grows beyond its configured size."""

from dataclasses import dataclass

from ..ports import LoggerPort, MetricsPort
from .repository import ObjectRepository


@dataclass(frozen=True)
class EvictionDecision:
    """Measured scope size against the configured maximum."""

    total_size: int
    max_bytes: int

    @property
    def exceeded(self) -> bool:
        return self.max_bytes > 0 and self.total_size > self.max_bytes

    @property
    def message(self) -> str:
        return (
            f"Removing cache as it has grown beyond configured maximum size of "
            f"{self.max_bytes} bytes. Next build will start with no cache."
        )


class EvictionPolicy:
    """All-or-nothing size policy of a cache scope.

    There is no LRU: once the scope is larger than ``max_bytes`` everything
    in it is deleted and the next build starts cold. ``max_bytes == 0``
    disables the policy.
    """

    def __init__(
        self,
        repository: ObjectRepository,
        max_bytes: int,
        logger: LoggerPort,
        metrics: MetricsPort,
    ):
        self.repository = repository
        self.max_bytes = max_bytes
        self.logger = logger
        self.metrics = metrics

    @property
    def enabled(self) -> bool:
        return self.max_bytes > 0

    def exceeds(self, total_size: int) -> bool:
        return EvictionDecision(total_size, self.max_bytes).exceeded

    def check(self) -> EvictionDecision:
        """Measure the scope. Nothing is listed while the policy is disabled."""
        if not self.enabled:
            return EvictionDecision(total_size=0, max_bytes=0)
        decision = EvictionDecision(self.repository.total_size(), self.max_bytes)
        self.metrics.gauge(
            "buildcache.scope.size",
            decision.total_size,
            tags={"scope": str(self.repository.scope)},
        )
        return decision

    def evict(self) -> int:
        """Delete the whole scope, returning the number of deleted objects."""
        self.logger.warning(
            "Evicting cache scope", scope=str(self.repository.scope), max_bytes=self.max_bytes
        )
        deleted = self.repository.delete_prefix()
        self.metrics.increment(
            "buildcache.eviction.triggered", tags={"scope": str(self.repository.scope)}
        )
        return deleted
