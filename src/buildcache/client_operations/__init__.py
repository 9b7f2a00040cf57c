"""Read-only reporting operations on a cache scope."""

from .stats import ScopeStats, get_scope_stats, list_cache_items

__all__ = ["ScopeStats", "get_scope_stats", "list_cache_items"]
