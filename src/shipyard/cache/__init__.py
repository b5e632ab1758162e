"""Cache areas and content-addressed blob APIs."""

from .keys import BuildCacheInput, cache_key
from .store import CacheHandle, CacheStore

__all__ = ["BuildCacheInput", "CacheHandle", "CacheStore", "cache_key"]
