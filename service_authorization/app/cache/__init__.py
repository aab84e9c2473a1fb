"""
Cache package for the Authorization Service.

Cache providers hold computed effective-permission sets keyed by
``user:{tenant}:{user}:permissions``. Caching is optional: the engine
defaults to ``NullCache``, and ``InMemoryCache`` / ``RedisCacheProvider``
are drop-in replacements.
"""

from .providers import CacheProvider, InMemoryCache, NullCache, RedisCacheProvider

__all__ = ["CacheProvider", "InMemoryCache", "NullCache", "RedisCacheProvider"]
