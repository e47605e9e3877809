"""
Prefix caching.

Provides:
- PrefixCache: Per-sequence resident-token ledger with hit/miss statistics
"""

from genctl_lite.cache.prefix_cache import PrefixCache

__all__ = ["PrefixCache"]
