"""
Memory (KV-cache) management.

Provides:
- MemoryController: Sequence-scoped remove/copy/keep/shift/scale/bounds and
  state serialization for one context
- MemoryStats: Cell usage statistics
"""

from genctl_lite.memory.controller import ALL_SEQUENCES, MemoryController, MemoryStats

__all__ = ["ALL_SEQUENCES", "MemoryController", "MemoryStats"]
