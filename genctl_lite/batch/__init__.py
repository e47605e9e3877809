"""
Batch staging for forward passes.

Provides:
- Batch: Fixed-capacity token/position/sequence-id staging buffer
- BatchEntry: One staged token as seen by the engine
"""

from genctl_lite.batch.batch import Batch, BatchEntry

__all__ = ["Batch", "BatchEntry"]
