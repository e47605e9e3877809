"""
Utilities and helper functions.

Provides:
- grow_and_retry: Two-call buffer protocol (probe size, reallocate, call again)
- BufferProbe: Record of the last buffer-size computation
"""

from genctl_lite.utils.buffers import BufferProbe, grow_and_retry, INT32_MIN

__all__ = ["BufferProbe", "grow_and_retry", "INT32_MIN"]
