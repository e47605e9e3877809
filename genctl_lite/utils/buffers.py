"""
Grow-and-retry buffer protocol.

Engine primitives that fill a caller-provided buffer report an undersized
buffer by returning the negated required size. ``grow_and_retry`` hides the
two-call protocol behind one function: call once with an estimated buffer,
reallocate to exactly the reported size on overflow, and call again.
"""

from dataclasses import dataclass
from typing import Any, Callable, Tuple, Type

from genctl_lite.errors import GenCtlError, TokenizationError

INT32_MIN = -(2**31)


@dataclass
class BufferProbe:
    """Last buffer-size computation made by grow_and_retry."""
    initial: int = 0
    result: int = 0
    needed: int = 0
    attempts: int = 0


def grow_and_retry(
    fill: Callable[[Any], int],
    allocate: Callable[[int], Any],
    initial_capacity: int,
    what: str = "buffer",
    error_cls: Type[GenCtlError] = TokenizationError,
    probe: BufferProbe = None,
) -> Tuple[Any, int]:
    """Run ``fill`` against a buffer, growing it once if the engine asks.

    Args:
        fill: Writes into the buffer, returns the count written or
            ``-(required size)`` if the buffer is too small.
        allocate: Returns a new buffer of the given capacity.
        initial_capacity: Size of the first buffer.
        what: Name used in error messages.
        error_cls: Exception raised on failure.
        probe: Optional BufferProbe updated with sizes and attempt count.

    Returns:
        Tuple of (buffer, count written).

    Raises:
        error_cls: If the required size is unrepresentable or the second
            attempt still reports overflow.
    """
    if probe is None:
        probe = BufferProbe()
    probe.initial = initial_capacity
    probe.needed = 0

    buf = allocate(initial_capacity)
    n = fill(buf)
    probe.attempts = 1
    probe.result = n
    if n >= 0:
        return buf, n

    if n <= INT32_MIN:
        raise error_cls(f"{what} failed: invalid required size", {"result": n})
    needed = -n
    probe.needed = needed

    buf = allocate(needed)
    n = fill(buf)
    probe.attempts = 2
    probe.result = n
    if n < 0:
        raise error_cls(
            f"{what} failed: buffer still too small after resize",
            {"needed": needed, "result": n},
        )
    return buf, n
