"""
Tests for the grow-and-retry buffer protocol.
"""

import pytest

from genctl_lite.errors import TokenizationError
from genctl_lite.utils.buffers import INT32_MIN, BufferProbe, grow_and_retry


def _filler(required: int, calls: list):
    def fill(buf: bytearray) -> int:
        calls.append(len(buf))
        if len(buf) < required:
            return -required
        buf[:required] = b"x" * required
        return required

    return fill


@pytest.mark.unit
def test_fits_first_time() -> None:
    """Test that a large enough first buffer needs one call."""
    calls = []
    probe = BufferProbe()
    buf, n = grow_and_retry(_filler(10, calls), bytearray, 16, probe=probe)
    assert n == 10
    assert calls == [16]
    assert probe.attempts == 1
    assert probe.needed == 0


@pytest.mark.unit
def test_grows_to_exact_size() -> None:
    """Test that overflow reallocates to exactly the reported size."""
    calls = []
    probe = BufferProbe()
    buf, n = grow_and_retry(_filler(300, calls), bytearray, 256, probe=probe)
    assert n == 300
    assert calls == [256, 300]
    assert len(buf) == 300
    assert probe.needed == 300
    assert probe.attempts == 2


@pytest.mark.unit
def test_invalid_required_size() -> None:
    """Test that INT32_MIN is reported as an invalid size, not resized."""
    calls = []

    def fill(buf):
        calls.append(len(buf))
        return INT32_MIN

    with pytest.raises(TokenizationError, match="invalid required size"):
        grow_and_retry(fill, bytearray, 8, what="tokenize")
    assert calls == [8]


@pytest.mark.unit
def test_size_beyond_int32_rejected() -> None:
    """Test that a size beyond int32 is rejected before allocating."""
    allocations = []

    def allocate(n):
        allocations.append(n)
        return bytearray(n)

    with pytest.raises(TokenizationError, match="invalid required size"):
        grow_and_retry(lambda buf: -(2**40), allocate, 8)
    assert allocations == [8]


@pytest.mark.unit
def test_second_overflow_fails() -> None:
    """Test that overflowing the resized buffer is fatal."""
    with pytest.raises(TokenizationError, match="still too small"):
        grow_and_retry(lambda buf: -(len(buf) + 1), bytearray, 4)
