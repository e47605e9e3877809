"""
Tests for Batch - fixed-capacity staging buffer for forward passes.
"""

import pytest

from genctl_lite.batch.batch import Batch, BatchEntry
from genctl_lite.errors import (
    EngineDecodeError,
    InvalidArgumentError,
    NoKVSlotError,
    last_error,
)
from tests.utils.scripted_backend import BYTE_BASE


@pytest.mark.unit
def test_batch_initialization() -> None:
    """Test that a new batch is empty with the requested shape."""
    batch = Batch(8, 2)
    assert batch.capacity == 8
    assert batch.n_seq_max == 2
    assert batch.n_tokens == 0
    assert len(batch) == 0
    assert batch.seq_id.shape == (8, 2)
    assert not batch.is_full


@pytest.mark.unit
@pytest.mark.parametrize("capacity, n_seq_max", [(0, 1), (-1, 1), (4, 0)])
def test_batch_invalid_shape(capacity: int, n_seq_max: int) -> None:
    """Test that non-positive sizes are rejected."""
    with pytest.raises(InvalidArgumentError):
        Batch(capacity, n_seq_max)
    assert isinstance(last_error(), InvalidArgumentError)


@pytest.mark.unit
@pytest.mark.parametrize("capacity", [1, 3, 16])
def test_add_until_full(capacity: int) -> None:
    """Test that capacity adds succeed and the next one fails without mutating."""
    batch = Batch(capacity)
    for i in range(capacity):
        assert batch.add(BYTE_BASE + i, i, 0, False)
    assert batch.is_full

    assert not batch.add(99, capacity, 0, True)
    assert batch.n_tokens == capacity
    assert batch.entries()[-1] == BatchEntry(BYTE_BASE + capacity - 1, capacity - 1, (0,), False)


@pytest.mark.unit
def test_add_run_partial_fill() -> None:
    """Test that add_run fills the remaining capacity and reports the count."""
    batch = Batch(5)
    batch.add(10, 0, 0, False)
    batch.add(11, 1, 0, False)

    added = batch.add_run([20, 21, 22, 23, 24], 2, 0, True)

    assert added == 3
    assert batch.is_full
    assert [e.pos for e in batch.entries()] == [0, 1, 2, 3, 4]
    # The last requested token did not fit, so no entry asks for output
    assert not any(e.output for e in batch.entries())
    assert batch.add_run([30], 5, 0, True) == 0


@pytest.mark.unit
def test_add_run_output_last_only() -> None:
    """Test that only the final token of a full run requests output."""
    batch = Batch(8)
    assert batch.add_run([5, 6, 7], 10, 2, True) == 3
    entries = batch.entries()
    assert [e.output for e in entries] == [False, False, True]
    assert [e.pos for e in entries] == [10, 11, 12]
    assert all(e.seq_ids == (2,) for e in entries)


@pytest.mark.unit
def test_add_with_seq_set() -> None:
    """Test that one entry can belong to several sequences."""
    batch = Batch(4, 3)
    assert batch.add_with_seq_set(7, 0, [0, 2], True)
    assert batch.entries()[0].seq_ids == (0, 2)
    assert not batch.add_with_seq_set(7, 1, [], True)
    assert batch.n_tokens == 1


@pytest.mark.unit
def test_add_with_seq_set_clamps_silently() -> None:
    """Flag: ids beyond n_seq_max are dropped without an error by default."""
    batch = Batch(4, 2)
    assert batch.add_with_seq_set(7, 0, [0, 1, 2, 3], False)
    assert batch.entries()[0].seq_ids == (0, 1)
    assert last_error() is None


@pytest.mark.unit
def test_add_with_seq_set_strict() -> None:
    """Test that strict mode refuses to drop sequence ids."""
    batch = Batch(4, 2)
    assert not batch.add_with_seq_set(7, 0, [0, 1, 2], False, strict=True)
    assert batch.n_tokens == 0


@pytest.mark.unit
def test_set_output_flag() -> None:
    """Test toggling output flags and the out-of-range no-op."""
    batch = Batch(4)
    batch.add(1, 0, 0, False)
    assert batch.set_output_flag(0, True)
    assert batch.entries()[0].output
    assert not batch.set_output_flag(1, True)
    assert not batch.set_output_flag(-1, True)


@pytest.mark.unit
def test_clear_reuses_allocation() -> None:
    """Test that clear empties the batch without reallocating."""
    batch = Batch(4)
    tokens = batch.token
    batch.add_run([1, 2, 3, 4], 0, 0, True)
    batch.clear()
    assert batch.n_tokens == 0
    assert batch.token is tokens
    assert batch.add(9, 0, 0, True)


@pytest.mark.unit
def test_from_tokens() -> None:
    batch = Batch.from_tokens([4, 5, 6], pos_start=3, seq_id=1)
    assert batch.capacity == 3
    assert [e.pos for e in batch.entries()] == [3, 4, 5]
    assert batch.entries()[-1].output
    with pytest.raises(InvalidArgumentError):
        Batch.from_tokens([])


@pytest.mark.unit
def test_closed_batch() -> None:
    """Test that a closed batch refuses appends and decode."""
    with Batch(4) as batch:
        batch.add(1, 0, 0, True)
    assert batch.closed
    assert not batch.add(2, 1, 0, True)
    assert batch.add_run([3], 2, 0, True) == 0
    assert batch.decode(None) == -1
    assert isinstance(last_error(), InvalidArgumentError)
    batch.close()


@pytest.mark.unit
def test_decode_success(context) -> None:
    """Test that decode places tokens in memory and clears the error slot."""
    batch = Batch.from_tokens([BYTE_BASE + 1, BYTE_BASE + 2])
    assert batch.decode(context) == 0
    assert last_error() is None
    assert context.memory.position_bounds(0) == (0, 1)
    assert context.get_logits(-1) is not None


@pytest.mark.unit
def test_decode_no_kv_slot(model) -> None:
    """Test that running out of cells returns 1 and records a retryable error."""
    from genctl_lite.core.context import Context, ContextParams

    with Context(model, ContextParams(n_ctx=4, n_batch=8, n_ubatch=8)) as ctx:
        assert Batch.from_tokens([5, 6, 7]).decode(ctx) == 0
        code = Batch.from_tokens([8, 9], pos_start=3).decode(ctx)

        assert code == 1
        err = last_error()
        assert isinstance(err, NoKVSlotError)
        assert err.retryable
        # Nothing was placed
        assert ctx.memory.position_bounds(0) == (0, 2)


@pytest.mark.unit
def test_decode_hard_failure(context, backend) -> None:
    """Test that a failing forward pass returns a negative code."""
    backend.fail_forward_at = 1
    code = Batch.from_tokens([5, 6]).decode(context)
    assert code < 0
    err = last_error()
    assert isinstance(err, EngineDecodeError)
    assert not err.retryable
    assert context.memory.position_bounds(0) == (-1, -1)


@pytest.mark.unit
def test_decode_invalid_sequence(context) -> None:
    """Test that an out-of-range sequence id is rejected by the engine."""
    batch = Batch(2)
    batch.add(5, 0, context.n_seq_max, True)
    assert batch.decode(context) == -1
    assert isinstance(last_error(), EngineDecodeError)


@pytest.mark.unit
def test_encode_embeddings(model) -> None:
    """Test that encode yields embeddings for output entries."""
    from genctl_lite.core.context import Context, ContextParams

    with Context(model, ContextParams(n_ctx=16, n_batch=16, embeddings=True)) as ctx:
        batch = Batch.from_tokens([5, 6, 7])
        assert batch.encode(ctx) == 0
        embd = ctx.get_embeddings(-1)
        assert embd is not None
        assert float(embd[0]) == 7.0
