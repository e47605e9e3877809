"""
Fixed-capacity staging buffer for one forward pass.

A Batch pre-allocates token, position, sequence-id and output-flag tensors
for ``capacity`` entries and is cleared and refilled across iterations
instead of being reallocated. Appends beyond capacity fail without touching
the batch.
"""

import logging
from typing import List, NamedTuple, Sequence, Tuple

import torch

from genctl_lite.errors import (
    EngineDecodeError,
    InvalidArgumentError,
    NoKVSlotError,
    clear_error,
    set_error,
)

logger = logging.getLogger(__name__)


class BatchEntry(NamedTuple):
    """One staged token as seen by the engine."""
    token: int
    pos: int
    seq_ids: Tuple[int, ...]
    output: bool


class Batch:
    """Token/position/sequence-id staging buffer.

    Attributes:
        capacity: Maximum number of entries.
        n_seq_max: Maximum sequence ids per entry.
        n_tokens: Number of entries currently staged.
        token: Token ids. Shape [capacity].
        pos: Positions. Shape [capacity].
        n_seq_id: Number of sequence ids per entry. Shape [capacity].
        seq_id: Sequence ids per entry. Shape [capacity, n_seq_max].
        output: Output-requested flags. Shape [capacity].
    """

    def __init__(self, capacity: int, n_seq_max: int = 1) -> None:
        """Initialize an empty batch.

        Args:
            capacity: Maximum number of entries.
            n_seq_max: Maximum sequence ids per entry.

        Raises:
            InvalidArgumentError: If capacity or n_seq_max is not positive.
        """
        if capacity <= 0 or n_seq_max <= 0:
            raise set_error(
                InvalidArgumentError(
                    f"batch init: invalid parameters (capacity={capacity}, n_seq_max={n_seq_max})"
                )
            )

        self.capacity = capacity
        self.n_seq_max = n_seq_max
        self.n_tokens = 0

        self.token = torch.zeros(capacity, dtype=torch.int32)
        self.pos = torch.zeros(capacity, dtype=torch.int32)
        self.n_seq_id = torch.zeros(capacity, dtype=torch.int32)
        self.seq_id = torch.zeros((capacity, n_seq_max), dtype=torch.int32)
        self.output = torch.zeros(capacity, dtype=torch.bool)

        self._closed = False

    @classmethod
    def from_tokens(
        cls,
        tokens: Sequence[int],
        pos_start: int = 0,
        seq_id: int = 0,
        output_last: bool = True,
    ) -> "Batch":
        """Build a batch sized exactly for ``tokens``."""
        if not tokens:
            raise set_error(InvalidArgumentError("batch from tokens: empty token list"))
        batch = cls(len(tokens), 1)
        batch.add_run(tokens, pos_start, seq_id, output_last)
        return batch

    def __len__(self) -> int:
        return self.n_tokens

    def __enter__(self) -> "Batch":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_full(self) -> bool:
        return self.n_tokens >= self.capacity

    @property
    def remaining(self) -> int:
        return self.capacity - self.n_tokens

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the staging buffers. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.n_tokens = 0
        self.capacity = 0

    def clear(self) -> None:
        """Drop all entries, keeping the allocation."""
        self.n_tokens = 0

    def _put(self, token: int, pos: int, seq_ids: Sequence[int], want_output: bool) -> None:
        idx = self.n_tokens
        self.token[idx] = token
        self.pos[idx] = pos
        self.n_seq_id[idx] = len(seq_ids)
        for i, s in enumerate(seq_ids):
            self.seq_id[idx, i] = s
        self.output[idx] = want_output
        self.n_tokens += 1

    def add(self, token: int, pos: int, seq_id: int, want_output: bool) -> bool:
        """Append one token belonging to a single sequence.

        Returns:
            False, with the batch unchanged, if the batch is full.
        """
        if self._closed or self.is_full:
            return False
        self._put(token, pos, (seq_id,), want_output)
        return True

    def add_with_seq_set(
        self,
        token: int,
        pos: int,
        seq_ids: Sequence[int],
        want_output: bool,
        strict: bool = False,
    ) -> bool:
        """Append one token shared by several sequences.

        More than ``n_seq_max`` ids are clamped to the first ``n_seq_max``
        unless ``strict`` is set, in which case the call fails instead.

        Returns:
            False, with the batch unchanged, if the batch is full, ``seq_ids``
            is empty or ``strict`` rejected the id count.
        """
        if self._closed or self.is_full or not seq_ids:
            return False
        if len(seq_ids) > self.n_seq_max:
            if strict:
                return False
            logger.debug(
                "clamping %d sequence ids to n_seq_max=%d", len(seq_ids), self.n_seq_max
            )
            seq_ids = seq_ids[: self.n_seq_max]
        self._put(token, pos, seq_ids, want_output)
        return True

    def add_run(
        self,
        tokens: Sequence[int],
        pos_start: int,
        seq_id: int,
        output_last_only: bool,
    ) -> int:
        """Append consecutive tokens of one sequence at consecutive positions.

        Fills as many tokens as fit. When ``output_last_only`` is set, only
        the last token of ``tokens`` requests output, so a partial fill
        requests none.

        Returns:
            Number of tokens actually appended.
        """
        if self._closed or not tokens:
            return 0

        n = len(tokens)
        added = 0
        for i in range(n):
            if self.is_full:
                break
            want = output_last_only and i == n - 1
            self._put(tokens[i], pos_start + i, (seq_id,), want)
            added += 1
        return added

    def set_output_flag(self, index: int, want: bool) -> bool:
        """Set the output flag of an existing entry; False if out of range."""
        if index < 0 or index >= self.n_tokens:
            return False
        self.output[index] = want
        return True

    def entries(self) -> List[BatchEntry]:
        """Read-only view of the staged entries."""
        n = self.n_tokens
        tokens = self.token[:n].tolist()
        positions = self.pos[:n].tolist()
        counts = self.n_seq_id[:n].tolist()
        seq_ids = self.seq_id[:n].tolist()
        outputs = self.output[:n].tolist()
        return [
            BatchEntry(tokens[i], positions[i], tuple(seq_ids[i][: counts[i]]), outputs[i])
            for i in range(n)
        ]

    def _submit(self, context, op: str) -> int:
        clear_error()
        if self._closed:
            set_error(InvalidArgumentError(f"batch {op}: batch is closed"))
            return -1
        if context is None or context.closed:
            set_error(InvalidArgumentError(f"batch {op}: invalid context"))
            return -1

        backend = context.backend
        if op == "decode":
            code = backend.decode(context.native, self)
        else:
            code = backend.encode(context.native, self)

        if code == 1:
            set_error(NoKVSlotError(f"batch {op}: no KV slot available"))
        elif code < 0:
            set_error(EngineDecodeError(f"batch {op} failed", code=code))
        return code

    def decode(self, context) -> int:
        """Run the forward pass over this batch.

        Returns:
            0 on success, 1 if the engine found no cache capacity (free
            memory and retry), negative on unrecoverable failure. Failures
            are recorded in the error channel.
        """
        return self._submit(context, "decode")

    def encode(self, context) -> int:
        """Run an encoder pass over this batch; same return contract as decode."""
        return self._submit(context, "encode")
