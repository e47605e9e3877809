"""
Sequence-scoped memory (KV-cache) controller.

All operations act on one Context's memory and address it by sequence id,
where -1 means every sequence wherever that is allowed. Edits keep the
context's prefix cache in step so that reuse never trusts evicted or shifted
state.

State persistence covers whole-context and single-sequence blobs plus file
variants that also store the originating token sequence for verification.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from genctl_lite.errors import (
    InvalidArgumentError,
    StateError,
    UnsupportedOperationError,
    clear_error,
    records_errors,
    set_error,
)

logger = logging.getLogger(__name__)

ALL_SEQUENCES = -1


@dataclass
class MemoryStats:
    """Statistics about memory cell usage."""
    total: int
    used: int
    free: int
    utilization: float


class MemoryController:
    """Memory operations for one context.

    Attributes:
        context: Owning Context.
    """

    def __init__(self, context) -> None:
        self.context = context

    @property
    def _backend(self):
        return self.context.backend

    @property
    def _native(self):
        self.context.check_open()
        return self.context.native

    @property
    def _prefix(self):
        return self.context.prefix_cache

    def _check_seq(self, seq_id: int, allow_all: bool) -> None:
        if allow_all and seq_id == ALL_SEQUENCES:
            return
        if not 0 <= seq_id < self.context.n_seq_max:
            raise InvalidArgumentError(
                f"sequence id {seq_id} out of range [0, {self.context.n_seq_max})"
            )

    @records_errors
    def clear(self, wipe_data: bool = True) -> None:
        """Drop all cached state.

        Args:
            wipe_data: Also zero the underlying buffers; False only resets
                the bookkeeping.
        """
        self._backend.memory_clear(self._native, wipe_data)
        self._prefix.clear()

    @records_errors
    def remove(self, seq_id: int, pos_start: int = -1, pos_end: int = -1) -> bool:
        """Evict positions ``[pos_start, pos_end)`` of ``seq_id``.

        A negative ``pos_start`` means 0 and a negative ``pos_end`` means
        infinity.

        Returns:
            False if the memory layout cannot remove a partial range; the
            caller should fall back to ``clear``.
        """
        self._check_seq(seq_id, allow_all=True)
        if not self._backend.memory_seq_rm(self._native, seq_id, pos_start, pos_end):
            set_error(
                UnsupportedOperationError(
                    f"partial removal of [{pos_start}, {pos_end}) not supported"
                )
            )
            return False
        self._prefix.truncate(seq_id, max(pos_start, 0))
        return True

    @records_errors
    def copy(self, src_seq: int, dst_seq: int, pos_start: int = -1, pos_end: int = -1) -> None:
        """Make ``dst_seq`` share the cells of ``src_seq`` in ``[pos_start, pos_end)``."""
        self._check_seq(src_seq, allow_all=False)
        self._check_seq(dst_seq, allow_all=False)
        self._backend.memory_seq_cp(self._native, src_seq, dst_seq, pos_start, pos_end)
        if src_seq != dst_seq:
            self._prefix.forget(dst_seq)

    @records_errors
    def keep(self, seq_id: int) -> None:
        """Evict everything not belonging to ``seq_id``."""
        self._check_seq(seq_id, allow_all=False)
        self._backend.memory_seq_keep(self._native, seq_id)
        self._prefix.keep_only(seq_id)

    def _check_shift(self) -> None:
        if not self.can_shift_positions():
            raise UnsupportedOperationError("memory layout does not support position shifts")

    @records_errors
    def shift_positions(self, seq_id: int, pos_start: int, pos_end: int, delta: int) -> None:
        """Add ``delta`` to positions in ``[pos_start, pos_end)``.

        Cells shifted below position 0 are evicted.

        Raises:
            UnsupportedOperationError: If the memory layout cannot shift.
        """
        self._check_seq(seq_id, allow_all=True)
        self._check_shift()
        self._backend.memory_seq_add(self._native, seq_id, pos_start, pos_end, delta)
        self._prefix.forget(seq_id)

    @records_errors
    def scale_positions(self, seq_id: int, pos_start: int, pos_end: int, divisor: int) -> None:
        """Integer-divide positions in ``[pos_start, pos_end)`` by ``divisor``.

        Raises:
            InvalidArgumentError: If ``divisor`` is less than 1.
            UnsupportedOperationError: If the memory layout cannot shift.
        """
        if divisor < 1:
            raise InvalidArgumentError(f"divisor must be >= 1, got {divisor}")
        self._check_seq(seq_id, allow_all=True)
        self._check_shift()
        if divisor == 1:
            return
        self._backend.memory_seq_div(self._native, seq_id, pos_start, pos_end, divisor)
        self._prefix.forget(seq_id)

    @records_errors
    def position_bounds(self, seq_id: int) -> Tuple[int, int]:
        """(min, max) position held by ``seq_id``; (-1, -1) when empty."""
        self._check_seq(seq_id, allow_all=False)
        native = self._native
        return (
            self._backend.memory_seq_pos_min(native, seq_id),
            self._backend.memory_seq_pos_max(native, seq_id),
        )

    def can_shift_positions(self) -> bool:
        return self._backend.memory_can_shift(self._native)

    def stats(self) -> MemoryStats:
        cells = self._native.cells
        total = cells.size
        used = cells.n_used
        return MemoryStats(
            total=total,
            used=used,
            free=total - used,
            utilization=used / total if total > 0 else 0.0,
        )

    # State persistence

    @records_errors
    def serialize(self, seq_id: Optional[int] = None) -> bytes:
        """Opaque state blob of one sequence, or of the whole context if None."""
        if seq_id is None:
            return self._backend.state_get_data(self._native)
        self._check_seq(seq_id, allow_all=False)
        return self._backend.state_seq_get_data(self._native, seq_id)

    def size_needed(self, seq_id: Optional[int] = None) -> int:
        """Size in bytes of ``serialize(seq_id)``."""
        return len(self.serialize(seq_id))

    def restore(self, data: bytes, seq_id: Optional[int] = None) -> int:
        """Restore a blob produced by ``serialize``.

        Args:
            data: Serialized state.
            seq_id: Destination sequence, or None for a whole-context blob.

        Returns:
            Bytes consumed, or 0 on failure (recorded in the error channel).
        """
        clear_error()
        if not data:
            set_error(InvalidArgumentError("restore: empty state data"))
            return 0
        try:
            if seq_id is None:
                n = self._backend.state_set_data(self._native, data)
            else:
                self._check_seq(seq_id, allow_all=False)
                n = self._backend.state_seq_set_data(self._native, data, seq_id)
        except InvalidArgumentError as e:
            set_error(e)
            return 0

        if seq_id is None:
            self._prefix.clear()
        else:
            self._prefix.forget(seq_id)
        if n == 0:
            set_error(StateError("restore: state data rejected by the engine"))
        return n

    @staticmethod
    def _verify_tokens(tokens: List[int], expected: Optional[Sequence[int]], path: str) -> None:
        if expected is not None and list(expected) != tokens:
            raise StateError(
                f"state file {path} was saved for a different token sequence",
                {"stored": len(tokens), "expected": len(expected)},
            )

    @records_errors
    def save_file(self, path: str, tokens: Sequence[int]) -> bool:
        """Write whole-context state plus ``tokens`` to ``path``."""
        try:
            return self._backend.state_save_file(self._native, path, list(tokens))
        except OSError as e:
            raise StateError(f"cannot write state file {path}: {e}") from e

    @records_errors
    def load_file(
        self,
        path: str,
        token_capacity: int,
        expected_tokens: Optional[Sequence[int]] = None,
    ) -> List[int]:
        """Restore whole-context state from ``path``.

        Returns:
            The stored token sequence.

        Raises:
            StateError: If the file is unreadable, holds more than
                ``token_capacity`` tokens, or does not match
                ``expected_tokens`` (memory is cleared in that case).
        """
        tokens = self._backend.state_load_file(self._native, path, token_capacity)
        self._prefix.clear()
        if tokens is None:
            raise StateError(f"cannot load state file {path}", {"token_capacity": token_capacity})
        try:
            self._verify_tokens(tokens, expected_tokens, path)
        except StateError:
            self._backend.memory_clear(self._native, True)
            raise
        logger.debug("loaded context state from %s (%d tokens)", path, len(tokens))
        return tokens

    @records_errors
    def save_seq_file(self, path: str, seq_id: int, tokens: Sequence[int]) -> int:
        """Write one sequence's state plus ``tokens``; returns bytes written."""
        self._check_seq(seq_id, allow_all=False)
        try:
            return self._backend.state_seq_save_file(self._native, path, seq_id, list(tokens))
        except OSError as e:
            raise StateError(f"cannot write state file {path}: {e}") from e

    @records_errors
    def load_seq_file(
        self,
        path: str,
        dest_seq_id: int,
        token_capacity: int,
        expected_tokens: Optional[Sequence[int]] = None,
    ) -> List[int]:
        """Restore one sequence's state from ``path`` into ``dest_seq_id``.

        Raises:
            StateError: As for ``load_file``; on a token mismatch only
                ``dest_seq_id`` is removed.
        """
        self._check_seq(dest_seq_id, allow_all=False)
        loaded = self._backend.state_seq_load_file(
            self._native, path, dest_seq_id, token_capacity
        )
        self._prefix.forget(dest_seq_id)
        if loaded is None:
            raise StateError(f"cannot load state file {path}", {"token_capacity": token_capacity})
        tokens, nbytes = loaded
        try:
            self._verify_tokens(tokens, expected_tokens, path)
        except StateError:
            self._backend.memory_seq_rm(self._native, dest_seq_id, -1, -1)
            raise
        logger.debug(
            "loaded sequence %d state from %s (%d tokens, %d bytes)",
            dest_seq_id, path, len(tokens), nbytes,
        )
        return tokens
