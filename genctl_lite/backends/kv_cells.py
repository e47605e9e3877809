"""
Cell table backing an engine's sequence-scoped memory.

The table pre-allocates ``size`` cells, like a page pool pre-allocates pages.
A cell holds one token at one position and belongs to a set of sequence ids;
a cell with no sequence is free. All sequence-scoped memory operations
(remove, copy, keep, shift, divide, bounds, snapshot/restore) are expressed as
masked tensor updates over this table.
"""

from typing import Dict, List, Optional

import torch

_POS_INF = 2**31 - 1


class KVCells:
    """Fixed-capacity table of (position, token, sequence set) cells.

    Attributes:
        size: Number of cells (the context length).
        n_seq_max: Number of distinct sequence ids.
        pos: Position per cell, -1 when free. Shape [size].
        token: Token per cell. Shape [size].
        seq: Sequence membership. Shape [size, n_seq_max].
        epochs: Per-sequence counter bumped on every edit other than an
            append or a tail removal, so engines can tell when derived
            per-sequence state is stale. A tail removal only shortens the
            sequence; engines trim their state to the surviving cells.
    """

    def __init__(self, size: int, n_seq_max: int) -> None:
        if size <= 0 or n_seq_max <= 0:
            raise ValueError(f"invalid cell table shape ({size}, {n_seq_max})")

        self.size = size
        self.n_seq_max = n_seq_max
        self.pos = torch.full((size,), -1, dtype=torch.int32)
        self.token = torch.zeros(size, dtype=torch.int32)
        self.seq = torch.zeros((size, n_seq_max), dtype=torch.bool)
        self.epochs = [0] * n_seq_max

    # Bookkeeping

    def used_mask(self) -> torch.Tensor:
        return self.seq.any(dim=1)

    @property
    def n_used(self) -> int:
        return int(self.used_mask().sum())

    @property
    def n_free(self) -> int:
        return self.size - self.n_used

    def find_free(self, n: int) -> Optional[List[int]]:
        """Return ``n`` free cell indices, or None if the table can't hold them."""
        free = (~self.used_mask()).nonzero().flatten()
        if free.numel() < n:
            return None
        return free[:n].tolist()

    def place(self, cell: int, token: int, pos: int, seq_ids) -> None:
        self.pos[cell] = pos
        self.token[cell] = token
        self.seq[cell] = False
        for s in seq_ids:
            self.seq[cell, s] = True

    def release(self, cells: List[int]) -> None:
        """Free cells placed by a forward pass that did not complete."""
        if not cells:
            return
        index = torch.tensor(cells, dtype=torch.long)
        touched = self.seq[index].any(dim=0)
        self.seq[index] = False
        self.pos[index] = -1
        self._bump(touched)

    def _bump(self, seq_mask: torch.Tensor) -> None:
        for s in seq_mask.nonzero().flatten().tolist():
            self.epochs[s] += 1

    def _seq_columns(self, seq_id: int) -> torch.Tensor:
        mask = torch.zeros(self.n_seq_max, dtype=torch.bool)
        if seq_id < 0:
            mask[:] = True
        else:
            mask[seq_id] = True
        return mask

    @staticmethod
    def is_tail_range(p0: int, p1: int) -> bool:
        """True for a removal of every position from ``p0 > 0`` onwards."""
        return p0 > 0 and p1 < 0

    def _range(self, p0: int, p1: int) -> torch.Tensor:
        lo = 0 if p0 < 0 else p0
        hi = _POS_INF if p1 < 0 else p1
        return (self.pos >= lo) & (self.pos < hi)

    def _free_orphans(self) -> None:
        self.pos[~self.used_mask()] = -1

    # Sequence operations

    def clear(self, wipe: bool = True) -> None:
        self.seq[:] = False
        self.pos[:] = -1
        if wipe:
            self.token.zero_()
        self.epochs = [e + 1 for e in self.epochs]

    def seq_rm(self, seq_id: int, p0: int, p1: int) -> None:
        cols = self._seq_columns(seq_id)
        rows = self._range(p0, p1)
        hit = self.seq[rows][:, cols].any(dim=0)
        self.seq[rows.unsqueeze(1) & cols.unsqueeze(0)] = False
        self._free_orphans()
        if self.is_tail_range(p0, p1):
            # Survivors stay a position-ordered prefix of the sequence
            return
        touched = torch.zeros(self.n_seq_max, dtype=torch.bool)
        touched[cols] = hit
        self._bump(touched)

    def seq_cp(self, src: int, dst: int, p0: int, p1: int) -> None:
        if src == dst:
            return
        rows = self._range(p0, p1) & self.seq[:, src]
        self.seq[rows, dst] = True
        self.epochs[dst] += 1

    def seq_keep(self, seq_id: int) -> None:
        keep = self.seq[:, seq_id].clone()
        others = self.seq.any(dim=0)
        others[seq_id] = False
        self.seq[:] = False
        self.seq[keep, seq_id] = True
        self._free_orphans()
        self._bump(others)

    def seq_add(self, seq_id: int, p0: int, p1: int, delta: int) -> None:
        if delta == 0:
            return
        cols = self._seq_columns(seq_id)
        rows = self._range(p0, p1) & self.seq[:, cols].any(dim=1)
        self.pos[rows] += delta
        # Cells shifted before position 0 are evicted
        evicted = rows & (self.pos < 0)
        self.seq[evicted] = False
        self._free_orphans()
        self._bump(cols)

    def seq_div(self, seq_id: int, p0: int, p1: int, d: int) -> None:
        if d == 1:
            return
        cols = self._seq_columns(seq_id)
        rows = self._range(p0, p1) & self.seq[:, cols].any(dim=1)
        self.pos[rows] = torch.div(self.pos[rows], d, rounding_mode="floor")
        self._bump(cols)

    def seq_pos_min(self, seq_id: int) -> int:
        rows = self.seq[:, self._seq_columns(seq_id)].any(dim=1)
        if not rows.any():
            return -1
        return int(self.pos[rows].min())

    def seq_pos_max(self, seq_id: int) -> int:
        rows = self.seq[:, self._seq_columns(seq_id)].any(dim=1)
        if not rows.any():
            return -1
        return int(self.pos[rows].max())

    def seq_cells(self, seq_id: int) -> List[int]:
        """Cell indices of ``seq_id`` ordered by position."""
        cells = self.seq[:, seq_id].nonzero().flatten()
        order = torch.argsort(self.pos[cells], stable=True)
        return cells[order].tolist()

    # Snapshots

    def snapshot(self, seq_id: Optional[int] = None) -> Dict[str, torch.Tensor]:
        """Copy the used cells (or one sequence's cells) out of the table."""
        if seq_id is None:
            rows = self.used_mask().nonzero().flatten()
            order = torch.argsort(self.pos[rows], stable=True)
            rows = rows[order]
            return {
                "pos": self.pos[rows].clone(),
                "token": self.token[rows].clone(),
                "seq": self.seq[rows].clone(),
            }
        rows = torch.tensor(self.seq_cells(seq_id), dtype=torch.long)
        return {
            "pos": self.pos[rows].clone(),
            "token": self.token[rows].clone(),
        }

    def restore(self, snap: Dict[str, torch.Tensor], dest_seq: Optional[int] = None) -> bool:
        """Load a snapshot taken by ``snapshot``.

        A whole-table snapshot replaces every cell. A sequence snapshot
        replaces the cells of ``dest_seq`` only.

        Returns:
            False if the snapshot does not fit; the table is unchanged then.
        """
        pos = snap["pos"]
        token = snap["token"]
        n = pos.numel()

        if dest_seq is None:
            seq = snap["seq"]
            if n > self.size or seq.shape[1] != self.n_seq_max:
                return False
            self.clear(wipe=True)
            self.pos[:n] = pos
            self.token[:n] = token
            self.seq[:n] = seq
            return True

        own = self.seq[:, dest_seq]
        shared = own & (self.seq.sum(dim=1) > 1)
        available = self.n_free + int((own & ~shared).sum())
        if n > available:
            return False
        self.seq_rm(dest_seq, -1, -1)
        cells = self.find_free(n)
        for cell, p, t in zip(cells, pos.tolist(), token.tolist()):
            self.place(cell, t, p, (dest_seq,))
        self.epochs[dest_seq] += 1
        return True
