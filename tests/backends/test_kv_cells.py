"""
Tests for KVCells - the cell table behind sequence-scoped memory.
"""

import pytest
import torch

from genctl_lite.backends.kv_cells import KVCells


def _place_run(cells: KVCells, n: int, seq_ids=(0,), pos_start: int = 0) -> list:
    slots = cells.find_free(n)
    for i, cell in enumerate(slots):
        cells.place(cell, 100 + i, pos_start + i, seq_ids)
    return slots


@pytest.mark.unit
def test_kv_cells_initialization() -> None:
    cells = KVCells(16, 2)
    assert cells.n_used == 0
    assert cells.n_free == 16
    assert cells.seq.shape == (16, 2)
    assert cells.seq_pos_min(0) == -1
    assert cells.seq_pos_max(0) == -1


@pytest.mark.unit
def test_invalid_shape() -> None:
    with pytest.raises(ValueError):
        KVCells(0, 1)


@pytest.mark.unit
def test_find_free_exhaustion() -> None:
    cells = KVCells(4, 1)
    _place_run(cells, 3)
    assert cells.find_free(2) is None
    assert cells.find_free(1) == [3]


@pytest.mark.unit
def test_release_bumps_epoch() -> None:
    cells = KVCells(8, 2)
    slots = _place_run(cells, 3)
    epoch = cells.epochs[0]
    cells.release(slots)
    assert cells.n_used == 0
    assert cells.epochs[0] == epoch + 1
    assert cells.epochs[1] == 0


@pytest.mark.unit
def test_tail_removal_keeps_epoch() -> None:
    """Test that cutting a sequence's tail keeps its epoch and a middle cut bumps it."""
    cells = KVCells(8, 2)
    _place_run(cells, 6)
    epoch = cells.epochs[0]

    cells.seq_rm(0, 4, -1)
    assert cells.seq_pos_max(0) == 3
    assert cells.epochs[0] == epoch

    cells.seq_rm(0, 1, 2)
    assert cells.seq_cells(0) == [0, 2, 3]
    assert cells.epochs[0] == epoch + 1

    cells.seq_rm(0, -1, -1)
    assert cells.epochs[0] == epoch + 2


@pytest.mark.unit
def test_shared_cell_survives_single_removal() -> None:
    """Test that a cell stays resident while another sequence holds it."""
    cells = KVCells(8, 2)
    _place_run(cells, 2, seq_ids=(0, 1))
    cells.seq_rm(0, -1, -1)
    assert cells.n_used == 2
    assert cells.seq_pos_max(1) == 1
    assert cells.seq_pos_max(0) == -1


@pytest.mark.unit
def test_seq_cells_ordered_by_position() -> None:
    cells = KVCells(8, 1)
    for cell, pos in ((5, 2), (1, 0), (3, 1)):
        cells.place(cell, pos, pos, (0,))
    assert cells.seq_cells(0) == [1, 3, 5]


@pytest.mark.unit
def test_seq_div_floors() -> None:
    cells = KVCells(8, 1)
    _place_run(cells, 5)
    cells.seq_div(0, 1, 4, 2)
    assert sorted(cells.pos[cells.used_mask()].tolist()) == [0, 0, 1, 1, 4]


@pytest.mark.unit
def test_snapshot_restore_whole_table() -> None:
    cells = KVCells(8, 2)
    _place_run(cells, 3, seq_ids=(0,))
    _place_run(cells, 2, seq_ids=(1,), pos_start=10)
    snap = cells.snapshot()

    other = KVCells(8, 2)
    assert other.restore(snap)
    assert other.seq_pos_min(1) == 10
    assert other.seq_pos_max(0) == 2
    assert torch.equal(other.snapshot()["token"], snap["token"])

    # Wrong sequence width does not fit
    assert not KVCells(8, 3).restore(snap)


@pytest.mark.unit
def test_restore_sequence_checks_fit_first() -> None:
    """Test that an oversized sequence snapshot leaves the table unchanged."""
    big = KVCells(16, 1)
    _place_run(big, 10)
    snap = big.snapshot(0)

    small = KVCells(8, 2)
    _place_run(small, 4, seq_ids=(1,))
    assert not small.restore(snap, 0)
    assert small.n_used == 4
    assert small.seq_pos_max(0) == -1
