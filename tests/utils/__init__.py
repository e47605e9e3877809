"""Test utilities for genctl_lite."""

from tests.utils.comparison import assert_sequences_equal, assert_tensors_close
from tests.utils.scripted_backend import (
    BOS,
    BYTE_BASE,
    EOS,
    LONG,
    LONG_PIECE,
    N_CTX_TRAIN,
    N_VOCAB,
    ScriptedBackend,
)

__all__ = [
    # Comparison utilities
    "assert_sequences_equal",
    "assert_tensors_close",
    # Scripted engine
    "BOS",
    "BYTE_BASE",
    "EOS",
    "LONG",
    "LONG_PIECE",
    "N_CTX_TRAIN",
    "N_VOCAB",
    "ScriptedBackend",
]
