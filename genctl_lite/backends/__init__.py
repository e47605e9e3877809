"""
Inference-engine backends.

Provides:
- InferenceBackend: Primitive operations consumed from the engine
- CellMemoryBackend: Memory/state/decode bookkeeping over a KVCells table
- KVCells: Sequence-scoped cell table
- TransformersBackend: Hugging Face transformers engine (imported lazily)
"""

from genctl_lite.backends.base import (
    CellMemoryBackend,
    DECODE_FAILED,
    DECODE_INVALID_BATCH,
    DECODE_NO_KV_SLOT,
    DECODE_OK,
    InferenceBackend,
    ModelInfo,
    NativeContext,
)
from genctl_lite.backends.kv_cells import KVCells

_default_backend = None


def default_backend() -> InferenceBackend:
    """Return the process-wide transformers backend, creating it on first use."""
    global _default_backend
    if _default_backend is None:
        from genctl_lite.backends.transformers_backend import TransformersBackend

        _default_backend = TransformersBackend()
    return _default_backend


__all__ = [
    "CellMemoryBackend",
    "DECODE_FAILED",
    "DECODE_INVALID_BATCH",
    "DECODE_NO_KV_SLOT",
    "DECODE_OK",
    "InferenceBackend",
    "KVCells",
    "ModelInfo",
    "NativeContext",
    "default_backend",
]
