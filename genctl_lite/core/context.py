"""
Context: per-session state bound to one model.
"""

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import torch

from genctl_lite.cache.prefix_cache import PrefixCache
from genctl_lite.errors import (
    AllocationError,
    GenCtlError,
    InvalidArgumentError,
    records_errors,
)
from genctl_lite.memory.controller import MemoryController

logger = logging.getLogger(__name__)


class KVCacheType(str, Enum):
    """Storage type of cached keys/values."""
    F32 = "f32"
    F16 = "f16"
    BF16 = "bf16"
    Q8_0 = "q8_0"
    Q8_1 = "q8_1"
    Q5_0 = "q5_0"
    Q5_1 = "q5_1"
    Q4_0 = "q4_0"
    Q4_1 = "q4_1"


class AttentionType(Enum):
    UNSPECIFIED = -1
    CAUSAL = 0
    NON_CAUSAL = 1


class PoolingType(Enum):
    """How per-token embeddings are combined into one vector per text."""
    UNSPECIFIED = -1
    NONE = 0
    MEAN = 1
    CLS = 2
    LAST = 3
    RANK = 4


@dataclass
class ContextParams:
    """Context configuration.

    Attributes:
        n_ctx: Memory cells; 0 uses the model's training context length.
        n_batch: Maximum tokens per forward pass (and per prompt).
        n_ubatch: Physical micro-batch size, clamped to n_batch.
        n_seq_max: Number of distinct sequence ids.
        n_threads: Threads for single-token decode; None leaves the default.
        n_threads_batch: Threads for batch decode; None follows n_threads.
        type_k: Cached key type; None means F16.
        type_v: Cached value type; None means F16.
        attention_type: Causal or non-causal attention.
        flash_attn: Request fused attention kernels.
        embeddings: Keep embeddings of output tokens.
        pooling_type: Pooling used by ``embed``; UNSPECIFIED means LAST.
    """
    n_ctx: int = 2048
    n_batch: int = 2048
    n_ubatch: int = 512
    n_seq_max: int = 1
    n_threads: Optional[int] = None
    n_threads_batch: Optional[int] = None
    type_k: Optional[KVCacheType] = None
    type_v: Optional[KVCacheType] = None
    attention_type: AttentionType = AttentionType.UNSPECIFIED
    flash_attn: bool = False
    embeddings: bool = False
    pooling_type: PoolingType = PoolingType.UNSPECIFIED

    def __post_init__(self):
        if self.n_ctx < 0:
            raise InvalidArgumentError(f"n_ctx must be >= 0, got {self.n_ctx}")
        if self.n_batch <= 0 or self.n_ubatch <= 0:
            raise InvalidArgumentError(
                f"n_batch and n_ubatch must be positive, got {self.n_batch}, {self.n_ubatch}"
            )
        if self.n_seq_max <= 0:
            raise InvalidArgumentError(f"n_seq_max must be positive, got {self.n_seq_max}")
        for name in ("n_threads", "n_threads_batch"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise InvalidArgumentError(f"{name} must be positive, got {value}")
        self.n_ubatch = min(self.n_ubatch, self.n_batch)
        try:
            if self.type_k is not None:
                self.type_k = KVCacheType(self.type_k)
            if self.type_v is not None:
                self.type_v = KVCacheType(self.type_v)
            self.attention_type = AttentionType(self.attention_type)
            self.pooling_type = PoolingType(self.pooling_type)
        except ValueError as e:
            raise InvalidArgumentError(str(e)) from e


class Context:
    """Mutable per-session state: memory, output buffers and configuration.

    A context is owned by its creator and must not be used from several
    threads at once. Closing it invalidates every tensor returned by
    ``get_logits``/``get_embeddings``.

    Attributes:
        model: Model the context is bound to.
        params: Resolved parameters (n_ctx and cache types filled in).
        memory: Memory controller for this context.
        prefix_cache: Resident-token ledger used for prefix reuse.
    """

    @records_errors
    def __init__(self, model, params: Optional[ContextParams] = None):
        """Create a context.

        Raises:
            InvalidArgumentError: If the model was released or n_ctx
                resolves to 0.
            AllocationError: If the engine cannot create the context.
        """
        if model is None:
            raise InvalidArgumentError("model cannot be None")
        model.check_alive()
        if params is None:
            params = ContextParams()

        n_ctx = params.n_ctx or model.n_ctx_train
        if n_ctx <= 0:
            raise InvalidArgumentError("n_ctx is 0 and the model reports no training context")
        self.params = dataclasses.replace(
            params,
            n_ctx=n_ctx,
            n_threads_batch=params.n_threads_batch or params.n_threads,
            type_k=params.type_k or KVCacheType.F16,
            type_v=params.type_v or KVCacheType.F16,
        )

        self.model = model
        self.backend = model.backend
        try:
            self.native = self.backend.new_context(model.native, self.params)
        except GenCtlError:
            raise
        except Exception as e:
            raise AllocationError(f"failed to create context: {e}") from e

        self._closed = False
        self.prefix_cache = PrefixCache()
        self.memory = MemoryController(self)
        logger.debug(
            "created context for %s (n_ctx=%d, n_batch=%d, n_seq_max=%d)",
            model.path, n_ctx, self.params.n_batch, self.params.n_seq_max,
        )

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def n_ctx(self) -> int:
        return self.params.n_ctx

    @property
    def n_batch(self) -> int:
        return self.params.n_batch

    @property
    def n_ubatch(self) -> int:
        return self.params.n_ubatch

    @property
    def n_seq_max(self) -> int:
        return self.params.n_seq_max

    @property
    def type_k(self) -> KVCacheType:
        return self.params.type_k

    @property
    def type_v(self) -> KVCacheType:
        return self.params.type_v

    @property
    def embeddings(self) -> bool:
        return self.params.embeddings

    @property
    def pooling_type(self) -> PoolingType:
        if self.params.pooling_type is PoolingType.UNSPECIFIED:
            return PoolingType.LAST
        return self.params.pooling_type

    @property
    def closed(self) -> bool:
        return self._closed

    def check_open(self) -> None:
        if self._closed:
            raise InvalidArgumentError("context is closed")

    def set_embeddings(self, enabled: bool) -> None:
        """Turn embedding outputs on or off for later forward passes."""
        self.check_open()
        self.backend.set_embeddings(self.native, enabled)
        self.params.embeddings = enabled

    def get_logits(self, index: int = -1) -> Optional[torch.Tensor]:
        """Logits of output ``index`` of the last forward pass (-1 = last)."""
        self.check_open()
        return self.backend.get_logits(self.native, index)

    def get_embeddings(self, index: int = -1) -> Optional[torch.Tensor]:
        """Embeddings of output ``index`` of the last forward pass (-1 = last)."""
        self.check_open()
        return self.backend.get_embeddings(self.native, index)

    def close(self) -> None:
        """Free the native context. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.backend.free_context(self.native)
        self.prefix_cache.clear()
        self.native = None
        logger.debug("closed context for %s", self.model.path)
