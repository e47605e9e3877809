"""
Inference-engine contract.

The control layer never touches tensors of the network itself. It drives an
InferenceBackend through a small set of primitives: tokenize, token_to_piece,
decode (forward pass), logits/embeddings accessors, sequence-scoped memory
operations and state serialization. Buffer-filling primitives follow the
negative-size convention: when the caller's buffer is too small they return
``-(required size)`` and write nothing useful.

CellMemoryBackend implements the memory, state and decode bookkeeping on top
of a KVCells table so that concrete engines only provide the forward pass.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import torch

from genctl_lite.backends import state_io
from genctl_lite.backends.kv_cells import KVCells
from genctl_lite.errors import UnsupportedOperationError

logger = logging.getLogger(__name__)

# Forward-pass return codes
DECODE_OK = 0
DECODE_NO_KV_SLOT = 1
DECODE_INVALID_BATCH = -1
DECODE_FAILED = -2


@dataclass
class ModelInfo:
    """Static properties of a loaded model."""
    n_vocab: int
    n_embd: int
    n_layer: int
    n_ctx_train: int


@dataclass
class NativeContext:
    """Engine-side state of one context.

    Attributes:
        model: Native model handle the context was created from.
        n_ctx: Number of memory cells.
        n_batch: Maximum tokens per forward pass.
        n_ubatch: Physical micro-batch size.
        n_seq_max: Number of sequence ids.
        embeddings: Whether forward passes keep embeddings.
        cells: Sequence-scoped memory table.
        outputs: Logits of the last forward pass keyed by batch index.
        embd: Embeddings of the last forward pass keyed by batch index.
        last_output: Batch index of the last requested output, -1 if none.
        runs: Engine-private per-sequence state (e.g. attention caches).
    """
    model: Any
    n_ctx: int
    n_batch: int
    n_ubatch: int
    n_seq_max: int
    embeddings: bool
    cells: KVCells
    outputs: Dict[int, torch.Tensor] = field(default_factory=dict)
    embd: Dict[int, torch.Tensor] = field(default_factory=dict)
    last_output: int = -1
    runs: Dict[int, Any] = field(default_factory=dict)


class InferenceBackend(ABC):
    """Primitive operations consumed from the inference engine."""

    name = "abstract"

    # Models

    @abstractmethod
    def load_model(self, path: str, params: Any) -> Any:
        """Load weights from ``path``; raise on failure."""

    @abstractmethod
    def free_model(self, model: Any) -> None:
        """Free a native model handle."""

    @abstractmethod
    def describe_model(self, model: Any) -> ModelInfo:
        """Return vocabulary size, embedding size, layers and training context."""

    # Vocabulary

    @abstractmethod
    def tokenize(
        self,
        model: Any,
        text: str,
        out: torch.Tensor,
        add_special: bool,
        parse_special: bool,
    ) -> int:
        """Write token ids into ``out``; return count or -(required size)."""

    @abstractmethod
    def token_to_piece(self, model: Any, token: int, out: bytearray, special: bool) -> int:
        """Write the UTF-8 bytes of ``token`` into ``out``; return length or -(required size)."""

    @abstractmethod
    def is_eog(self, model: Any, token: int) -> bool:
        """True if ``token`` ends generation."""

    def n_vocab(self, model: Any) -> int:
        return self.describe_model(model).n_vocab

    # Chat templates

    def chat_template(self, model: Any, name: Optional[str] = None) -> Optional[str]:
        """Template stored with the model (or its template called ``name``), None if absent."""
        return None

    def apply_chat_template(
        self,
        model: Any,
        messages: List[Dict[str, str]],
        add_assistant: bool,
        template: Optional[str] = None,
    ) -> str:
        """Render role/content ``messages`` into a prompt string."""
        raise UnsupportedOperationError(f"{self.name} backend has no chat templates")

    # Contexts

    @abstractmethod
    def new_context(self, model: Any, params: Any) -> Any:
        """Create a native context; ``params.n_ctx`` is already resolved."""

    @abstractmethod
    def free_context(self, ctx: Any) -> None:
        """Free a native context."""

    @abstractmethod
    def decode(self, ctx: Any, batch: Any) -> int:
        """Run the forward pass over ``batch``; 0, 1 (no KV slot) or negative."""

    @abstractmethod
    def encode(self, ctx: Any, batch: Any) -> int:
        """Run an encoder pass over ``batch`` without touching memory."""

    @abstractmethod
    def set_embeddings(self, ctx: Any, enabled: bool) -> None:
        """Turn per-token embedding outputs of later forward passes on or off."""

    @abstractmethod
    def get_logits(self, ctx: Any, index: int) -> Optional[torch.Tensor]:
        """Logits for batch index ``index`` (-1 = last output) or None."""

    @abstractmethod
    def get_embeddings(self, ctx: Any, index: int) -> Optional[torch.Tensor]:
        """Embeddings for batch index ``index`` (-1 = last output) or None."""

    # Memory

    @abstractmethod
    def memory_clear(self, ctx: Any, wipe: bool) -> None: ...

    @abstractmethod
    def memory_seq_rm(self, ctx: Any, seq_id: int, p0: int, p1: int) -> bool: ...

    @abstractmethod
    def memory_seq_cp(self, ctx: Any, src: int, dst: int, p0: int, p1: int) -> None: ...

    @abstractmethod
    def memory_seq_keep(self, ctx: Any, seq_id: int) -> None: ...

    @abstractmethod
    def memory_seq_add(self, ctx: Any, seq_id: int, p0: int, p1: int, delta: int) -> None: ...

    @abstractmethod
    def memory_seq_div(self, ctx: Any, seq_id: int, p0: int, p1: int, d: int) -> None: ...

    @abstractmethod
    def memory_seq_pos_min(self, ctx: Any, seq_id: int) -> int: ...

    @abstractmethod
    def memory_seq_pos_max(self, ctx: Any, seq_id: int) -> int: ...

    @abstractmethod
    def memory_can_shift(self, ctx: Any) -> bool: ...

    # State

    @abstractmethod
    def state_get_data(self, ctx: Any) -> bytes: ...

    @abstractmethod
    def state_set_data(self, ctx: Any, data: bytes) -> int: ...

    @abstractmethod
    def state_seq_get_data(self, ctx: Any, seq_id: int) -> bytes: ...

    @abstractmethod
    def state_seq_set_data(self, ctx: Any, data: bytes, dest_seq_id: int) -> int: ...

    @abstractmethod
    def state_save_file(self, ctx: Any, path: str, tokens: Sequence[int]) -> bool: ...

    @abstractmethod
    def state_load_file(
        self, ctx: Any, path: str, token_capacity: int
    ) -> Optional[List[int]]: ...

    @abstractmethod
    def state_seq_save_file(
        self, ctx: Any, path: str, seq_id: int, tokens: Sequence[int]
    ) -> int: ...

    @abstractmethod
    def state_seq_load_file(
        self, ctx: Any, path: str, dest_seq_id: int, token_capacity: int
    ) -> Optional[Tuple[List[int], int]]: ...


class CellMemoryBackend(InferenceBackend):
    """Backend whose memory is a KVCells table.

    Subclasses implement model loading, the vocabulary primitives and
    ``_forward``; everything keyed by sequence id lives here.

    Attributes:
        partial_removal: Whether ``memory_seq_rm`` can evict a position range
            rather than whole sequences.
        can_shift: Whether positions may be shifted or divided.
    """

    partial_removal = True
    can_shift = True

    @abstractmethod
    def _forward(
        self, ctx: NativeContext, entries: List[Any], cells: List[int]
    ) -> Tuple[Dict[int, torch.Tensor], Dict[int, torch.Tensor]]:
        """Compute outputs for freshly placed cells.

        Args:
            ctx: Context whose cells already hold the batch.
            entries: Batch entries (token, pos, seq_ids, output).
            cells: Cell index assigned to each entry.

        Returns:
            Tuple of (logits, embeddings) dicts keyed by batch index, holding
            only entries whose output flag is set.
        """

    def _encode(self, ctx: NativeContext, entries: List[Any]) -> Dict[int, torch.Tensor]:
        raise NotImplementedError(f"{self.name} backend has no encoder")

    def new_context(self, model: Any, params: Any) -> NativeContext:
        return NativeContext(
            model=model,
            n_ctx=params.n_ctx,
            n_batch=params.n_batch,
            n_ubatch=params.n_ubatch,
            n_seq_max=params.n_seq_max,
            embeddings=params.embeddings,
            cells=KVCells(params.n_ctx, params.n_seq_max),
        )

    def free_context(self, ctx: NativeContext) -> None:
        ctx.outputs.clear()
        ctx.embd.clear()
        ctx.runs.clear()

    def set_embeddings(self, ctx: NativeContext, enabled: bool) -> None:
        ctx.embeddings = enabled

    def _validate_entries(self, ctx: NativeContext, entries: List[Any]) -> bool:
        if not entries:
            logger.debug("decode: empty batch")
            return False
        if len(entries) > ctx.n_batch:
            logger.debug("decode: %d tokens exceed n_batch=%d", len(entries), ctx.n_batch)
            return False
        for e in entries:
            if not e.seq_ids:
                return False
            for s in e.seq_ids:
                if s < 0 or s >= ctx.n_seq_max:
                    logger.debug("decode: seq_id %d out of range", s)
                    return False
        return True

    def decode(self, ctx: NativeContext, batch: Any) -> int:
        entries = batch.entries()
        if not self._validate_entries(ctx, entries):
            return DECODE_INVALID_BATCH

        cells = ctx.cells.find_free(len(entries))
        if cells is None:
            return DECODE_NO_KV_SLOT

        for cell, e in zip(cells, entries):
            ctx.cells.place(cell, e.token, e.pos, e.seq_ids)

        try:
            logits, embd = self._forward(ctx, entries, cells)
        except Exception:
            logger.exception("forward pass failed for %d tokens", len(entries))
            ctx.cells.release(cells)
            return DECODE_FAILED

        ctx.outputs = logits
        ctx.embd = embd
        ctx.last_output = max(logits) if logits else -1
        return DECODE_OK

    def encode(self, ctx: NativeContext, batch: Any) -> int:
        entries = batch.entries()
        if not self._validate_entries(ctx, entries):
            return DECODE_INVALID_BATCH
        try:
            ctx.embd = self._encode(ctx, entries)
        except NotImplementedError as e:
            logger.debug("encode: %s", e)
            return DECODE_INVALID_BATCH
        except Exception:
            logger.exception("encoder pass failed for %d tokens", len(entries))
            return DECODE_FAILED
        ctx.outputs = {}
        ctx.last_output = max(ctx.embd) if ctx.embd else -1
        return DECODE_OK

    def get_logits(self, ctx: NativeContext, index: int) -> Optional[torch.Tensor]:
        if index < 0:
            index = ctx.last_output
        return ctx.outputs.get(index)

    def get_embeddings(self, ctx: NativeContext, index: int) -> Optional[torch.Tensor]:
        if index < 0:
            index = ctx.last_output
        return ctx.embd.get(index)

    # Memory

    def memory_clear(self, ctx: NativeContext, wipe: bool) -> None:
        ctx.cells.clear(wipe)
        ctx.runs.clear()

    def memory_seq_rm(self, ctx: NativeContext, seq_id: int, p0: int, p1: int) -> bool:
        whole = p0 <= 0 and p1 < 0
        if not self.partial_removal and not whole:
            return False
        ctx.cells.seq_rm(seq_id, p0, p1)
        return True

    def memory_seq_cp(self, ctx: NativeContext, src: int, dst: int, p0: int, p1: int) -> None:
        ctx.cells.seq_cp(src, dst, p0, p1)

    def memory_seq_keep(self, ctx: NativeContext, seq_id: int) -> None:
        ctx.cells.seq_keep(seq_id)

    def memory_seq_add(self, ctx: NativeContext, seq_id: int, p0: int, p1: int, delta: int) -> None:
        ctx.cells.seq_add(seq_id, p0, p1, delta)

    def memory_seq_div(self, ctx: NativeContext, seq_id: int, p0: int, p1: int, d: int) -> None:
        ctx.cells.seq_div(seq_id, p0, p1, d)

    def memory_seq_pos_min(self, ctx: NativeContext, seq_id: int) -> int:
        return ctx.cells.seq_pos_min(seq_id)

    def memory_seq_pos_max(self, ctx: NativeContext, seq_id: int) -> int:
        return ctx.cells.seq_pos_max(seq_id)

    def memory_can_shift(self, ctx: NativeContext) -> bool:
        return self.can_shift

    # State

    def _context_payload(self, ctx: NativeContext) -> Dict[str, Any]:
        ids = sorted(ctx.outputs)
        logits = torch.stack([ctx.outputs[i] for i in ids]) if ids else torch.empty(0)
        return {
            "n_seq_max": ctx.n_seq_max,
            "cells": ctx.cells.snapshot(),
            "output_ids": torch.tensor(ids, dtype=torch.int64),
            "logits": logits,
            "last_output": ctx.last_output,
        }

    def _apply_context_payload(self, ctx: NativeContext, payload: Dict[str, Any]) -> bool:
        if payload.get("n_seq_max") != ctx.n_seq_max:
            return False
        if not ctx.cells.restore(payload["cells"]):
            return False
        ids = payload["output_ids"].tolist()
        ctx.outputs = {i: payload["logits"][k] for k, i in enumerate(ids)}
        ctx.embd = {}
        ctx.last_output = payload["last_output"]
        ctx.runs.clear()
        return True

    def state_get_data(self, ctx: NativeContext) -> bytes:
        return state_io.dump_blob(state_io.CONTEXT_MAGIC, self._context_payload(ctx))

    def state_set_data(self, ctx: NativeContext, data: bytes) -> int:
        payload = state_io.load_blob(data, state_io.CONTEXT_MAGIC)
        if payload is None or not self._apply_context_payload(ctx, payload):
            return 0
        return len(data)

    def state_seq_get_data(self, ctx: NativeContext, seq_id: int) -> bytes:
        return state_io.dump_blob(state_io.SEQUENCE_MAGIC, {"cells": ctx.cells.snapshot(seq_id)})

    def state_seq_set_data(self, ctx: NativeContext, data: bytes, dest_seq_id: int) -> int:
        payload = state_io.load_blob(data, state_io.SEQUENCE_MAGIC)
        if payload is None or not ctx.cells.restore(payload["cells"], dest_seq_id):
            return 0
        ctx.runs.pop(dest_seq_id, None)
        return len(data)

    def state_save_file(self, ctx: NativeContext, path: str, tokens: Sequence[int]) -> bool:
        state_io.save_file(path, state_io.CONTEXT_FILE_MAGIC, tokens, self._context_payload(ctx))
        return True

    def state_load_file(
        self, ctx: NativeContext, path: str, token_capacity: int
    ) -> Optional[List[int]]:
        loaded = state_io.load_file(path, state_io.CONTEXT_FILE_MAGIC)
        if loaded is None:
            return None
        tokens, payload, _ = loaded
        if len(tokens) > token_capacity:
            logger.debug("state file holds %d tokens, capacity %d", len(tokens), token_capacity)
            return None
        if not self._apply_context_payload(ctx, payload):
            return None
        return tokens

    def state_seq_save_file(
        self, ctx: NativeContext, path: str, seq_id: int, tokens: Sequence[int]
    ) -> int:
        payload = {"cells": ctx.cells.snapshot(seq_id)}
        return state_io.save_file(path, state_io.SEQUENCE_FILE_MAGIC, tokens, payload)

    def state_seq_load_file(
        self, ctx: NativeContext, path: str, dest_seq_id: int, token_capacity: int
    ) -> Optional[Tuple[List[int], int]]:
        loaded = state_io.load_file(path, state_io.SEQUENCE_FILE_MAGIC)
        if loaded is None:
            return None
        tokens, payload, nbytes = loaded
        if len(tokens) > token_capacity:
            return None
        if not ctx.cells.restore(payload["cells"], dest_seq_id):
            return None
        ctx.runs.pop(dest_seq_id, None)
        return tokens, nbytes
