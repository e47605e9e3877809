"""
Hugging Face transformers engine.

Loads causal language models with AutoModelForCausalLM/AutoTokenizer and runs
forward passes over the cells resident in a context's KVCells table. Each
sequence keeps the attention cache returned by the model; appending tokens at
increasing positions reuses it and removing a tail of positions crops it, while
any other edit to the sequence (removal in the middle, shift, divide, keep, copy
into, restore) makes the next forward pass recompute the sequence from its
resident cells at their current positions.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, DynamicCache

try:
    from transformers.models.gpt2.tokenization_gpt2 import bytes_to_unicode
except ImportError:
    from transformers.convert_slow_tokenizer import bytes_to_unicode

from genctl_lite.backends.base import CellMemoryBackend, ModelInfo, NativeContext
from genctl_lite.errors import UnsupportedOperationError

logger = logging.getLogger(__name__)


_BYTE_FALLBACK = re.compile(r"<0x([0-9A-Fa-f]{2})>")
_SPIECE_UNDERLINE = "\u2581"


class PieceDecoder:
    """Maps token ids to the exact bytes they stand for.

    ``tokenizer.decode([token])`` cannot be used for single tokens: byte-level
    BPE vocabularies split multi-byte characters across tokens (each decodes
    to U+FFFD on its own) and SentencePiece decoders strip the leading space.
    The vocabulary strings are mapped back to bytes instead.

    Attributes:
        mode: "byte_level", "sentencepiece" or "text" (decode fallback).
    """

    def __init__(self, tokenizer: Any) -> None:
        self.tokenizer = tokenizer
        added = getattr(tokenizer, "added_tokens_decoder", None) or {}
        self.added = {int(i): t.content for i, t in added.items()}
        self.special = frozenset(
            set(tokenizer.all_special_ids) | {int(i) for i, t in added.items() if t.special}
        )
        self.mode = self._detect_mode(tokenizer)
        self.byte_decoder = (
            {c: b for b, c in bytes_to_unicode().items()} if self.mode == "byte_level" else {}
        )

    @staticmethod
    def _detect_mode(tokenizer: Any) -> str:
        if getattr(tokenizer, "byte_decoder", None) is not None:
            return "byte_level"
        backend = getattr(tokenizer, "backend_tokenizer", None)
        decoder = getattr(backend, "decoder", None)
        if decoder is not None and type(decoder).__name__ == "ByteLevel":
            return "byte_level"
        if getattr(tokenizer, "sp_model", None) is not None:
            return "sentencepiece"
        if any(t.startswith(_SPIECE_UNDERLINE) for t in tokenizer.get_vocab()):
            return "sentencepiece"
        return "text"

    def piece(self, token: int, special: bool) -> bytes:
        if token in self.special:
            if not special:
                return b""
            text = self.added.get(token) or self.tokenizer.convert_ids_to_tokens(token) or ""
            return text.encode("utf-8")
        if token in self.added:
            return self.added[token].encode("utf-8")

        text = self.tokenizer.convert_ids_to_tokens(token)
        if text is None:
            return b""
        if self.mode == "byte_level":
            try:
                return bytes(self.byte_decoder[c] for c in text)
            except KeyError:
                return text.encode("utf-8")
        if self.mode == "sentencepiece":
            fallback = _BYTE_FALLBACK.fullmatch(text)
            if fallback:
                return bytes([int(fallback.group(1), 16)])
            return text.replace(_SPIECE_UNDERLINE, " ").encode("utf-8")
        return self.tokenizer.decode([token], clean_up_tokenization_spaces=False).encode("utf-8")


@dataclass
class HFModel:
    """Native model handle for the transformers backend."""
    model: Any
    tokenizer: Any
    device: torch.device
    eog_ids: FrozenSet[int]
    info: ModelInfo
    pieces: Optional[PieceDecoder] = None


@dataclass
class _SequenceRun:
    past: Any
    epoch: int
    n_cached: int
    last_pos: int


def _eog_ids(model: Any, tokenizer: Any) -> FrozenSet[int]:
    ids = set()
    candidates = [tokenizer.eos_token_id]
    generation_config = getattr(model, "generation_config", None)
    if generation_config is not None:
        candidates.append(generation_config.eos_token_id)
    for candidate in candidates:
        if candidate is None:
            continue
        if isinstance(candidate, (list, tuple)):
            ids.update(int(c) for c in candidate)
        else:
            ids.add(int(candidate))
    return frozenset(ids)


class TransformersBackend(CellMemoryBackend):
    """Inference engine backed by a Hugging Face causal LM."""

    name = "transformers"

    def __init__(self, trust_remote_code: bool = True) -> None:
        self.trust_remote_code = trust_remote_code

    def _translate_params(self, params: Any) -> Tuple[torch.device, torch.dtype]:
        """Map engine-agnostic model params onto a device and dtype."""
        if params.device:
            device = torch.device(params.device)
        elif params.n_gpu_layers != 0 and torch.cuda.is_available():
            device = torch.device(f"cuda:{params.main_gpu}")
        else:
            device = torch.device("cpu")

        dtype = getattr(torch, params.dtype) if params.dtype else torch.float32
        if params.use_mlock or not params.use_mmap:
            logger.debug("use_mmap/use_mlock have no effect on the transformers backend")
        return device, dtype

    # Models

    def load_model(self, path: str, params: Any) -> HFModel:
        device, dtype = self._translate_params(params)
        tokenizer = AutoTokenizer.from_pretrained(path, trust_remote_code=self.trust_remote_code)
        model = AutoModelForCausalLM.from_pretrained(
            path,
            torch_dtype=dtype,
            trust_remote_code=self.trust_remote_code,
        )
        model = model.to(device)
        model.eval()

        config = model.config
        info = ModelInfo(
            n_vocab=config.vocab_size,
            n_embd=config.hidden_size,
            n_layer=config.num_hidden_layers,
            n_ctx_train=getattr(config, "max_position_embeddings", 0) or 0,
        )
        logger.info(
            "loaded %s on %s (vocab=%d, layers=%d, n_ctx_train=%d)",
            path, device, info.n_vocab, info.n_layer, info.n_ctx_train,
        )
        pieces = PieceDecoder(tokenizer)
        logger.debug("token pieces of %s decoded in %s mode", path, pieces.mode)
        return HFModel(model, tokenizer, device, _eog_ids(model, tokenizer), info, pieces)

    def free_model(self, model: HFModel) -> None:
        model.model = None
        model.tokenizer = None
        model.pieces = None

    def describe_model(self, model: HFModel) -> ModelInfo:
        return model.info

    # Vocabulary

    def tokenize(
        self,
        model: HFModel,
        text: str,
        out: torch.Tensor,
        add_special: bool,
        parse_special: bool,
    ) -> int:
        ids = model.tokenizer.encode(
            text,
            add_special_tokens=add_special,
            split_special_tokens=not parse_special,
        )
        n = len(ids)
        if n > out.numel():
            return -n
        if n:
            out[:n] = torch.tensor(ids, dtype=out.dtype)
        return n

    def token_to_piece(self, model: HFModel, token: int, out: bytearray, special: bool) -> int:
        data = model.pieces.piece(token, special)
        if len(data) > len(out):
            return -len(data)
        out[: len(data)] = data
        return len(data)

    def is_eog(self, model: HFModel, token: int) -> bool:
        return token in model.eog_ids

    # Chat templates

    def chat_template(self, model: HFModel, name: Optional[str] = None) -> Optional[str]:
        template = getattr(model.tokenizer, "chat_template", None)
        if isinstance(template, dict):
            return template.get(name or "default")
        if name:
            return None
        return template or None

    def apply_chat_template(
        self,
        model: HFModel,
        messages: List[Dict[str, str]],
        add_assistant: bool,
        template: Optional[str] = None,
    ) -> str:
        if template is None and self.chat_template(model) is None:
            raise UnsupportedOperationError("model has no chat template")
        return model.tokenizer.apply_chat_template(
            messages,
            chat_template=template,
            tokenize=False,
            add_generation_prompt=add_assistant,
        )

    # Contexts

    def new_context(self, model: HFModel, params: Any) -> NativeContext:
        if params.n_threads:
            torch.set_num_threads(params.n_threads)
        if params.flash_attn or params.type_k != "f16" or params.type_v != "f16":
            logger.debug("flash_attn and KV cache types are not applied by the transformers backend")
        return super().new_context(model, params)

    # Memory

    def memory_seq_rm(self, ctx: NativeContext, seq_id: int, p0: int, p1: int) -> bool:
        if not super().memory_seq_rm(ctx, seq_id, p0, p1):
            return False
        if ctx.cells.is_tail_range(p0, p1):
            seq_ids = range(ctx.n_seq_max) if seq_id < 0 else [seq_id]
            for s in seq_ids:
                self._crop_run(ctx, s)
        return True

    def _crop_run(self, ctx: NativeContext, seq_id: int) -> None:
        """Trim a sequence's attention cache to the cells left after a tail removal."""
        run = ctx.runs.get(seq_id)
        if run is None:
            return
        resident = ctx.cells.seq_cells(seq_id)
        n = len(resident)
        if n == run.n_cached:
            return
        stale = run.epoch != ctx.cells.epochs[seq_id]
        if stale or n == 0 or n > run.n_cached or not hasattr(run.past, "crop"):
            del ctx.runs[seq_id]
            return
        run.past.crop(n)
        run.n_cached = n
        run.last_pos = int(ctx.cells.pos[resident[-1]])
        logger.debug("cropped sequence %d cache to %d cells", seq_id, n)

    # Forward passes

    def _run_sequence(
        self, ctx: NativeContext, seq_id: int, new_cells: List[int]
    ) -> Tuple[Any, Dict[int, int]]:
        """Bring one sequence's attention cache up to date with its cells.

        Returns:
            Tuple of (model output, cell index -> output row).
        """
        hf = ctx.model
        cells = ctx.cells
        resident = cells.seq_cells(seq_id)
        fresh = set(new_cells)
        old = [c for c in resident if c not in fresh]
        new = [c for c in resident if c in fresh]

        run = ctx.runs.get(seq_id)
        incremental = (
            run is not None
            and run.epoch == cells.epochs[seq_id]
            and run.n_cached == len(old)
            and (not new or int(cells.pos[new[0]]) > run.last_pos)
        )
        feed = new if incremental else resident
        # A Cache object (not legacy tuples) comes back only if one goes in
        past = run.past if incremental else DynamicCache()
        if not incremental:
            logger.debug("recomputing sequence %d over %d cells", seq_id, len(resident))

        index = torch.tensor(feed, dtype=torch.long)
        input_ids = cells.token[index].long().unsqueeze(0).to(hf.device)
        position_ids = cells.pos[index].long().unsqueeze(0).to(hf.device)

        with torch.no_grad():
            output = hf.model(
                input_ids=input_ids,
                position_ids=position_ids,
                past_key_values=past,
                use_cache=True,
                output_hidden_states=ctx.embeddings,
            )

        ctx.runs[seq_id] = _SequenceRun(
            past=output.past_key_values,
            epoch=cells.epochs[seq_id],
            n_cached=len(resident),
            last_pos=int(cells.pos[resident[-1]]) if resident else -1,
        )
        return output, {cell: row for row, cell in enumerate(feed)}

    def _forward(
        self, ctx: NativeContext, entries: List[Any], cells: List[int]
    ) -> Tuple[Dict[int, torch.Tensor], Dict[int, torch.Tensor]]:
        # Outputs come from each entry's first sequence. Other sequences an
        # entry joined no longer match their cached cell count and are
        # recomputed on their next forward pass.
        primary: Dict[int, List[int]] = {}
        for i, e in enumerate(entries):
            primary.setdefault(e.seq_ids[0], []).append(i)

        logits: Dict[int, torch.Tensor] = {}
        embd: Dict[int, torch.Tensor] = {}
        for seq_id, indices in primary.items():
            output, rows = self._run_sequence(ctx, seq_id, [cells[i] for i in indices])
            for i in indices:
                if not entries[i].output:
                    continue
                row = rows[cells[i]]
                logits[i] = output.logits[0, row].float().cpu()
                if ctx.embeddings:
                    embd[i] = output.hidden_states[-1][0, row].float().cpu()
        return logits, embd

    def _encode(self, ctx: NativeContext, entries: List[Any]) -> Dict[int, torch.Tensor]:
        hf = ctx.model
        groups: Dict[int, List[int]] = {}
        for i, e in enumerate(entries):
            groups.setdefault(e.seq_ids[0], []).append(i)

        embd: Dict[int, torch.Tensor] = {}
        for indices in groups.values():
            input_ids = torch.tensor([[entries[i].token for i in indices]], device=hf.device)
            position_ids = torch.tensor([[entries[i].pos for i in indices]], device=hf.device)
            with torch.no_grad():
                output = hf.model(
                    input_ids=input_ids,
                    position_ids=position_ids,
                    use_cache=False,
                    output_hidden_states=True,
                )
            hidden = output.hidden_states[-1][0]
            for row, i in enumerate(indices):
                if entries[i].output:
                    embd[i] = hidden[row].float().cpu()
        return embd
