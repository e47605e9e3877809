"""
Scripted in-process engine for driving the control layer in tests.

The vocabulary is byte level: token ``BYTE_BASE + b`` is the single byte
``b``, so multi-byte characters span several tokens. Two special tokens
(EOS, BOS) and one oversized token (LONG, a 300-byte piece) complete it.

Next-token logits are scripted: ``add_reply(prompt, reply)`` makes every
sequence that starts with the tokens of ``prompt`` continue with the tokens
of ``reply`` and then EOS. Knobs inject tokenizer growth, invalid sizes and
forward-pass failures.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

import torch

from genctl_lite.backends.base import CellMemoryBackend, ModelInfo, NativeContext

EOS = 0
BOS = 1
LONG = 2
BYTE_BASE = 3
N_VOCAB = BYTE_BASE + 256

LONG_PIECE = b"L" * 300

CHAT_FORMAT = "<|{role}|>{content}\n"

N_EMBD = 8
N_LAYER = 2
N_CTX_TRAIN = 128


@dataclass
class ScriptedModel:
    path: str
    params: object
    replies: List[Tuple[List[int], List[int]]] = field(default_factory=list)


class ScriptedBackend(CellMemoryBackend):
    """CellMemoryBackend with a byte vocabulary and scripted continuations.

    Attributes:
        token_multiplier: Tokens emitted per prompt byte (grows the token
            count past the first tokenize estimate).
        tokenize_override: If set, tokenize returns this value.
        piece_override: If set, token_to_piece returns this value.
        fail_forward_at: 1-based forward-pass number that raises.
        fail_load: Paths whose load raises OSError.
        chat_format: Per-message format string used as the chat template;
            None means the model ships no template.
        loads / frees: Load and free counters.
        tokenize_capacities / piece_capacities: Buffer sizes seen.
    """

    name = "scripted"

    def __init__(self, partial_removal: bool = True, can_shift: bool = True):
        self.partial_removal = partial_removal
        self.can_shift = can_shift
        self.token_multiplier = 1
        self.tokenize_override: Optional[int] = None
        self.piece_override: Optional[int] = None
        self.fail_forward_at: Optional[int] = None
        self.fail_load: Set[str] = set()
        self.loads = 0
        self.frees = 0
        self.forward_calls = 0
        self.tokenize_capacities: List[int] = []
        self.piece_capacities: List[int] = []
        self._replies: List[Tuple[str, Union[str, Sequence[int]], bool]] = []
        self.chat_format: Optional[str] = CHAT_FORMAT

    # Scripting

    @staticmethod
    def encode_text(text: str, add_bos: bool = True) -> List[int]:
        tokens = [BOS] if add_bos else []
        tokens.extend(BYTE_BASE + b for b in text.encode("utf-8"))
        return tokens

    def add_reply(
        self, prompt: str, reply: Union[str, Sequence[int]], add_bos: bool = True
    ) -> None:
        """Script ``reply`` (text or token ids) as the continuation of ``prompt``.

        Set ``add_bos`` False for prompts tokenized without special tokens.
        """
        self._replies.append((prompt, reply, add_bos))

    def _scripted(self) -> List[Tuple[List[int], List[int]]]:
        scripted = []
        for prompt, reply, add_bos in self._replies:
            reply_tokens = (
                self.encode_text(reply, add_bos=False) if isinstance(reply, str) else list(reply)
            )
            scripted.append((self.encode_text(prompt, add_bos), reply_tokens))
        return scripted

    def next_token(self, history: List[int]) -> int:
        best = None
        for prompt_tokens, reply_tokens in self._scripted():
            n = len(prompt_tokens)
            if history[:n] == prompt_tokens and (best is None or n > len(best[0])):
                best = (prompt_tokens, reply_tokens)
        if best is None:
            return EOS
        k = len(history) - len(best[0])
        reply_tokens = best[1]
        return reply_tokens[k] if 0 <= k < len(reply_tokens) else EOS

    # Models

    def load_model(self, path: str, params) -> ScriptedModel:
        if path in self.fail_load:
            raise OSError(f"no such model: {path}")
        self.loads += 1
        return ScriptedModel(path, params)

    def free_model(self, model: ScriptedModel) -> None:
        self.frees += 1

    def describe_model(self, model: ScriptedModel) -> ModelInfo:
        return ModelInfo(n_vocab=N_VOCAB, n_embd=N_EMBD, n_layer=N_LAYER, n_ctx_train=N_CTX_TRAIN)

    # Vocabulary

    def tokenize(self, model, text: str, out: torch.Tensor, add_special: bool, parse_special: bool) -> int:
        self.tokenize_capacities.append(out.numel())
        if self.tokenize_override is not None:
            return self.tokenize_override
        tokens = [BOS] if add_special else []
        for b in text.encode("utf-8"):
            tokens.extend([BYTE_BASE + b] * self.token_multiplier)
        if len(tokens) > out.numel():
            return -len(tokens)
        if tokens:
            out[: len(tokens)] = torch.tensor(tokens, dtype=out.dtype)
        return len(tokens)

    def token_to_piece(self, model, token: int, out: bytearray, special: bool) -> int:
        self.piece_capacities.append(len(out))
        if self.piece_override is not None:
            return self.piece_override
        if token == LONG:
            data = LONG_PIECE
        elif token >= BYTE_BASE:
            data = bytes([token - BYTE_BASE])
        elif special:
            data = b"</s>" if token == EOS else b"<s>"
        else:
            data = b""
        if len(data) > len(out):
            return -len(data)
        out[: len(data)] = data
        return len(data)

    def is_eog(self, model, token: int) -> bool:
        return token == EOS

    # Chat templates

    def chat_template(self, model, name=None):
        return None if name else self.chat_format

    def apply_chat_template(self, model, messages, add_assistant, template=None):
        fmt = template or self.chat_format
        if fmt is None:
            return super().apply_chat_template(model, messages, add_assistant, template)
        text = "".join(fmt.format(**m) for m in messages)
        return text + "<|assistant|>" if add_assistant else text

    # Forward passes

    def _forward(self, ctx: NativeContext, entries, cells):
        self.forward_calls += 1
        if self.fail_forward_at is not None and self.forward_calls == self.fail_forward_at:
            raise RuntimeError("injected forward failure")

        logits: Dict[int, torch.Tensor] = {}
        embd: Dict[int, torch.Tensor] = {}
        for i, e in enumerate(entries):
            if not e.output:
                continue
            seq_cells = ctx.cells.seq_cells(e.seq_ids[0])
            history = [
                int(ctx.cells.token[c]) for c in seq_cells if int(ctx.cells.pos[c]) <= e.pos
            ]
            row = torch.full((N_VOCAB,), -10.0)
            row[self.next_token(history)] = 10.0
            logits[i] = row
            if ctx.embeddings:
                embd[i] = torch.full((N_EMBD,), float(e.token))
        return logits, embd

    def _encode(self, ctx: NativeContext, entries):
        return {
            i: torch.full((N_EMBD,), float(e.token)) for i, e in enumerate(entries) if e.output
        }
