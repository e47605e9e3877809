"""
Model handle and load parameters.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import torch

from genctl_lite.errors import (
    GenCtlError,
    InvalidArgumentError,
    TokenizationError,
    records_errors,
)
from genctl_lite.utils.buffers import BufferProbe, grow_and_retry

logger = logging.getLogger(__name__)

# Offload every layer
ALL_LAYERS = -1

# Initial detokenize buffer, grown on demand
PIECE_BUFFER_SIZE = 256

# Slack added to the byte length of a prompt for the first tokenize attempt
TOKENIZE_SLACK = 16


@dataclass
class ModelParams:
    """Engine-agnostic model load parameters.

    Attributes:
        n_gpu_layers: Layers to offload to the accelerator; -1 for all, 0 for none.
        main_gpu: Accelerator index holding the model.
        use_mmap: Memory-map the weights file.
        use_mlock: Lock the weights in RAM.
        device: Explicit device string, overrides n_gpu_layers/main_gpu.
        dtype: torch dtype name for the weights (e.g. "float16").
    """
    n_gpu_layers: int = ALL_LAYERS
    main_gpu: int = 0
    use_mmap: bool = True
    use_mlock: bool = False
    device: Optional[str] = None
    dtype: Optional[str] = None

    def __post_init__(self):
        if self.n_gpu_layers < ALL_LAYERS:
            raise InvalidArgumentError(f"n_gpu_layers must be >= -1, got {self.n_gpu_layers}")
        if self.main_gpu < 0:
            raise InvalidArgumentError(f"main_gpu must be >= 0, got {self.main_gpu}")
        if self.dtype is not None and not isinstance(getattr(torch, self.dtype, None), torch.dtype):
            raise InvalidArgumentError(f"unknown dtype: {self.dtype}")

    def gpu_layers(self, n_layer: int) -> int:
        """Number of layers actually offloaded for a model with ``n_layer`` layers."""
        if self.n_gpu_layers == ALL_LAYERS:
            return n_layer
        return min(self.n_gpu_layers, n_layer)


class Model:
    """Shared, read-only handle to loaded weights.

    Handles are created by a ModelCache; loading the same path again returns
    the same handle with one more reference. ``close()`` drops one reference.

    Attributes:
        path: Normalized source path (cache key).
        params: Parameters of the load that created the handle.
        n_vocab: Vocabulary size.
        n_embd: Embedding dimension.
        n_layer: Number of layers.
        n_ctx_train: Context length the model was trained with.
    """

    def __init__(self, cache, path: str, params: ModelParams, backend, native):
        self._cache = cache
        self.path = path
        self.params = params
        self.backend = backend
        self.native = native
        self._freed = False

        info = backend.describe_model(native)
        self.n_vocab = info.n_vocab
        self.n_embd = info.n_embd
        self.n_layer = info.n_layer
        self.n_ctx_train = info.n_ctx_train

    def __repr__(self) -> str:
        return f"Model(path={self.path!r}, refs={self.ref_count}, freed={self._freed})"

    def __enter__(self) -> "Model":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def freed(self) -> bool:
        return self._freed

    @property
    def ref_count(self) -> int:
        """Current reference count of this handle in its cache (0 once freed)."""
        if self._freed:
            return 0
        return self._cache.ref_count(self)

    def _mark_freed(self) -> None:
        self._freed = True
        self.native = None

    def check_alive(self) -> None:
        if self._freed:
            raise InvalidArgumentError(f"model {self.path} has been released")

    def close(self) -> None:
        """Drop one reference; the weights are freed when the count reaches zero."""
        if not self._freed:
            self._cache.release(self)

    @records_errors
    def tokenize(
        self,
        text: str,
        add_special: bool = True,
        parse_special: bool = False,
        probe: Optional[BufferProbe] = None,
    ) -> List[int]:
        """Convert ``text`` to token ids.

        Raises:
            InvalidArgumentError: If the model has been released.
            TokenizationError: If the engine reports an unrepresentable size
                or still overflows after one resize.
        """
        self.check_alive()
        estimate = len(text.encode("utf-8")) + TOKENIZE_SLACK
        buf, n = grow_and_retry(
            fill=lambda out: self.backend.tokenize(
                self.native, text, out, add_special, parse_special
            ),
            allocate=lambda size: torch.zeros(size, dtype=torch.int32),
            initial_capacity=estimate,
            what="tokenize",
            error_cls=TokenizationError,
            probe=probe,
        )
        return buf[:n].tolist()

    @records_errors
    def token_to_piece(
        self,
        token: int,
        special: bool = False,
        probe: Optional[BufferProbe] = None,
    ) -> bytes:
        """Return the raw UTF-8 bytes of one token.

        A piece may hold part of a multi-byte character; decode a run of
        pieces incrementally.
        """
        self.check_alive()
        buf, n = grow_and_retry(
            fill=lambda out: self.backend.token_to_piece(self.native, token, out, special),
            allocate=bytearray,
            initial_capacity=PIECE_BUFFER_SIZE,
            what="detokenize",
            error_cls=TokenizationError,
            probe=probe,
        )
        return bytes(buf[:n])

    def detokenize(self, tokens: Sequence[int], special: bool = False) -> str:
        """Convert token ids back to text."""
        data = b"".join(self.token_to_piece(t, special) for t in tokens)
        return data.decode("utf-8", errors="replace")

    def is_eog(self, token: int) -> bool:
        """True if ``token`` ends generation."""
        self.check_alive()
        return self.backend.is_eog(self.native, token)

    def chat_template(self, name: Optional[str] = None) -> Optional[str]:
        """Chat template stored with the weights, or the one called ``name``."""
        self.check_alive()
        return self.backend.chat_template(self.native, name)

    @property
    def has_chat_template(self) -> bool:
        return self.chat_template() is not None

    @records_errors
    def apply_chat_template(
        self,
        messages: Sequence[Any],
        add_assistant: bool = True,
        template: Optional[str] = None,
    ) -> str:
        """Render chat messages into a prompt string.

        Args:
            messages: ChatMessage items or dicts with ``role`` and ``content``.
            add_assistant: Append the opening of an assistant turn.
            template: Template text to use instead of the model's own.

        Returns:
            The rendered prompt; an empty string for no messages.

        Raises:
            InvalidArgumentError: If a message is malformed or rendering fails.
            UnsupportedOperationError: If no template is available.
        """
        self.check_alive()
        if not messages:
            return ""
        rendered = [_message_dict(m) for m in messages]
        try:
            return self.backend.apply_chat_template(
                self.native, rendered, add_assistant, template
            )
        except GenCtlError:
            raise
        except Exception as e:
            raise InvalidArgumentError(f"failed to apply chat template: {e}") from e


def _message_dict(message: Any) -> Dict[str, str]:
    if isinstance(message, dict):
        role, content = message.get("role"), message.get("content")
    else:
        role, content = getattr(message, "role", None), getattr(message, "content", None)
    if not isinstance(role, str) or not role or not isinstance(content, str):
        raise InvalidArgumentError(f"chat message needs a role and text content: {message!r}")
    return {"role": role, "content": content}
