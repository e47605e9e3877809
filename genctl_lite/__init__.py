"""
genctl_lite: Generation control layer over a black-box inference engine.

This package drives token-by-token generation on top of an engine backend:
- Reference-counted model cache shared across contexts
- Fixed-capacity batch builder for forward passes
- Composable sampler chain (penalties, top-k, top-p, min-p, temperature)
- Sequence-scoped KV-cache controller with state save/restore
- Streaming completion engine with stop sequences and prefix caching
- Pooled text embeddings and chat-template completion
- Thread-local error channel alongside typed exceptions
"""

__version__ = "0.1.0"
__author__ = "genctl-lite contributors"

from genctl_lite.batch import Batch
from genctl_lite.cache import PrefixCache
from genctl_lite.core import (
    ChatMessage,
    CompletionParams,
    CompletionResult,
    CompletionState,
    Context,
    ContextParams,
    EmbeddingParams,
    chat,
    complete,
    embed,
    embed_batch,
    generate,
    generate_stream,
)
from genctl_lite.errors import GenCtlError, clear_error, last_error
from genctl_lite.memory import MemoryController
from genctl_lite.models import Model, ModelCache, ModelParams, load_model, release_model
from genctl_lite.sampling import SamplerChain, SamplingParams

__all__ = [
    "Batch",
    "ChatMessage",
    "CompletionParams",
    "CompletionResult",
    "CompletionState",
    "Context",
    "ContextParams",
    "EmbeddingParams",
    "GenCtlError",
    "MemoryController",
    "Model",
    "ModelCache",
    "ModelParams",
    "PrefixCache",
    "SamplerChain",
    "SamplingParams",
    "chat",
    "clear_error",
    "complete",
    "embed",
    "embed_batch",
    "generate",
    "generate_stream",
    "last_error",
    "load_model",
    "release_model",
]
