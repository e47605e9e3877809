"""
Contexts and the completion engine.

Provides:
- ContextParams / Context: Per-session state bound to a model
- CompletionParams / CompletionResult: Request configuration and outcome
- generate / generate_stream / complete: Synchronous and streaming completion
- embed / embed_batch: Pooled, normalized text embeddings
- chat / chat_stream: Completion over the model's chat template
"""

from genctl_lite.core.chat import ChatMessage, chat, chat_stream, format_chat
from genctl_lite.core.completion import (
    CompletionParams,
    CompletionResult,
    CompletionState,
    complete,
    generate,
    generate_stream,
)
from genctl_lite.core.context import (
    AttentionType,
    Context,
    ContextParams,
    KVCacheType,
    PoolingType,
)
from genctl_lite.core.embedding import (
    EmbeddingParams,
    cosine_similarity,
    embed,
    embed_batch,
    similarity_matrix,
)

__all__ = [
    "AttentionType",
    "ChatMessage",
    "CompletionParams",
    "CompletionResult",
    "CompletionState",
    "Context",
    "ContextParams",
    "EmbeddingParams",
    "KVCacheType",
    "PoolingType",
    "chat",
    "chat_stream",
    "complete",
    "cosine_similarity",
    "embed",
    "embed_batch",
    "format_chat",
    "generate",
    "generate_stream",
    "similarity_matrix",
]
