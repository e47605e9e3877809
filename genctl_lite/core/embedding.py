"""
Text embeddings.

``embed`` runs each text through one encoder pass, pools the per-token
vectors of that pass into a single vector and L2-normalizes it. Encoder
passes bypass the KV memory, so embedding neither reads nor disturbs the
sequences of completions on the same context.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import torch
import torch.nn.functional as F

from genctl_lite.batch.batch import Batch
from genctl_lite.core.context import PoolingType
from genctl_lite.errors import (
    CapacityExceededError,
    EngineDecodeError,
    InvalidArgumentError,
    UnsupportedOperationError,
    records_errors,
)

logger = logging.getLogger(__name__)

# Sequence id every text is embedded on
EMBEDDING_SEQ_ID = 0


@dataclass
class EmbeddingParams:
    """Options of one embedding request.

    Attributes:
        normalize: Scale each vector to unit L2 norm.
        add_special: Add BOS/EOS tokens when tokenizing.
        pooling: Pooling to apply; None uses the context's pooling type.
    """
    normalize: bool = True
    add_special: bool = True
    pooling: Optional[PoolingType] = None

    def __post_init__(self):
        if self.pooling is not None:
            try:
                self.pooling = PoolingType(self.pooling)
            except ValueError as e:
                raise InvalidArgumentError(str(e)) from e


def _output_rows(n_tokens: int, pooling: PoolingType) -> List[int]:
    if pooling is PoolingType.MEAN:
        return list(range(n_tokens))
    if pooling is PoolingType.CLS:
        return [0]
    # LAST and NONE both read the final token
    return [n_tokens - 1]


def pool(vectors: torch.Tensor, pooling: PoolingType) -> torch.Tensor:
    """Combine ``[n_tokens, n_embd]`` token vectors into one ``[n_embd]`` vector."""
    if pooling is PoolingType.MEAN:
        return vectors.mean(dim=0)
    if pooling is PoolingType.CLS:
        return vectors[0]
    if pooling in (PoolingType.LAST, PoolingType.NONE):
        return vectors[-1]
    raise UnsupportedOperationError(f"pooling type {pooling.name} is not supported")


def cosine_similarity(a: torch.Tensor, b: torch.Tensor) -> float:
    """Cosine similarity of two vectors; 0.0 if their sizes differ or one is zero."""
    if a.numel() == 0 or a.shape != b.shape:
        return 0.0
    return float(F.cosine_similarity(a.float(), b.float(), dim=0))


def similarity_matrix(vectors: Sequence[torch.Tensor]) -> torch.Tensor:
    """Pairwise cosine similarities of ``vectors`` as an ``[n, n]`` tensor."""
    n = len(vectors)
    out = torch.zeros(n, n)
    for i in range(n):
        out[i, i] = 1.0
        for j in range(i + 1, n):
            out[i, j] = out[j, i] = cosine_similarity(vectors[i], vectors[j])
    return out


def _embed_one(context, text: str, params: EmbeddingParams, pooling: PoolingType) -> torch.Tensor:
    model = context.model
    if text is None:
        raise InvalidArgumentError("text cannot be None")
    tokens = model.tokenize(text, add_special=params.add_special)
    if not tokens:
        return torch.zeros(model.n_embd)
    if len(tokens) > context.n_batch or len(tokens) > context.n_ctx:
        raise CapacityExceededError(
            f"text of {len(tokens)} tokens exceeds n_batch={context.n_batch}",
            diagnostics={"n_tokens": len(tokens), "n_batch": context.n_batch},
        )

    rows = _output_rows(len(tokens), pooling)
    wanted = set(rows)
    with Batch(len(tokens), 1) as batch:
        for pos, token in enumerate(tokens):
            batch.add(token, pos, EMBEDDING_SEQ_ID, pos in wanted)
        code = batch.encode(context)
    if code != 0:
        raise EngineDecodeError("failed to encode text for embedding", code=code)

    vectors = []
    for row in rows:
        vector = context.get_embeddings(row)
        if vector is None:
            raise EngineDecodeError(f"no embedding for token {row}")
        vectors.append(vector)
    return pool(torch.stack(vectors), pooling)


@records_errors
def embed_batch(
    context,
    texts: Sequence[str],
    params: Optional[EmbeddingParams] = None,
) -> List[torch.Tensor]:
    """Embed every text of ``texts`` with the model of ``context``.

    Each text must fit in one forward pass. An empty token list (an empty
    text tokenized without special tokens) gives a zero vector.

    Returns:
        One float32 vector of size n_embd per text.

    Raises:
        InvalidArgumentError: If the context is closed or a text is None.
        CapacityExceededError: If a text exceeds n_batch or n_ctx tokens.
        UnsupportedOperationError: For RANK pooling.
        EngineDecodeError: If the encoder pass fails or yields no embeddings.
    """
    if context is None:
        raise InvalidArgumentError("context cannot be None")
    context.check_open()
    if texts is None:
        raise InvalidArgumentError("texts cannot be None")
    params = params or EmbeddingParams()
    pooling = params.pooling or context.pooling_type
    if pooling is PoolingType.UNSPECIFIED:
        pooling = PoolingType.LAST
    if pooling is PoolingType.RANK:
        raise UnsupportedOperationError("rank pooling needs a reranker head")

    results = []
    for text in texts:
        vector = _embed_one(context, text, params, pooling)
        if params.normalize:
            vector = F.normalize(vector, dim=0)
        results.append(vector)
    logger.debug("embedded %d texts with %s pooling", len(results), pooling.name)
    return results


@records_errors
def embed(context, text: str, params: Optional[EmbeddingParams] = None) -> torch.Tensor:
    """Embed one text; see ``embed_batch``."""
    return embed_batch(context, [text], params)[0]
