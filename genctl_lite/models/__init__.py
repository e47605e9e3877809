"""
Model handles and the reference-counted model cache.

Provides:
- ModelParams: Engine-agnostic load parameters
- Model: Shared handle to loaded weights (tokenize, detokenize, is_eog)
- ModelCache: Path-keyed, reference-counted model owner
"""

from genctl_lite.models.model import Model, ModelParams
from genctl_lite.models.model_cache import (
    ModelCache,
    cache_count,
    clear_cache,
    get_model_cache,
    load_model,
    release_model,
)

__all__ = [
    "Model",
    "ModelCache",
    "ModelParams",
    "cache_count",
    "clear_cache",
    "get_model_cache",
    "load_model",
    "release_model",
]
