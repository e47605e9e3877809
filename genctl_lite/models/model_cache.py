"""
Path-keyed, reference-counted model cache.

Loading a path that is already cached returns the cached handle and bumps its
reference count without touching the weights file, even if the parameters
differ: the first load's parameters win and the mismatch is logged. The table
is guarded by a single lock held for lookup, insert and remove only; using a
handle for inference needs no lock since the weights never change.
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Union

from genctl_lite.errors import (
    GenCtlError,
    InvalidArgumentError,
    ModelLoadError,
    records_errors,
)
from genctl_lite.models.model import Model, ModelParams

logger = logging.getLogger(__name__)


@dataclass
class _CacheEntry:
    model: Model
    ref_count: int


def normalize_path(path: str) -> str:
    """Cache key for ``path``."""
    return os.path.normpath(os.path.expanduser(path))


class ModelCache:
    """Reference-counted owner of loaded models."""

    def __init__(self, backend=None):
        """Initialize an empty cache.

        Args:
            backend: InferenceBackend used to load models; defaults to the
                process-wide transformers backend on first load.
        """
        self._backend = backend
        self._lock = threading.Lock()
        self._entries: Dict[str, _CacheEntry] = {}

    @property
    def backend(self):
        if self._backend is None:
            from genctl_lite.backends import default_backend

            self._backend = default_backend()
        return self._backend

    @records_errors
    def load(self, path: str, params: Optional[ModelParams] = None) -> Model:
        """Load ``path`` or return the cached handle.

        Args:
            path: Model directory or hub id.
            params: Load parameters; ignored on a cache hit.

        Returns:
            Shared Model handle.

        Raises:
            InvalidArgumentError: If ``path`` is empty.
            ModelLoadError: If the engine fails to load the model. The cache
                is left unchanged.
        """
        if not path:
            raise InvalidArgumentError("model path cannot be empty")
        if params is None:
            params = ModelParams()
        key = normalize_path(path)

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.ref_count += 1
                if params != entry.model.params:
                    logger.warning(
                        "model %s already loaded with %s; ignoring %s",
                        key, entry.model.params, params,
                    )
                logger.debug("model cache hit: %s (refs=%d)", key, entry.ref_count)
                return entry.model

            logger.debug("model cache miss: %s", key)
            backend = self.backend
            try:
                native = backend.load_model(key, params)
            except GenCtlError:
                raise
            except Exception as e:
                raise ModelLoadError(f"failed to load model from {key}: {e}") from e

            try:
                model = Model(self, key, params, backend, native)
            except Exception as e:
                backend.free_model(native)
                if isinstance(e, GenCtlError):
                    raise
                raise ModelLoadError(f"failed to describe model {key}: {e}") from e
            self._entries[key] = _CacheEntry(model, 1)
            return model

    @records_errors
    def release(self, model: Model) -> None:
        """Drop one reference to ``model``, freeing it at zero.

        Raises:
            InvalidArgumentError: If ``model`` is not held by this cache.
        """
        with self._lock:
            entry = self._entries.get(model.path)
            if entry is None or entry.model is not model:
                raise InvalidArgumentError(f"model {model.path} is not held by this cache")
            entry.ref_count -= 1
            if entry.ref_count > 0:
                logger.debug("released %s (refs=%d)", model.path, entry.ref_count)
                return
            del self._entries[model.path]
            self.backend.free_model(model.native)
            model._mark_freed()
        logger.debug("freed model %s", model.path)

    def ref_count(self, model: Union[Model, str]) -> int:
        """Reference count of a handle or path; 0 if not cached."""
        key = model.path if isinstance(model, Model) else normalize_path(model)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return 0
            if isinstance(model, Model) and entry.model is not model:
                return 0
            return entry.ref_count

    def cache_count(self) -> int:
        """Number of distinct models currently loaded."""
        with self._lock:
            return len(self._entries)

    def clear_cache(self) -> None:
        """Free every cached model regardless of reference counts."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            for entry in entries:
                self.backend.free_model(entry.model.native)
                entry.model._mark_freed()
        if entries:
            logger.debug("cleared %d cached models", len(entries))


_default_cache: Optional[ModelCache] = None
_default_cache_lock = threading.Lock()


def get_model_cache() -> ModelCache:
    """Return the process-wide model cache."""
    global _default_cache
    with _default_cache_lock:
        if _default_cache is None:
            _default_cache = ModelCache()
        return _default_cache


def load_model(path: str, params: Optional[ModelParams] = None) -> Model:
    return get_model_cache().load(path, params)


def release_model(model: Model) -> None:
    model._cache.release(model)


def cache_count() -> int:
    return get_model_cache().cache_count()


def clear_cache() -> None:
    get_model_cache().clear_cache()
