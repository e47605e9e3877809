"""
Error taxonomy and the thread-local error channel.

Every fallible operation in genctl_lite raises a subclass of GenCtlError and,
through the ``records_errors`` decorator, leaves the failure in a per-thread
last-error slot. Operations whose contract is a status return (batch decode,
state restore, partial memory removal) record their failure without raising.
"""

import functools
import threading
from typing import Any, Dict, Optional


class GenCtlError(Exception):
    """Base class for all genctl_lite errors.

    Attributes:
        diagnostics: Optional key/value context describing where the failure
            happened (stage reached, last token, buffer sizes).
    """

    def __init__(self, message: str, diagnostics: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.diagnostics = dict(diagnostics or {})

    def __str__(self) -> str:
        message = super().__str__()
        if not self.diagnostics:
            return message
        details = ", ".join(f"{k}={v}" for k, v in self.diagnostics.items())
        return f"{message} ({details})"


class InvalidArgumentError(GenCtlError, ValueError):
    """Null/empty required input, closed handle or out-of-range index."""


class CapacityExceededError(GenCtlError):
    """Prompt longer than the batch or context budget."""


class TokenizationError(GenCtlError):
    """Tokenizer or detokenizer could not produce output."""


class EngineDecodeError(GenCtlError):
    """Forward pass failed.

    Attributes:
        code: Engine return code (1 = no cache capacity, negative = hard error).
    """

    def __init__(
        self,
        message: str,
        code: int = -1,
        diagnostics: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, diagnostics)
        self.code = code

    @property
    def retryable(self) -> bool:
        """True if the caller may free cache space and retry."""
        return self.code == 1


class NoKVSlotError(EngineDecodeError):
    """Forward pass could not find cache capacity for the batch."""

    def __init__(self, message: str = "no KV cache slot available", diagnostics=None):
        super().__init__(message, code=1, diagnostics=diagnostics)


class AllocationError(GenCtlError, MemoryError):
    """A buffer, batch or sampler could not be allocated."""


class UnsupportedOperationError(GenCtlError):
    """Operation is not supported by the memory layout in use."""


class ModelLoadError(GenCtlError):
    """The engine failed to load a model."""


class StateError(GenCtlError):
    """Saved state could not be read, verified or restored."""


_state = threading.local()


def last_error() -> Optional[BaseException]:
    """Return the last error recorded on the calling thread, or None."""
    return getattr(_state, "error", None)


def clear_error() -> None:
    """Clear the calling thread's error slot."""
    _state.error = None


def set_error(error: BaseException) -> BaseException:
    """Record ``error`` in the calling thread's slot and return it.

    Returning the error allows ``raise set_error(SomeError(...))``.
    """
    _state.error = error
    return error


def records_errors(func):
    """Clear the error slot on entry and record any exception raised by ``func``."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        clear_error()
        try:
            return func(*args, **kwargs)
        except Exception as e:
            set_error(e)
            raise

    return wrapper
