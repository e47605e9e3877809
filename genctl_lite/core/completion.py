"""
Streaming completion engine.

``generate`` drives one request through tokenize, prefill and the
sample/detokenize/stream/stop loop:

    INIT -> TOKENIZING -> PREFILLING -> GENERATING
         -> STOPPED_NORMAL | STOPPED_ON_CALLBACK | STOPPED_ON_STOP_WORD | FAILED
         -> FINALIZED

The batch and sampler chain of a request are released on every exit path.
Failures before the first generated token raise; a forward-pass failure in
the middle of generation ends the request early with the text produced so
far unless ``partial_on_decode_error`` is turned off.
"""

import codecs
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generator, List, Optional

from genctl_lite.batch.batch import Batch
from genctl_lite.errors import (
    AllocationError,
    CapacityExceededError,
    EngineDecodeError,
    GenCtlError,
    InvalidArgumentError,
    NoKVSlotError,
    TokenizationError,
    clear_error,
    records_errors,
    set_error,
)
from genctl_lite.sampling.sampling import SamplerChain, SamplingParams
from genctl_lite.utils.buffers import BufferProbe

logger = logging.getLogger(__name__)

# Sequence id used for single-request completion
COMPLETION_SEQ_ID = 0

TokenCallback = Callable[[str], Any]


class CompletionState(Enum):
    """Stages of one completion request."""
    INIT = "init"
    TOKENIZING = "tokenizing"
    PREFILLING = "prefilling"
    GENERATING = "generating"
    STOPPED_NORMAL = "stopped_normal"
    STOPPED_ON_CALLBACK = "stopped_on_callback"
    STOPPED_ON_STOP_WORD = "stopped_on_stop_word"
    FAILED = "failed"
    FINALIZED = "finalized"


@dataclass
class CompletionParams:
    """Parameters of one completion request.

    Sampling fields mirror SamplingParams (with the repetition penalty off
    by default).

    Attributes:
        max_tokens: Upper bound on generated tokens; 0 returns at once.
        stop_words: Stop sequences, checked in order after every token.
        on_token: Called with each decoded piece; returning False stops.
        enable_prefix_caching: Reuse the resident prefix of sequence 0
            instead of clearing memory before prefill.
        partial_on_decode_error: Return partial text when a forward pass
            fails mid-generation; False raises instead.
        add_special: Add BOS/EOS tokens when tokenizing the prompt.
        parse_special: Parse special-token text in the prompt.
    """
    seed: int = 0
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    repeat_penalty: float = 1.0
    repeat_last_n: int = 64
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    max_tokens: int = 512
    stop_words: List[str] = field(default_factory=list)
    on_token: Optional[TokenCallback] = None
    enable_prefix_caching: bool = False
    partial_on_decode_error: bool = True
    add_special: bool = True
    parse_special: bool = False

    def __post_init__(self):
        if self.max_tokens < 0:
            raise InvalidArgumentError(f"max_tokens must be >= 0, got {self.max_tokens}")
        self.stop_words = list(self.stop_words or [])
        for word in self.stop_words:
            if not isinstance(word, str) or not word:
                raise InvalidArgumentError(f"stop words must be non-empty strings, got {word!r}")
        self.sampling_params()

    def sampling_params(self) -> SamplingParams:
        return SamplingParams(
            seed=self.seed,
            temperature=self.temperature,
            top_k=self.top_k,
            top_p=self.top_p,
            min_p=self.min_p,
            repeat_penalty=self.repeat_penalty,
            repeat_last_n=self.repeat_last_n,
            frequency_penalty=self.frequency_penalty,
            presence_penalty=self.presence_penalty,
        )


@dataclass
class CompletionResult:
    """Outcome of a completion request.

    Attributes:
        text: Generated text, with a matched stop sequence trimmed.
        stop_word_hit: True if a configured stop sequence ended generation.
        stop_word_index: Index of the matched stop sequence, -1 if none.
        stop_reason: Terminal state of the request.
        n_tokens: Number of tokens generated (end-of-generation excluded).
        n_prompt_tokens: Number of prompt tokens.
        n_reused: Prompt tokens served from the prefix cache.
    """
    text: str = ""
    stop_word_hit: bool = False
    stop_word_index: int = -1
    stop_reason: CompletionState = CompletionState.STOPPED_NORMAL
    n_tokens: int = 0
    n_prompt_tokens: int = 0
    n_reused: int = 0
    released: bool = False

    def release(self) -> None:
        """Drop the result text. Safe to call more than once."""
        self.text = ""
        self.released = True


class _Completion:
    """State of one running request."""

    def __init__(self, context, prompt: str, params: Optional[CompletionParams]):
        if context is None:
            raise InvalidArgumentError("context cannot be None")
        context.check_open()
        if prompt is None:
            raise InvalidArgumentError("prompt cannot be None")
        if params is None:
            params = CompletionParams()

        self.context = context
        self.model = context.model
        self.prompt = prompt
        self.params = params

        self.state = CompletionState.INIT
        self.token = -1
        self.piece_len = 0
        self.probe = BufferProbe()
        self.text = ""
        self.n_generated = 0
        self.stop_requested = False

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "stage": self.state.value,
            "token": self.token,
            "piece_len": self.piece_len,
            "needed": self.probe.needed,
            "generated_len": len(self.text),
        }

    def _annotate(self, error: GenCtlError) -> None:
        for key, value in self.diagnostics().items():
            error.diagnostics.setdefault(key, value)

    def _tokenize(self) -> List[int]:
        self.state = CompletionState.TOKENIZING
        tokens = self.model.tokenize(
            self.prompt,
            add_special=self.params.add_special,
            parse_special=self.params.parse_special,
            probe=self.probe,
        )
        n_prompt = len(tokens)
        if n_prompt == 0:
            raise TokenizationError("prompt produced no tokens")
        if n_prompt > self.context.n_batch:
            raise CapacityExceededError(
                "prompt exceeds batch size",
                {"n_prompt": n_prompt, "n_batch": self.context.n_batch},
            )
        if n_prompt + self.params.max_tokens > self.context.n_ctx:
            raise CapacityExceededError(
                "prompt + max_tokens exceeds context size",
                {
                    "n_prompt": n_prompt,
                    "max_tokens": self.params.max_tokens,
                    "n_ctx": self.context.n_ctx,
                },
            )
        return tokens

    def _reusable_prefix(self, tokens: List[int]) -> int:
        """Prepare sequence memory for ``tokens``; returns positions kept."""
        memory = self.context.memory
        if not self.params.enable_prefix_caching:
            memory.clear()
            return 0

        # The last prompt token is always re-evaluated to get fresh logits.
        n_keep = self.context.prefix_cache.lookup(COMPLETION_SEQ_ID, tokens, len(tokens) - 1)
        if not memory.remove(COMPLETION_SEQ_ID, n_keep, -1):
            logger.warning("partial memory removal unsupported; clearing memory")
            memory.clear()
            return 0
        if n_keep:
            logger.debug("reusing %d of %d prompt tokens", n_keep, len(tokens))
        return n_keep

    def _prefill(self, batch: Batch, tokens: List[int]) -> int:
        self.state = CompletionState.PREFILLING
        n_keep = self._reusable_prefix(tokens)
        remaining = tokens[n_keep:]
        if batch.add_run(remaining, n_keep, COMPLETION_SEQ_ID, True) != len(remaining):
            raise CapacityExceededError(
                "prompt does not fit in the batch",
                {"n_prompt": len(tokens), "capacity": batch.capacity},
            )

        code = batch.decode(self.context)
        if code != 0:
            self.context.prefix_cache.forget(COMPLETION_SEQ_ID)
            if code == 1:
                raise NoKVSlotError("no KV cache slot for the prompt")
            raise EngineDecodeError("failed to decode prompt", code=code)
        self.context.prefix_cache.set(COMPLETION_SEQ_ID, tokens)
        return n_keep

    def _match_stop_word(self) -> int:
        for index, word in enumerate(self.params.stop_words):
            if self.text.endswith(word):
                return index
        return -1

    def _generate(self, batch: Batch, chain: SamplerChain, n_prompt: int, n_reused: int):
        self.state = CompletionState.GENERATING
        context = self.context
        model = self.model
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        reason = CompletionState.STOPPED_NORMAL
        stop_index = -1
        n_past = n_prompt

        for _ in range(self.params.max_tokens):
            self.token = chain.sample(context, -1)
            chain.accept(self.token)
            if model.is_eog(self.token):
                break
            self.n_generated += 1

            raw = model.token_to_piece(self.token, special=False, probe=self.probe)
            self.piece_len = len(raw)
            piece = decoder.decode(raw)
            if piece:
                self.text += piece
                yield piece
                if self.stop_requested:
                    reason = CompletionState.STOPPED_ON_CALLBACK
                    break
                stop_index = self._match_stop_word()
                if stop_index >= 0:
                    self.text = self.text[: -len(self.params.stop_words[stop_index])]
                    reason = CompletionState.STOPPED_ON_STOP_WORD
                    break

            batch.clear()
            batch.add(self.token, n_past, COMPLETION_SEQ_ID, True)
            code = batch.decode(context)
            if code != 0:
                context.prefix_cache.forget(COMPLETION_SEQ_ID)
                if not self.params.partial_on_decode_error:
                    raise EngineDecodeError("failed to decode generated token", code=code)
                logger.warning(
                    "decode failed after %d tokens (code %d); returning partial text",
                    self.n_generated, code,
                )
                break
            context.prefix_cache.append(COMPLETION_SEQ_ID, [self.token])
            n_past += 1

        if reason is CompletionState.STOPPED_NORMAL:
            tail = decoder.decode(b"", final=True)
            if tail:
                self.text += tail
                yield tail

        self.state = reason
        return CompletionResult(
            text=self.text,
            stop_word_hit=reason is CompletionState.STOPPED_ON_STOP_WORD,
            stop_word_index=stop_index,
            stop_reason=reason,
            n_tokens=self.n_generated,
            n_prompt_tokens=n_prompt,
            n_reused=n_reused,
        )

    def run(self) -> Generator[str, None, CompletionResult]:
        """Yield decoded pieces; the generator's return value is the result."""
        batch = None
        chain = None
        try:
            tokens = self._tokenize()
            chain = SamplerChain.build(self.model, self.params.sampling_params())
            batch = Batch(self.context.n_batch, 1)
            n_reused = self._prefill(batch, tokens)
            result = yield from self._generate(batch, chain, len(tokens), n_reused)
            return result
        except GenCtlError as e:
            self._annotate(e)
            self.state = CompletionState.FAILED
            raise
        except MemoryError as e:
            diagnostics = self.diagnostics()
            self.state = CompletionState.FAILED
            raise AllocationError(f"allocation failed: {e}", diagnostics) from e
        except Exception as e:
            diagnostics = self.diagnostics()
            self.state = CompletionState.FAILED
            raise EngineDecodeError(
                f"unexpected failure during completion: {e}", diagnostics=diagnostics
            ) from e
        finally:
            if batch is not None:
                batch.close()
            if chain is not None:
                chain.close()
            logger.debug("completion finished in state %s", self.state.value)
            if self.state is not CompletionState.FAILED:
                self.state = CompletionState.FINALIZED


def _notify(completion: _Completion, steps: Generator, callback: Optional[TokenCallback], piece: str) -> None:
    if callback is None:
        return
    try:
        keep_going = callback(piece)
    except Exception as e:
        # Re-raised from inside the loop so it carries diagnostics and the
        # request's resources are released.
        steps.throw(e)
        raise
    if keep_going is False:
        completion.stop_requested = True


@records_errors
def generate(
    context,
    prompt: str,
    params: Optional[CompletionParams] = None,
) -> CompletionResult:
    """Run one synchronous completion on sequence 0 of ``context``.

    Args:
        context: Context to generate in; its model is used for tokenizing.
        prompt: Prompt text.
        params: Request parameters; defaults to CompletionParams().

    Returns:
        CompletionResult with the generated text and stop metadata.

    Raises:
        InvalidArgumentError: If the context is closed or the prompt is None.
        TokenizationError: If the prompt cannot be tokenized or a token
            cannot be detokenized.
        CapacityExceededError: If the prompt exceeds n_batch, or prompt
            plus max_tokens exceeds n_ctx.
        EngineDecodeError: If the prompt forward pass fails, or a later one
            fails with ``partial_on_decode_error`` off.
    """
    completion = _Completion(context, prompt, params)
    if completion.params.max_tokens == 0:
        return CompletionResult()

    callback = completion.params.on_token
    steps = completion.run()
    try:
        while True:
            try:
                piece = next(steps)
            except StopIteration as done:
                return done.value
            _notify(completion, steps, callback, piece)
    finally:
        steps.close()


def generate_stream(
    context,
    prompt: str,
    params: Optional[CompletionParams] = None,
) -> Generator[str, None, CompletionResult]:
    """Yield decoded text pieces as they are produced.

    Closing the generator early ends the request and releases its
    resources. The generator's return value is the CompletionResult.
    """
    clear_error()
    try:
        completion = _Completion(context, prompt, params)
    except GenCtlError as e:
        set_error(e)
        raise
    if completion.params.max_tokens == 0:
        return CompletionResult()

    callback = completion.params.on_token
    steps = completion.run()
    try:
        while True:
            try:
                piece = next(steps)
            except StopIteration as done:
                return done.value
            _notify(completion, steps, callback, piece)
            yield piece
    except GenCtlError as e:
        set_error(e)
        raise
    finally:
        steps.close()


def complete(context, prompt: str, **overrides) -> str:
    """Generate and return only the text; keyword arguments set CompletionParams fields."""
    result = generate(context, prompt, CompletionParams(**overrides))
    text = result.text
    result.release()
    return text
