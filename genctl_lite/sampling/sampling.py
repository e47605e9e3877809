"""
Sampler pipeline for token generation.

A SamplerChain is an ordered list of stages built once per request from
SamplingParams. The transform stages run in a fixed order (penalties, top-k,
top-p, min-p, temperature) and a disabled stage is left out of the chain
entirely rather than applied as an identity. The last stage picks the token:
arg-max when temperature is 0, otherwise a seeded categorical draw.
"""

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

import torch

from genctl_lite.errors import InvalidArgumentError, records_errors

logger = logging.getLogger(__name__)


@dataclass
class SamplingParams:
    """Parameters for the sampler chain.

    Attributes:
        seed: Seed of the final categorical draw; 0 picks a fresh seed when
            the chain is built.
        temperature: Logit divisor; 0 switches to arg-max.
        top_k: Keep the k highest logits; <= 0 disables.
        top_p: Keep the smallest prefix whose probability mass reaches p;
            >= 1.0 disables.
        min_p: Drop tokens below ``min_p * max_probability``; <= 0 disables.
        repeat_penalty: Divides positive (multiplies negative) logits of
            recent tokens; 1.0 disables.
        repeat_last_n: Size of the recent-token window; 0 disables, -1 uses
            the model's training context length.
        frequency_penalty: Subtracted once per occurrence in the window.
        presence_penalty: Subtracted once for any occurrence in the window.
    """
    seed: int = 0
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    repeat_penalty: float = 1.1
    repeat_last_n: int = 64
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0

    def __post_init__(self):
        if self.temperature < 0:
            raise InvalidArgumentError(f"temperature must be >= 0, got {self.temperature}")
        if self.repeat_penalty <= 0:
            raise InvalidArgumentError(
                f"repeat_penalty must be > 0, got {self.repeat_penalty}"
            )
        if self.repeat_last_n < -1:
            raise InvalidArgumentError(
                f"repeat_last_n must be >= -1, got {self.repeat_last_n}"
            )

    @classmethod
    def greedy(cls, **overrides) -> "SamplingParams":
        """Deterministic arg-max preset with every filter disabled."""
        values = dict(
            temperature=0.0,
            top_k=0,
            top_p=1.0,
            min_p=0.0,
            repeat_penalty=1.0,
            frequency_penalty=0.0,
            presence_penalty=0.0,
        )
        values.update(overrides)
        return cls(**values)

    @property
    def penalties_enabled(self) -> bool:
        return (
            self.repeat_penalty != 1.0
            or self.frequency_penalty != 0.0
            or self.presence_penalty != 0.0
        )


def fresh_seed() -> int:
    """Seed used when a chain is built with seed 0."""
    return time.time_ns() & 0xFFFFFFFF


def apply_penalties(
    logits: torch.Tensor,
    history: List[int],
    repeat_penalty: float,
    frequency_penalty: float,
    presence_penalty: float,
) -> torch.Tensor:
    """Apply repetition, frequency and presence penalties for ``history``."""
    n_vocab = logits.numel()
    recent = [t for t in history if 0 <= t < n_vocab]
    if not recent:
        return logits

    counts = torch.bincount(torch.tensor(recent, dtype=torch.long), minlength=n_vocab)
    ids = counts.nonzero().squeeze(-1)
    selected = logits[ids]
    selected = torch.where(selected > 0, selected / repeat_penalty, selected * repeat_penalty)
    selected = selected - counts[ids].to(logits.dtype) * frequency_penalty - presence_penalty

    logits = logits.clone()
    logits[ids] = selected
    return logits


def top_k_filter(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Keep the k highest logits."""
    k = min(k, logits.numel())
    top_k_logits, top_k_indices = torch.topk(logits, k)
    mask = torch.full_like(logits, float("-inf"))
    mask.scatter_(-1, top_k_indices, top_k_logits)
    return mask


def top_p_filter(logits: torch.Tensor, p: float, min_keep: int = 1) -> torch.Tensor:
    """Keep the smallest prefix of sorted probabilities with mass >= p."""
    probs = torch.softmax(logits, dim=-1)
    sorted_probs, sorted_indices = torch.sort(probs, descending=True)
    cumulative = torch.cumsum(sorted_probs, dim=-1)

    n_keep = int((cumulative < p).sum().item()) + 1
    n_keep = min(max(n_keep, min_keep), logits.numel())

    kept = sorted_indices[:n_keep]
    mask = torch.full_like(logits, float("-inf"))
    mask[kept] = logits[kept]
    return mask


def min_p_filter(logits: torch.Tensor, p: float, min_keep: int = 1) -> torch.Tensor:
    """Drop tokens whose probability is below ``p`` times the maximum."""
    # p_i >= p * p_max  <=>  logit_i >= logit_max + log(p)
    threshold = logits.max() + math.log(p)
    keep = logits >= threshold
    if int(keep.sum().item()) < min_keep:
        return top_k_filter(logits, min_keep)
    return torch.where(keep, logits, torch.full_like(logits, float("-inf")))


class SamplerStage:
    """One transform of the token distribution."""

    name = "stage"

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return logits

    def accept(self, token: int) -> None:
        pass

    def reset(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class PenaltyStage(SamplerStage):
    """Repetition/frequency/presence penalties over a trailing token window."""

    name = "penalties"

    def __init__(
        self,
        last_n: int,
        repeat_penalty: float,
        frequency_penalty: float,
        presence_penalty: float,
    ):
        self.last_n = last_n
        self.repeat_penalty = repeat_penalty
        self.frequency_penalty = frequency_penalty
        self.presence_penalty = presence_penalty
        self.history: Deque[int] = deque(maxlen=last_n)

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return apply_penalties(
            logits,
            list(self.history),
            self.repeat_penalty,
            self.frequency_penalty,
            self.presence_penalty,
        )

    def accept(self, token: int) -> None:
        self.history.append(token)

    def reset(self) -> None:
        self.history.clear()


class TopKStage(SamplerStage):
    name = "top_k"

    def __init__(self, k: int):
        self.k = k

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return top_k_filter(logits, self.k)


class TopPStage(SamplerStage):
    name = "top_p"

    def __init__(self, p: float, min_keep: int = 1):
        self.p = p
        self.min_keep = min_keep

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return top_p_filter(logits, self.p, self.min_keep)


class MinPStage(SamplerStage):
    name = "min_p"

    def __init__(self, p: float, min_keep: int = 1):
        self.p = p
        self.min_keep = min_keep

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return min_p_filter(logits, self.p, self.min_keep)


class TemperatureStage(SamplerStage):
    name = "temperature"

    def __init__(self, temperature: float):
        self.temperature = temperature

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return logits / self.temperature


class GreedyStage(SamplerStage):
    """Final stage: arg-max."""

    name = "greedy"

    def select(self, logits: torch.Tensor) -> int:
        return int(logits.argmax(dim=-1).item())


class DistStage(SamplerStage):
    """Final stage: categorical draw from the softmax, with its own RNG."""

    name = "dist"

    def __init__(self, seed: int):
        self.seed = seed
        self.generator = torch.Generator()
        self.generator.manual_seed(seed)

    def select(self, logits: torch.Tensor) -> int:
        probs = torch.softmax(logits, dim=-1)
        return int(torch.multinomial(probs, num_samples=1, generator=self.generator).item())

    def reset(self) -> None:
        self.generator.manual_seed(self.seed)


class SamplerChain:
    """Ordered sampler stages ending in a token choice.

    A chain carries request-specific state (the penalty window and the RNG),
    so each generation request builds its own.
    """

    def __init__(self, params: Optional[SamplingParams] = None, n_ctx_train: int = 0):
        """Build the chain.

        Args:
            params: Sampling configuration; defaults to SamplingParams().
            n_ctx_train: Training context length, used when
                ``params.repeat_last_n`` is -1.
        """
        if params is None:
            params = SamplingParams()
        self.params = params
        self.seed = params.seed if params.seed != 0 else fresh_seed()

        stages: List[SamplerStage] = []

        last_n = params.repeat_last_n if params.repeat_last_n >= 0 else n_ctx_train
        if params.penalties_enabled and last_n > 0:
            stages.append(
                PenaltyStage(
                    last_n,
                    params.repeat_penalty,
                    params.frequency_penalty,
                    params.presence_penalty,
                )
            )
        if params.top_k > 0:
            stages.append(TopKStage(params.top_k))
        if params.top_p < 1.0:
            stages.append(TopPStage(params.top_p))
        if params.min_p > 0.0:
            stages.append(MinPStage(params.min_p))

        if params.temperature > 0:
            stages.append(TemperatureStage(params.temperature))
            stages.append(DistStage(self.seed))
        else:
            stages.append(GreedyStage())

        self.stages = stages
        self._closed = False
        logger.debug("sampler chain: %s (seed=%d)", " -> ".join(self.names), self.seed)

    @classmethod
    def build(cls, model, params: Optional[SamplingParams] = None) -> "SamplerChain":
        """Build a chain for ``model``."""
        return cls(params, n_ctx_train=model.n_ctx_train)

    def __len__(self) -> int:
        return len(self.stages)

    def __enter__(self) -> "SamplerChain":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def transform(self, logits: torch.Tensor) -> torch.Tensor:
        """Run every stage except the final choice over ``logits``."""
        logits = logits.detach().float().flatten()
        for stage in self.stages[:-1]:
            logits = stage.apply(logits)
        return logits

    def sample_logits(self, logits: torch.Tensor) -> int:
        """Pick a token from raw logits."""
        if self._closed:
            raise InvalidArgumentError("sampler chain is closed")
        if logits.numel() == 0:
            raise InvalidArgumentError("cannot sample from empty logits")
        return self.stages[-1].select(self.transform(logits))

    @records_errors
    def sample(self, context, index: int = -1) -> int:
        """Pick a token from the logits of output ``index`` of ``context``.

        Raises:
            InvalidArgumentError: If the context holds no logits at ``index``.
        """
        logits = context.get_logits(index)
        if logits is None:
            raise InvalidArgumentError(f"no logits available at output index {index}")
        return self.sample_logits(logits)

    def accept(self, token: int) -> None:
        """Record a sampled token; call after every sample, before the next."""
        for stage in self.stages:
            stage.accept(token)

    def reset(self) -> None:
        """Clear the penalty window and re-seed the final draw."""
        for stage in self.stages:
            stage.reset()

    def close(self) -> None:
        self._closed = True
        self.stages = []
