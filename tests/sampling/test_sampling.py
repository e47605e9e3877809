"""
Tests for the sampler pipeline.
"""

import math

import pytest
import torch

from genctl_lite.errors import InvalidArgumentError, last_error
from genctl_lite.sampling.sampling import (
    SamplerChain,
    SamplingParams,
    apply_penalties,
    min_p_filter,
    top_k_filter,
    top_p_filter,
)
from tests.utils.comparison import assert_tensors_close


class _LogitsSource:
    """Minimal stand-in for a context's logits accessor."""

    def __init__(self, logits=None):
        self.logits = logits

    def get_logits(self, index: int):
        return self.logits


@pytest.mark.unit
def test_default_params() -> None:
    params = SamplingParams()
    assert params.seed == 0
    assert params.temperature == 0.8
    assert params.top_k == 40
    assert params.top_p == 0.95
    assert params.min_p == 0.05
    assert params.repeat_penalty == 1.1
    assert params.repeat_last_n == 64


@pytest.mark.unit
@pytest.mark.parametrize(
    "overrides",
    [
        {"temperature": -0.1},
        {"repeat_penalty": 0.0},
        {"repeat_last_n": -2},
    ],
)
def test_invalid_params(overrides) -> None:
    with pytest.raises(InvalidArgumentError):
        SamplingParams(**overrides)


@pytest.mark.unit
def test_full_chain_stage_order() -> None:
    """Test that enabled stages appear in the fixed order."""
    chain = SamplerChain(SamplingParams(seed=7, frequency_penalty=0.5))
    assert chain.names == ["penalties", "top_k", "top_p", "min_p", "temperature", "dist"]
    assert len(chain) == 6


@pytest.mark.unit
def test_disabled_stages_are_skipped() -> None:
    """Test that disabled stages are left out rather than run as identity."""
    chain = SamplerChain(SamplingParams.greedy())
    assert chain.names == ["greedy"]
    assert len(chain) == 1

    chain = SamplerChain(SamplingParams(top_k=0, top_p=1.0, min_p=0.0, repeat_penalty=1.0, seed=1))
    assert chain.names == ["temperature", "dist"]


@pytest.mark.unit
def test_out_of_range_filters_are_disabled() -> None:
    """Test that top_p above 1 and min_p below 0 mean the stage is off."""
    chain = SamplerChain(SamplingParams(top_p=1.5, min_p=-0.1, seed=3))
    assert "top_p" not in chain.names
    assert "min_p" not in chain.names
    assert chain.names == ["penalties", "top_k", "temperature", "dist"]


@pytest.mark.unit
def test_penalty_window_settings() -> None:
    """Test repeat_last_n: 0 disables, -1 uses the training context."""
    chain = SamplerChain(SamplingParams.greedy(repeat_penalty=1.2, repeat_last_n=0))
    assert "penalties" not in chain.names

    chain = SamplerChain(SamplingParams.greedy(repeat_penalty=1.2, repeat_last_n=-1), n_ctx_train=32)
    assert chain.stages[0].name == "penalties"
    assert chain.stages[0].history.maxlen == 32


@pytest.mark.unit
def test_greedy_deterministic_regardless_of_seed() -> None:
    """Test that temperature 0 always picks the arg-max."""
    logits = torch.tensor([0.1, 2.5, 2.4, -1.0])
    picks = set()
    for seed in (1, 2, 3, 0):
        chain = SamplerChain(SamplingParams.greedy(seed=seed))
        for _ in range(5):
            picks.add(chain.sample(_LogitsSource(logits)))
    assert picks == {1}


@pytest.mark.unit
def test_seeded_dist_reproducible() -> None:
    """Test that the same seed reproduces the same draws, and reset rewinds."""
    logits = torch.zeros(50)
    params = SamplingParams(seed=1234, top_k=0, top_p=1.0, min_p=0.0, repeat_penalty=1.0)

    a = SamplerChain(params)
    b = SamplerChain(params)
    draws_a = [a.sample_logits(logits) for _ in range(10)]
    draws_b = [b.sample_logits(logits) for _ in range(10)]
    assert draws_a == draws_b

    a.reset()
    assert [a.sample_logits(logits) for _ in range(10)] == draws_a


@pytest.mark.unit
def test_seed_zero_picks_fresh_seed() -> None:
    chain = SamplerChain(SamplingParams(seed=0))
    assert chain.params.seed == 0
    assert 0 <= chain.seed <= 0xFFFFFFFF
    assert chain.stages[-1].seed == chain.seed


@pytest.mark.unit
def test_top_k_filter() -> None:
    logits = torch.tensor([1.0, 3.0, 2.0, 0.0])
    out = top_k_filter(logits, 2)
    assert out[1] == 3.0 and out[2] == 2.0
    assert math.isinf(out[0]) and math.isinf(out[3])
    # k larger than the vocabulary keeps everything
    assert_tensors_close(top_k_filter(logits, 10), logits)


@pytest.mark.unit
def test_top_p_filter_keeps_smallest_prefix() -> None:
    """Test that top-p keeps the minimal prefix reaching the mass."""
    probs = torch.tensor([0.5, 0.3, 0.15, 0.05])
    logits = probs.log()

    out = top_p_filter(logits, 0.75)
    kept = (~torch.isinf(out)).nonzero().flatten().tolist()
    assert kept == [0, 1]

    out = top_p_filter(logits, 0.85)
    kept = (~torch.isinf(out)).nonzero().flatten().tolist()
    assert kept == [0, 1, 2]

    # p = 0 still keeps one token
    out = top_p_filter(logits, 0.0)
    assert (~torch.isinf(out)).sum() == 1


@pytest.mark.unit
def test_min_p_filter() -> None:
    """Test that tokens below min_p * max_prob are dropped."""
    probs = torch.tensor([0.6, 0.3, 0.07, 0.03])
    out = min_p_filter(probs.log(), 0.2)
    kept = (~torch.isinf(out)).nonzero().flatten().tolist()
    assert kept == [0, 1]


@pytest.mark.unit
def test_apply_penalties() -> None:
    """Test repetition, frequency and presence penalties."""
    logits = torch.tensor([2.0, -2.0, 1.0, 0.5])
    out = apply_penalties(logits, [0, 1, 0], 2.0, 0.0, 0.0)
    assert_tensors_close(out, torch.tensor([1.0, -4.0, 1.0, 0.5]))

    out = apply_penalties(logits, [0, 0, 2], 1.0, 0.5, 0.25)
    # token 0: 2 - 2*0.5 - 0.25; token 2: 1 - 0.5 - 0.25
    assert_tensors_close(out, torch.tensor([0.75, -2.0, 0.25, 0.5]))
    # Input is not modified
    assert_tensors_close(logits, torch.tensor([2.0, -2.0, 1.0, 0.5]))


@pytest.mark.unit
def test_accept_feeds_penalty_window() -> None:
    """Test that accepted tokens are penalized on the next sample."""
    logits = torch.tensor([5.0, 4.9, 0.0])
    chain = SamplerChain(SamplingParams.greedy(repeat_penalty=2.0, repeat_last_n=4))

    first = chain.sample_logits(logits)
    assert first == 0
    chain.accept(first)
    assert chain.sample_logits(logits) == 1

    chain.reset()
    assert chain.sample_logits(logits) == 0


@pytest.mark.unit
def test_penalty_window_is_bounded() -> None:
    chain = SamplerChain(SamplingParams.greedy(repeat_penalty=2.0, repeat_last_n=2))
    for token in (0, 1, 2):
        chain.accept(token)
    assert list(chain.stages[0].history) == [1, 2]


@pytest.mark.unit
def test_sample_without_logits() -> None:
    """Test that sampling with no logits fails through the error channel."""
    chain = SamplerChain(SamplingParams.greedy())
    with pytest.raises(InvalidArgumentError):
        chain.sample(_LogitsSource(None))
    assert isinstance(last_error(), InvalidArgumentError)


@pytest.mark.unit
def test_closed_chain() -> None:
    with SamplerChain(SamplingParams.greedy()) as chain:
        pass
    with pytest.raises(InvalidArgumentError):
        chain.sample_logits(torch.tensor([1.0]))


@pytest.mark.unit
def test_build_uses_model_training_context(model) -> None:
    chain = SamplerChain.build(model, SamplingParams.greedy(repeat_penalty=1.3, repeat_last_n=-1))
    assert chain.stages[0].history.maxlen == model.n_ctx_train
