"""
Pytest configuration and shared fixtures for genctl-lite tests.

This module provides reusable fixtures for testing, including:
- A scripted in-process engine (no model download)
- Model cache, model and context built on that engine
- A clean error channel for every test
- A tiny randomly initialized Hugging Face model saved to a temp dir
- The Hugging Face model used by integration tests
"""

import os

import pytest
import torch
from tokenizers import Tokenizer, decoders, models, pre_tokenizers, trainers
from transformers import LlamaConfig, LlamaForCausalLM, PreTrainedTokenizerFast

from genctl_lite.core.context import Context, ContextParams
from genctl_lite.errors import clear_error
from genctl_lite.models.model import Model
from genctl_lite.models.model_cache import ModelCache
from tests.utils.scripted_backend import ScriptedBackend


# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""

SCRIPTED_MODEL_PATH = "models/scripted"

TINY_CORPUS = [
    "The capital of France is Paris.",
    "The quick brown fox jumps over the lazy dog.",
    "Tokens are merged from the most frequent byte pairs.",
    "A small model is enough to check cache reuse.",
]

TINY_CHAT_TEMPLATE = (
    "{% for m in messages %}<|{{ m['role'] }}|>{{ m['content'] }}\n{% endfor %}"
    "{% if add_generation_prompt %}<|assistant|>{% endif %}"
)


@pytest.fixture(autouse=True)
def clean_error_channel():
    """Start every test with an empty error slot on this thread."""
    clear_error()
    yield
    clear_error()


@pytest.fixture
def backend() -> ScriptedBackend:
    """Scripted engine with partial removal and position shifts enabled."""
    return ScriptedBackend()


@pytest.fixture
def model_cache(backend: ScriptedBackend):
    """Model cache bound to the scripted engine, emptied after the test."""
    cache = ModelCache(backend)
    yield cache
    cache.clear_cache()


@pytest.fixture
def model(model_cache: ModelCache) -> Model:
    """Scripted model loaded through the cache."""
    return model_cache.load(SCRIPTED_MODEL_PATH)


@pytest.fixture
def context_params() -> ContextParams:
    return ContextParams(n_ctx=64, n_batch=32, n_ubatch=32, n_seq_max=4)


@pytest.fixture
def context(model: Model, context_params: ContextParams):
    """Context over the scripted model, closed after the test."""
    ctx = Context(model, context_params)
    yield ctx
    ctx.close()


@pytest.fixture(scope="session")
def hf_model_name() -> str:
    """
    Return the Hugging Face model used by integration tests.

    Returns:
        str: HuggingFace model name
    """
    return "Qwen/Qwen2.5-0.5B"


@pytest.fixture(scope="session")
def tiny_hf_model_dir(tmp_path_factory) -> str:
    """
    Save a two-layer Llama with random weights and a byte-level BPE tokenizer.

    Nothing is downloaded. The weights are random, so tests on this model
    check mechanics (bytes, cache reuse, templates) and not text quality.

    Returns:
        str: Directory loadable with from_pretrained
    """
    path = tmp_path_factory.mktemp("tiny-llama")

    bpe = Tokenizer(models.BPE())
    bpe.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    bpe.decoder = decoders.ByteLevel()
    trainer = trainers.BpeTrainer(
        vocab_size=320,
        special_tokens=["<eos>"],
        initial_alphabet=pre_tokenizers.ByteLevel.alphabet(),
        show_progress=False,
    )
    bpe.train_from_iterator(TINY_CORPUS, trainer=trainer)
    tokenizer = PreTrainedTokenizerFast(tokenizer_object=bpe, eos_token="<eos>")
    tokenizer.chat_template = TINY_CHAT_TEMPLATE
    tokenizer.save_pretrained(path)

    torch.manual_seed(0)
    config = LlamaConfig(
        vocab_size=len(tokenizer),
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
        max_position_embeddings=128,
        bos_token_id=tokenizer.eos_token_id,
        eos_token_id=tokenizer.eos_token_id,
    )
    LlamaForCausalLM(config).save_pretrained(path)
    return str(path)
