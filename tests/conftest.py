"""
Pytest configuration and shared fixtures for inferbridge tests.

This module provides reusable fixtures for testing, including:
- CPU device enforcement
- Engine configurations for the deterministic fake backend
- A tiny randomly initialized Llama checkpoint with a word-level tokenizer
- A clean last-error slot for every test
"""

import os

import pytest
import torch
from tokenizers import Tokenizer, models, pre_tokenizers
from transformers import LlamaConfig, LlamaForCausalLM, PreTrainedTokenizerFast

from inferbridge.core.config import EngineConfig
from inferbridge.core.errors import clear_last_error


# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""

TINY_WORDS = [
    "hello", "world", "what", "is", "the", "a", "code", "program", "explain",
    "this", "that", "model", "token", "engine", "session", "step", "end",
    "start", "one", "two", "three", "four", "five", "six", "seven", "eight",
    "nine", "ten", "zero",
]


@pytest.fixture(autouse=True)
def clean_last_error():
    """Reset the process-wide error slot around every test."""
    clear_last_error()
    yield
    clear_last_error()


@pytest.fixture(scope="session")
def cpu_device() -> torch.device:
    """
    Force CPU device for all tests.

    Returns:
        torch.device: CPU device object
    """
    return torch.device("cpu")


@pytest.fixture
def fake_model_dir(tmp_path) -> str:
    """Directory path for the fake backend (it never reads the files)."""
    model_dir = tmp_path / "fake-model"
    model_dir.mkdir()
    return str(model_dir)


@pytest.fixture
def fake_config(fake_model_dir) -> EngineConfig:
    """EngineConfig that selects the fake backend."""
    return EngineConfig(model_path=fake_model_dir, backend="fake")


@pytest.fixture(scope="session")
def tiny_model_dir(tmp_path_factory) -> str:
    """
    Save a tiny random Llama model and tokenizer (session-scoped).

    This fixture:
    - Builds a word-level tokenizer over a small fixed vocabulary
    - Initializes a 2-layer LlamaForCausalLM with a fixed seed
    - Saves both with save_pretrained so Auto* classes can load them

    Returns:
        str: Path to the model directory
    """
    model_dir = tmp_path_factory.mktemp("tiny-llama")

    vocab = {"[UNK]": 0, "<s>": 1, "</s>": 2}
    for word in TINY_WORDS:
        vocab[word] = len(vocab)
    backend_tokenizer = Tokenizer(models.WordLevel(vocab=vocab, unk_token="[UNK]"))
    backend_tokenizer.pre_tokenizer = pre_tokenizers.Whitespace()
    tokenizer = PreTrainedTokenizerFast(
        tokenizer_object=backend_tokenizer,
        unk_token="[UNK]",
        bos_token="<s>",
        eos_token="</s>",
    )
    tokenizer.save_pretrained(str(model_dir))

    torch.manual_seed(0)
    config = LlamaConfig(
        vocab_size=len(vocab),
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
        max_position_embeddings=128,
        bos_token_id=1,
        eos_token_id=2,
    )
    model = LlamaForCausalLM(config)
    model.save_pretrained(str(model_dir))

    return str(model_dir)
