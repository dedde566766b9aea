# =============================================================================
# VLM Inference Engine - Test Fixtures
# =============================================================================
# Tiny randomly initialized models and an in-memory byte-level tokenizer, so
# the whole pipeline runs on CPU without downloading anything.
# =============================================================================

import pytest
import torch
from tokenizers import Tokenizer, decoders, models, pre_tokenizers
from transformers import PreTrainedTokenizerFast

from vlm.kv_cache import KVCache
from vlm.loader import build_model
from vlm.model_config import ModelConfig
from vlm.tokenizer import TextTokenizer

IMAGE_TOKEN_ID = 256
EOS_TOKEN_ID = 257
PAD_TOKEN_ID = 258
BOUNDARY_TOKEN_ID = 259
VOCAB_SIZE = 260
MAX_CONTEXT = 128

SPECIAL_TOKENS = ["<image>", "<eos>", "<pad>", "<fake_token_around_image>"]


def build_tokenizer() -> TextTokenizer:
    """Byte-level BPE without merges: one token per byte plus the special tokens."""
    alphabet = sorted(pre_tokenizers.ByteLevel.alphabet())
    vocab = {ch: i for i, ch in enumerate(alphabet)}
    tokenizer = Tokenizer(models.BPE(vocab=vocab, merges=[]))
    tokenizer.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    tokenizer.decoder = decoders.ByteLevel()
    tokenizer.add_special_tokens(SPECIAL_TOKENS)
    hf_tokenizer = PreTrainedTokenizerFast(
        tokenizer_object=tokenizer, eos_token="<eos>", pad_token="<pad>"
    )
    return TextTokenizer(hf_tokenizer)


def tiny_config_dict(architecture: str = "llava") -> dict:
    data = {
        "architecture": architecture,
        "image_token_id": IMAGE_TOKEN_ID,
        "eos_token_id": EOS_TOKEN_ID,
        "text_config": {
            "hidden_size": 32,
            "num_hidden_layers": 2,
            "num_attention_heads": 4,
            "num_key_value_heads": 2,
            "intermediate_size": 64,
            "vocab_size": VOCAB_SIZE,
            "max_position_embeddings": MAX_CONTEXT,
        },
        "vision_config": {
            "hidden_size": 32,
            "num_hidden_layers": 2,
            "num_attention_heads": 2,
            "intermediate_size": 64,
            "image_size": 32,
            "patch_size": 8,
        },
    }
    if architecture == "smolvlm":
        data["scale_factor"] = 2
        data["image_boundary_token_id"] = BOUNDARY_TOKEN_ID
        data["image_mean"] = [0.5, 0.5, 0.5]
        data["image_std"] = [0.5, 0.5, 0.5]
    return data


def tiny_handle(architecture: str = "llava", seed: int = 0):
    handle = build_model(ModelConfig.from_dict(tiny_config_dict(architecture)), seed=seed)
    # Greedy decoding never picks a special token, so runs last until their
    # token budget
    with torch.no_grad():
        handle.architecture.language_model.lm_head.weight[IMAGE_TOKEN_ID:].zero_()
    return handle


@pytest.fixture(scope="session")
def tokenizer():
    return build_tokenizer()


@pytest.fixture(scope="session")
def llava_handle():
    return tiny_handle("llava")


@pytest.fixture(scope="session")
def smolvlm_handle():
    return tiny_handle("smolvlm")


@pytest.fixture
def pixels():
    generator = torch.Generator().manual_seed(1)
    return torch.randn(3, 32, 32, generator=generator)


@pytest.fixture
def other_pixels():
    generator = torch.Generator().manual_seed(2)
    return torch.randn(3, 32, 32, generator=generator)


class ScriptedModel:
    """
    Stand-in forward/embed pair that emits a fixed token script.

    Each forward pass stages zeros into a one-layer cache and returns logits
    whose argmax is the next scripted token.
    """

    def __init__(self, script, vocab_size: int = VOCAB_SIZE, hidden: int = 4):
        self.script = list(script)
        self.vocab_size = vocab_size
        self.hidden = hidden
        self.forward_calls = 0

    def new_cache(self, max_length: int = 64) -> KVCache:
        return KVCache(num_layers=1, num_heads=1, head_dim=2, max_length=max_length)

    def embed(self, token_ids: torch.Tensor) -> torch.Tensor:
        return torch.zeros(token_ids.shape[0], self.hidden)

    def forward(self, embeddings: torch.Tensor, cache: KVCache) -> torch.Tensor:
        n = embeddings.shape[0]
        cache.extend(0, torch.zeros(1, n, 2), torch.zeros(1, n, 2))
        cache.commit()
        logits = torch.zeros(self.vocab_size)
        if self.forward_calls < len(self.script):
            logits[self.script[self.forward_calls]] = 10.0
        self.forward_calls += 1
        return logits

