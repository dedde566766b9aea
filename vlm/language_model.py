# =============================================================================
# VLM Inference Engine - Language Model
# =============================================================================
# Llama-style causal decoder (RMSNorm, rotary position embeddings, grouped
# query attention, SwiGLU MLP) whose forward pass runs over a KVCache.  The
# same forward handles prefill (many positions) and decode (one position):
# keys/values for the new positions are staged into the cache layer by layer
# and committed only after every layer succeeded.
#
# Parameter names follow HuggingFace's LlamaForCausalLM so state dicts can be
# mapped from existing checkpoints with a prefix strip.
# =============================================================================

import logging
from typing import Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from vlm.kv_cache import KVCache
from vlm.model_config import TextConfig

logger = logging.getLogger(__name__)


class RMSNorm(nn.Module):
    def __init__(self, hidden_size: int, eps: float = 1e-5):
        super().__init__()
        self.weight = nn.Parameter(torch.ones(hidden_size))
        self.eps = eps

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        dtype = x.dtype
        x = x.float()
        x = x * torch.rsqrt(x.pow(2).mean(-1, keepdim=True) + self.eps)
        return self.weight * x.to(dtype)


def rotary_cos_sin(
    positions: torch.Tensor,
    head_dim: int,
    theta: float,
    dtype: torch.dtype,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Cos/sin tables of shape (n_positions, head_dim) for the given positions."""
    inv_freq = 1.0 / (
        theta ** (torch.arange(0, head_dim, 2, dtype=torch.float32, device=positions.device) / head_dim)
    )
    angles = torch.outer(positions.float(), inv_freq)
    emb = torch.cat([angles, angles], dim=-1)
    return emb.cos().to(dtype), emb.sin().to(dtype)


def apply_rotary(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    """Rotate (heads, seq, head_dim) by split halves (NeoX convention)."""
    half = x.shape[-1] // 2
    rotated = torch.cat([-x[..., half:], x[..., :half]], dim=-1)
    return x * cos + rotated * sin


class Attention(nn.Module):
    def __init__(self, config: TextConfig):
        super().__init__()
        self.num_heads = config.num_attention_heads
        self.num_kv_heads = config.num_key_value_heads
        self.head_dim = config.head_dim
        self.q_proj = nn.Linear(config.hidden_size, self.num_heads * self.head_dim, bias=False)
        self.k_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=False)
        self.v_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=False)
        self.o_proj = nn.Linear(self.num_heads * self.head_dim, config.hidden_size, bias=False)

    def forward(
        self,
        x: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        cache: KVCache,
        layer_index: int,
    ) -> torch.Tensor:
        seq_len = x.shape[0]
        start = cache.current_length()

        # (seq, heads*hd) -> (heads, seq, hd)
        q = self.q_proj(x).view(seq_len, self.num_heads, self.head_dim).transpose(0, 1)
        k = self.k_proj(x).view(seq_len, self.num_kv_heads, self.head_dim).transpose(0, 1)
        v = self.v_proj(x).view(seq_len, self.num_kv_heads, self.head_dim).transpose(0, 1)

        q = apply_rotary(q, cos, sin)
        k = apply_rotary(k, cos, sin)

        if seq_len == 1:
            cache.append(layer_index, k, v)
        else:
            cache.extend(layer_index, k, v)
        keys, values = cache.layer(layer_index)

        groups = self.num_heads // self.num_kv_heads
        if groups > 1:
            keys = keys.repeat_interleave(groups, dim=0)
            values = values.repeat_interleave(groups, dim=0)

        mask = None
        if seq_len > 1:
            # Query i sits at absolute position start + i
            mask = torch.ones(seq_len, keys.shape[1], dtype=torch.bool, device=x.device)
            mask = mask.tril(diagonal=start)

        out = F.scaled_dot_product_attention(q, keys.to(q.dtype), values.to(q.dtype), attn_mask=mask)
        out = out.transpose(0, 1).reshape(seq_len, self.num_heads * self.head_dim)
        return self.o_proj(out)


class MLP(nn.Module):
    def __init__(self, config: TextConfig):
        super().__init__()
        self.gate_proj = nn.Linear(config.hidden_size, config.intermediate_size, bias=False)
        self.up_proj = nn.Linear(config.hidden_size, config.intermediate_size, bias=False)
        self.down_proj = nn.Linear(config.intermediate_size, config.hidden_size, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.down_proj(F.silu(self.gate_proj(x)) * self.up_proj(x))


class DecoderLayer(nn.Module):
    def __init__(self, config: TextConfig):
        super().__init__()
        self.input_layernorm = RMSNorm(config.hidden_size, config.rms_norm_eps)
        self.self_attn = Attention(config)
        self.post_attention_layernorm = RMSNorm(config.hidden_size, config.rms_norm_eps)
        self.mlp = MLP(config)

    def forward(self, x, cos, sin, cache, layer_index):
        x = x + self.self_attn(self.input_layernorm(x), cos, sin, cache, layer_index)
        return x + self.mlp(self.post_attention_layernorm(x))


class LanguageModel(nn.Module):
    """
    Causal decoder producing next-token logits over a KV cache.

    Args:
        config: Text model hyper-parameters.
    """

    def __init__(self, config: TextConfig):
        super().__init__()
        self.config = config
        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList(DecoderLayer(config) for _ in range(config.num_hidden_layers))
        self.norm = RMSNorm(config.hidden_size, config.rms_norm_eps)
        self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=False)
        if config.tie_word_embeddings:
            self.lm_head.weight = self.embed_tokens.weight

    def new_cache(self, max_length: int) -> KVCache:
        """Allocate an empty cache shaped for this model."""
        param = self.embed_tokens.weight
        return KVCache(
            num_layers=self.config.num_hidden_layers,
            num_heads=self.config.num_key_value_heads,
            head_dim=self.config.head_dim,
            max_length=max_length,
            device=param.device,
            dtype=param.dtype,
        )

    @torch.no_grad()
    def embed(self, token_ids: torch.Tensor) -> torch.Tensor:
        """(n,) token ids -> (n, hidden) embeddings."""
        return self.embed_tokens(token_ids.to(self.embed_tokens.weight.device))

    @torch.no_grad()
    def forward(self, embeddings: torch.Tensor, cache: KVCache) -> torch.Tensor:
        """
        Run new positions through the decoder and commit them to the cache.

        Args:
            embeddings: (n_new, hidden) input embeddings for positions
                        ``cache.current_length() .. + n_new``.
            cache:      The session's KV cache.

        Returns:
            Logits of the last position, shape (vocab_size,), float32.
        """
        weight = self.embed_tokens.weight
        x = embeddings.to(device=weight.device, dtype=weight.dtype)
        start = cache.current_length()
        positions = torch.arange(start, start + x.shape[0], device=x.device)
        cos, sin = rotary_cos_sin(positions, self.config.head_dim, self.config.rope_theta, x.dtype)

        try:
            for layer_index, layer in enumerate(self.layers):
                x = layer(x, cos, sin, cache, layer_index)
            cache.commit()
        except Exception:
            cache.discard()
            raise

        x = self.norm(x[-1:])
        return self.lm_head(x)[0].float()
