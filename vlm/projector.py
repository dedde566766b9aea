# =============================================================================
# VLM Inference Engine - Vision Projectors
# =============================================================================
# Maps vision tower features into the language model's hidden space.
#
#   MLPProjector           LLaVA: Linear(vision -> text) -> act -> Linear
#   PixelShuffleConnector  SmolVLM / Idefics3: fold scale x scale patch
#                          neighbourhoods into the channel dim, then a
#                          bias-free Linear
#
# Parameter names match the HuggingFace checkpoints (``linear_1``/``linear_2``
# and ``modality_projection.proj``) so extracted weights load unchanged.
# =============================================================================

import logging
import math
from typing import Dict

import torch
import torch.nn as nn

from vlm.errors import ModelConfigError, ShapeError

logger = logging.getLogger(__name__)

# Mapping from config string to PyTorch activation module
_ACTIVATION_MAP: Dict[str, type] = {
    "gelu": nn.GELU,
    "relu": nn.ReLU,
    "silu": nn.SiLU,
}


class MLPProjector(nn.Module):
    """
    Two-layer MLP projector (LLaVA ``multi_modal_projector``).

    Args:
        vision_dim: Vision tower hidden size.
        text_dim:   Language model hidden size.
        act_name:   Activation between the two linear layers.
    """

    def __init__(self, vision_dim: int, text_dim: int, act_name: str = "gelu"):
        super().__init__()
        activation_cls = _ACTIVATION_MAP.get(act_name)
        if activation_cls is None:
            raise ModelConfigError(
                f"Unsupported activation '{act_name}'. "
                f"Supported: {list(_ACTIVATION_MAP.keys())}",
                projector_hidden_act=act_name,
            )
        self.linear_1 = nn.Linear(vision_dim, text_dim)
        self.act = activation_cls()
        self.linear_2 = nn.Linear(text_dim, text_dim)

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        """(n_patches, vision_dim) -> (n_patches, text_dim)"""
        return self.linear_2(self.act(self.linear_1(features)))


class PixelShuffleConnector(nn.Module):
    """
    Pixel-shuffle connector (SmolVLM ``connector``).

    Reduces the token count by ``scale_factor**2`` while multiplying the
    channel dimension by the same amount, then projects to the text size.

    Args:
        vision_dim:   Vision tower hidden size.
        text_dim:     Language model hidden size.
        scale_factor: Side length of the folded patch neighbourhood.
    """

    def __init__(self, vision_dim: int, text_dim: int, scale_factor: int):
        super().__init__()
        self.scale_factor = scale_factor
        self.modality_projection = nn.Module()
        self.modality_projection.proj = nn.Linear(
            vision_dim * scale_factor ** 2, text_dim, bias=False
        )

    def pixel_shuffle(self, x: torch.Tensor) -> torch.Tensor:
        """(seq, dim) -> (seq / scale^2, dim * scale^2) over a square patch grid."""
        seq_len, embed_dim = x.shape
        side = math.isqrt(seq_len)
        sf = self.scale_factor
        if side * side != seq_len or side % sf != 0:
            raise ShapeError(
                f"Cannot pixel-shuffle {seq_len} patches with scale factor {sf}: "
                f"grid must be square and divisible by the scale factor",
                num_patches=seq_len,
                scale_factor=sf,
            )

        x = x.reshape(side, side // sf, embed_dim * sf)
        x = x.transpose(0, 1)
        x = x.reshape(side // sf, side // sf, embed_dim * sf * sf)
        x = x.transpose(0, 1)
        return x.reshape(-1, embed_dim * sf * sf)

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        shuffled = self.pixel_shuffle(features)
        return self.modality_projection.proj(shuffled)
