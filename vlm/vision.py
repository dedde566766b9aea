# =============================================================================
# VLM Inference Engine - Vision Encoder Adapter
# =============================================================================
# Runs a normalized pixel tensor through a vision tower (HuggingFace CLIP or
# SigLIP ViT) and a projector, producing a fixed-length sequence of
# embeddings in the language model's hidden space.  Towers are built from
# the model config rather than downloaded; weights are loaded separately by
# vlm.loader.
# =============================================================================

import logging
from typing import Optional

import torch
import torch.nn as nn
from transformers import CLIPVisionConfig, CLIPVisionModel, SiglipVisionConfig, SiglipVisionModel

from vlm import tensor as tb
from vlm.errors import InputShapeError
from vlm.model_config import VisionConfig

logger = logging.getLogger(__name__)


def _tower_kwargs(vision: VisionConfig) -> dict:
    return dict(
        hidden_size=vision.hidden_size,
        intermediate_size=vision.intermediate_size,
        num_hidden_layers=vision.num_hidden_layers,
        num_attention_heads=vision.num_attention_heads,
        num_channels=vision.num_channels,
        image_size=vision.image_size,
        patch_size=vision.patch_size,
        layer_norm_eps=vision.layer_norm_eps,
    )


def build_clip_tower(vision: VisionConfig) -> CLIPVisionModel:
    """Randomly initialized CLIP vision tower (LLaVA)."""
    return CLIPVisionModel(CLIPVisionConfig(hidden_act=vision.hidden_act, **_tower_kwargs(vision)))


def build_siglip_tower(vision: VisionConfig) -> SiglipVisionModel:
    """Randomly initialized SigLIP vision tower (SmolVLM)."""
    act = vision.hidden_act if vision.hidden_act != "quick_gelu" else "gelu_pytorch_tanh"
    return SiglipVisionModel(SiglipVisionConfig(hidden_act=act, **_tower_kwargs(vision)))


class VisionEncoder(nn.Module):
    """
    Vision tower + projector for one VLM.

    Args:
        vision:        Vision tower hyper-parameters (for input validation).
        vision_tower:  HuggingFace vision model.
        projector:     Module mapping tower features to the text hidden size.
        feature_layer: Hidden-state index to read (None = last_hidden_state).
        drop_cls:      Whether the tower prepends a CLS token to remove.
    """

    def __init__(
        self,
        vision: VisionConfig,
        vision_tower: nn.Module,
        projector: nn.Module,
        feature_layer: Optional[int] = None,
        drop_cls: bool = False,
    ):
        super().__init__()
        self._vision = vision
        self.vision_tower = vision_tower
        self.projector = projector
        self._feature_layer = feature_layer
        self._drop_cls = drop_cls

    @property
    def expected_pixel_shape(self):
        return [self._vision.num_channels, self._vision.image_size, self._vision.image_size]

    def _check_pixels(self, pixels: torch.Tensor) -> torch.Tensor:
        expected = self.expected_pixel_shape
        if pixels.dim() == 4 and pixels.shape[0] == 1:
            pixels = pixels[0]
        if pixels.dim() != 3 or list(pixels.shape) != expected:
            raise InputShapeError(
                f"Pixel tensor {tb.describe(pixels)} does not match the encoder's "
                f"expected {expected} (patch size {self._vision.patch_size})",
                actual=list(pixels.shape),
                expected=expected,
                patch_size=self._vision.patch_size,
            )
        return pixels

    @torch.no_grad()
    def encode(self, pixels: torch.Tensor) -> torch.Tensor:
        """
        Encode a normalized pixel tensor into projected visual embeddings.

        Pipeline:
            1. Validate (3, H, W) against the configured resolution
            2. Forward through the vision tower
            3. Read the feature layer, dropping the CLS token if present
            4. Project into the text hidden space

        Args:
            pixels: (3, H, W) or (1, 3, H, W) float tensor, already normalized.

        Returns:
            (image_seq_len, text_hidden_size) tensor.

        Raises:
            InputShapeError: If the resolution or channel count is wrong.
        """
        pixels = self._check_pixels(pixels)
        param = next(self.vision_tower.parameters())
        pixel_values = pixels.unsqueeze(0).to(device=param.device, dtype=param.dtype)

        if self._feature_layer is None:
            features = self.vision_tower(pixel_values=pixel_values).last_hidden_state
        else:
            outputs = self.vision_tower(pixel_values=pixel_values, output_hidden_states=True)
            features = outputs.hidden_states[self._feature_layer]

        if self._drop_cls:
            features = features[:, 1:, :]

        embeddings = self.projector(features.squeeze(0))

        logger.debug(
            "Encoded pixels %s -> visual embeddings %s",
            tb.describe(pixels), tb.describe(embeddings),
        )
        return embeddings
