# =============================================================================
# VLM Inference Engine - Model Architectures
# =============================================================================
# Each VLM family implements the same capability interface:
#
#   encode_vision    pixels -> visual embedding sequence
#   expand_prompt    apply the family's placeholder convention to token ids
#   fuse_embeddings  splice visual embeddings into the token stream
#   embed_text       text-only prompt embeddings
#   forward_step     new positions + KV cache -> next-token logits
#
# The architecture is chosen once when the model is built (see
# ``ARCHITECTURES``) and never re-dispatched per call.
# =============================================================================

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Sequence, Type

import torch
import torch.nn as nn

from vlm import fusion
from vlm.errors import ModelConfigError
from vlm.fusion import FusedSequence, PlaceholderMode
from vlm.kv_cache import KVCache
from vlm.language_model import LanguageModel
from vlm.model_config import ModelConfig
from vlm.projector import MLPProjector, PixelShuffleConnector
from vlm.vision import VisionEncoder, build_clip_tower, build_siglip_tower

logger = logging.getLogger(__name__)


class VLMArchitecture(nn.Module, ABC):
    """
    Base class binding a vision encoder to a language model.

    Args:
        config: Model configuration.
    """

    name: str = ""

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.config = config
        self.vision = self._build_vision_encoder(config)
        self.language_model = LanguageModel(config.text)

    @abstractmethod
    def _build_vision_encoder(self, config: ModelConfig) -> VisionEncoder:
        ...

    # -----------------------------------------------------------------
    # Capability interface
    # -----------------------------------------------------------------

    def encode_vision(self, pixels: torch.Tensor) -> torch.Tensor:
        return self.vision.encode(pixels)

    def embed_tokens(self, token_ids: torch.Tensor) -> torch.Tensor:
        return self.language_model.embed(token_ids)

    def expand_prompt(self, token_ids: Sequence[int]) -> List[int]:
        """
        Rewrite placeholder tokens to the family's convention.

        In ``per_patch`` mode each placeholder becomes ``image_seq_len``
        placeholders; in ``region`` mode ids are returned unchanged.
        """
        config = self.config
        if config.placeholder_mode != PlaceholderMode.PER_PATCH.value:
            return list(token_ids)
        expanded: List[int] = []
        for token in token_ids:
            if token == config.image_token_id:
                expanded.extend([config.image_token_id] * config.image_seq_len)
            else:
                expanded.append(token)
        return expanded

    def fuse_embeddings(
        self,
        token_ids: Sequence[int],
        visual_embeddings: Sequence[torch.Tensor],
    ) -> FusedSequence:
        return fusion.fuse(
            token_ids,
            visual_embeddings,
            embed_tokens=self.embed_tokens,
            placeholder_id=self.config.image_token_id,
            mode=PlaceholderMode(self.config.placeholder_mode),
            tokens_per_image=self.config.image_seq_len,
        )

    def embed_text(self, token_ids: Sequence[int]) -> FusedSequence:
        return fusion.embed_text(token_ids, self.embed_tokens, self.config.image_token_id)

    def forward_step(self, embeddings: torch.Tensor, cache: KVCache) -> torch.Tensor:
        return self.language_model(embeddings, cache)

    def new_cache(self, max_length: int) -> KVCache:
        return self.language_model.new_cache(max_length)


class LlavaArchitecture(VLMArchitecture):
    """CLIP tower (penultimate layer, no CLS) + MLP projector; one ``<image>`` per image."""

    name = "llava"

    def _build_vision_encoder(self, config: ModelConfig) -> VisionEncoder:
        return VisionEncoder(
            config.vision,
            vision_tower=build_clip_tower(config.vision),
            projector=MLPProjector(
                config.vision.hidden_size, config.text.hidden_size, config.projector_hidden_act
            ),
            feature_layer=config.vision.feature_layer,
            drop_cls=True,
        )


class SmolVLMArchitecture(VLMArchitecture):
    """SigLIP tower + pixel-shuffle connector; ``<image>`` expands to one token per embedding."""

    name = "smolvlm"

    def _build_vision_encoder(self, config: ModelConfig) -> VisionEncoder:
        return VisionEncoder(
            config.vision,
            vision_tower=build_siglip_tower(config.vision),
            projector=PixelShuffleConnector(
                config.vision.hidden_size, config.text.hidden_size, config.scale_factor
            ),
        )

    def expand_prompt(self, token_ids: Sequence[int]) -> List[int]:
        """Expand placeholders and frame each image with the boundary token."""
        config = self.config
        boundary = config.image_boundary_token_id
        if boundary is None or config.placeholder_mode != PlaceholderMode.PER_PATCH.value:
            return super().expand_prompt(token_ids)

        framed: List[int] = []
        for token in token_ids:
            if token == config.image_token_id:
                framed.append(boundary)
                framed.extend([config.image_token_id] * config.image_seq_len)
                framed.append(boundary)
            else:
                framed.append(token)
        return framed


ARCHITECTURES: Dict[str, Type[VLMArchitecture]] = {
    LlavaArchitecture.name: LlavaArchitecture,
    SmolVLMArchitecture.name: SmolVLMArchitecture,
}


def build_architecture(config: ModelConfig) -> VLMArchitecture:
    """
    Instantiate the architecture named by ``config.architecture``.

    Raises:
        ModelConfigError: If the architecture is unknown.
    """
    arch_cls = ARCHITECTURES.get(config.architecture)
    if arch_cls is None:
        raise ModelConfigError(
            f"Unknown architecture '{config.architecture}'. "
            f"Supported: {sorted(ARCHITECTURES)}",
            architecture=config.architecture,
        )
    return arch_cls(config)
