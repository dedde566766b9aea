# =============================================================================
# VLM Inference Engine - Image Preprocessing
# =============================================================================
# Bridge from decoded Pillow images to the normalized pixel tensors the
# vision encoder expects.  Resizing and normalization are delegated to the
# HuggingFace image processor matching the architecture's vision tower.
# =============================================================================

import logging

import torch
from PIL import Image
from transformers import CLIPImageProcessor, SiglipImageProcessor

from vlm.model_config import ModelConfig

logger = logging.getLogger(__name__)


class ImagePreprocessor:
    """
    Resize + normalize images for one model configuration.

    Args:
        config: Model configuration (image size, mean/std, architecture).
    """

    def __init__(self, config: ModelConfig):
        size = config.vision.image_size
        if config.architecture == "smolvlm":
            self._processor = SiglipImageProcessor(
                size={"height": size, "width": size},
                image_mean=config.image_mean,
                image_std=config.image_std,
            )
        else:
            # CLIPImageProcessor handles resizing, center-cropping and normalization
            self._processor = CLIPImageProcessor(
                size={"shortest_edge": size},
                crop_size={"height": size, "width": size},
                image_mean=config.image_mean,
                image_std=config.image_std,
            )

    def __call__(self, image: Image.Image) -> torch.Tensor:
        """
        Convert a Pillow image into a (3, H, W) float32 pixel tensor.

        Args:
            image: Any-resolution image; converted to RGB first.
        """
        inputs = self._processor(images=image.convert("RGB"), return_tensors="pt")
        pixels = inputs["pixel_values"][0]
        logger.debug("Preprocessed image %s -> pixels %s", image.size, tuple(pixels.shape))
        return pixels
