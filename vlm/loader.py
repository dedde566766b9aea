# =============================================================================
# VLM Inference Engine - Model Loading
# =============================================================================
# Produces the explicit, read-only ModelHandle that sessions share.  There is
# no global model registry: whoever loads a model owns the handle and passes
# it to every GenerationSession that should use those weights.
#
# On-disk layout of a model directory:
#   config.json   ModelConfig in HuggingFace-style JSON
#   model.pt      state dict of the architecture (torch.save)
#   tokenizer*    HuggingFace tokenizer files (loaded by vlm.tokenizer)
# =============================================================================

import logging
import os
from dataclasses import dataclass
from typing import Optional, Union

import torch

from vlm.architectures import VLMArchitecture, build_architecture
from vlm.errors import ModelConfigError
from vlm.model_config import ModelConfig
from vlm.tensor import resolve_dtype

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"
WEIGHTS_FILENAME = "model.pt"


@dataclass(frozen=True)
class ModelHandle:
    """
    A fully materialized model shared read-only across sessions.

    Attributes:
        config:       The model configuration.
        architecture: The architecture module (eval mode, no gradients).
        device:       Device the weights live on.
        dtype:        Floating-point type of the weights.
    """

    config: ModelConfig
    architecture: VLMArchitecture
    device: torch.device
    dtype: torch.dtype

    @property
    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.architecture.parameters())


def _freeze(architecture: VLMArchitecture, device, dtype) -> VLMArchitecture:
    architecture.to(device=device, dtype=dtype)
    architecture.eval()
    for param in architecture.parameters():
        param.requires_grad_(False)
    return architecture


def build_model(
    config: ModelConfig,
    device: Union[str, torch.device] = "cpu",
    dtype: Union[str, torch.dtype] = torch.float32,
    seed: Optional[int] = None,
) -> ModelHandle:
    """
    Build a model with randomly initialized weights.

    Args:
        config: Model configuration.
        device: Target device.
        dtype:  Weight dtype (name or torch.dtype).
        seed:   Seed for reproducible initialization.

    Returns:
        A read-only ModelHandle.
    """
    dtype = resolve_dtype(dtype)
    if seed is not None:
        torch.manual_seed(seed)
    architecture = _freeze(build_architecture(config), device, dtype)
    handle = ModelHandle(config=config, architecture=architecture,
                         device=torch.device(device), dtype=dtype)
    logger.info(
        "Built %s model: %d params on %s (%s)",
        config.architecture, handle.num_parameters, device, dtype,
    )
    return handle


def load_model(
    model_dir: str,
    device: Union[str, torch.device] = "cpu",
    dtype: Union[str, torch.dtype] = torch.float32,
) -> ModelHandle:
    """
    Load a model directory written by save_model (or by a conversion script).

    Raises:
        ModelConfigError:  If config.json or model.pt is missing, the config is
                           incomplete, or the weights do not match the
                           configured architecture.
    """
    dtype = resolve_dtype(dtype)
    config_path = os.path.join(model_dir, CONFIG_FILENAME)
    weights_path = os.path.join(model_dir, WEIGHTS_FILENAME)
    if not os.path.exists(config_path):
        raise ModelConfigError(f"No {CONFIG_FILENAME} in {model_dir}", model_dir=model_dir)
    if not os.path.exists(weights_path):
        raise ModelConfigError(f"No {WEIGHTS_FILENAME} in {model_dir}", model_dir=model_dir)

    config = ModelConfig.from_json_file(config_path)
    architecture = build_architecture(config)

    logger.info("Loading model weights: %s", weights_path)
    state_dict = torch.load(weights_path, map_location="cpu", weights_only=True)
    try:
        architecture.load_state_dict(state_dict)
    except RuntimeError as exc:
        raise ModelConfigError(
            f"Weights in {weights_path} do not match the {config.architecture} "
            f"architecture described by {config_path}: {exc}",
            weights_path=weights_path,
            architecture=config.architecture,
        ) from exc

    architecture = _freeze(architecture, device, dtype)
    handle = ModelHandle(config=config, architecture=architecture,
                         device=torch.device(device), dtype=dtype)

    mem_mb = handle.num_parameters * torch.empty((), dtype=dtype).element_size() / 1024 / 1024
    logger.info(
        "Model ready: %s, %d params, ~%.1f MB on %s",
        config.architecture, handle.num_parameters, mem_mb, device,
    )
    return handle


def save_model(handle: ModelHandle, model_dir: str) -> None:
    """Write config.json and model.pt for a handle."""
    os.makedirs(model_dir, exist_ok=True)
    handle.config.to_json_file(os.path.join(model_dir, CONFIG_FILENAME))
    torch.save(handle.architecture.state_dict(), os.path.join(model_dir, WEIGHTS_FILENAME))
    logger.info("Saved %s model to %s", handle.config.architecture, model_dir)
