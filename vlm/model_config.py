# =============================================================================
# VLM Inference Engine - Model Configuration
# =============================================================================
# Dataclasses describing a loaded VLM: the vision tower, the language model,
# and the special-token / prompt conventions that glue them together.  The
# JSON layout mirrors HuggingFace's ``config.json`` (``text_config`` and
# ``vision_config`` sub-dicts) so that configs can be written by hand or
# trimmed from an existing checkpoint.
# =============================================================================

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

from vlm.errors import ModelConfigError

logger = logging.getLogger(__name__)

# Placeholder substitution conventions (see vlm.fusion.PlaceholderMode)
_DEFAULT_PLACEHOLDER_MODES = {
    "llava": "region",
    "smolvlm": "per_patch",
}

_REQUIRED_TEXT_FIELDS = (
    "hidden_size",
    "num_hidden_layers",
    "num_attention_heads",
    "intermediate_size",
    "vocab_size",
    "max_position_embeddings",
)

_REQUIRED_VISION_FIELDS = (
    "hidden_size",
    "num_hidden_layers",
    "num_attention_heads",
    "intermediate_size",
    "image_size",
    "patch_size",
)

_REQUIRED_TOP_LEVEL_FIELDS = ("image_token_id", "eos_token_id")


@dataclass
class VisionConfig:
    """Vision tower hyper-parameters (CLIP / SigLIP ViT)."""

    hidden_size: int
    num_hidden_layers: int
    num_attention_heads: int
    intermediate_size: int
    image_size: int
    patch_size: int
    num_channels: int = 3
    layer_norm_eps: float = 1e-5
    hidden_act: str = "quick_gelu"
    feature_layer: int = -2  # Penultimate hidden layer (llava only)

    @property
    def patches_per_side(self) -> int:
        return self.image_size // self.patch_size

    @property
    def num_patches(self) -> int:
        return self.patches_per_side ** 2


@dataclass
class TextConfig:
    """Llama-style decoder hyper-parameters."""

    hidden_size: int
    num_hidden_layers: int
    num_attention_heads: int
    intermediate_size: int
    vocab_size: int
    max_position_embeddings: int
    num_key_value_heads: Optional[int] = None
    rope_theta: float = 10000.0
    rms_norm_eps: float = 1e-5
    tie_word_embeddings: bool = False

    def __post_init__(self):
        if self.num_key_value_heads is None:
            self.num_key_value_heads = self.num_attention_heads

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads


@dataclass
class ModelConfig:
    """
    Complete configuration of a vision-language model.

    Attributes:
        architecture:            Variant name ("llava" or "smolvlm").
        text:                    Language model hyper-parameters.
        vision:                  Vision tower hyper-parameters.
        image_token_id:          Placeholder token id spliced with visual embeddings.
        eos_token_id:            One or more end-of-sequence token ids.
        bos_token_id:            Optional id prepended to every prompt.
        image_boundary_token_id: Optional id framing each image (smolvlm).
        image_token:             Text form of the placeholder in prompts.
        placeholder_mode:        "region" or "per_patch".
        projector_hidden_act:    Activation of the llava MLP projector.
        scale_factor:            Pixel-shuffle factor of the smolvlm connector.
        prompt_template:         Template for the current turn; receives
                                 ``{history}`` and ``{prompt}``.
        turn_template:           Template for each completed turn in history.
        image_mean / image_std:  Normalization used by the image processor.
    """

    text: TextConfig
    vision: VisionConfig
    image_token_id: int
    eos_token_id: List[int]
    architecture: str = "llava"
    bos_token_id: Optional[int] = None
    image_boundary_token_id: Optional[int] = None
    image_token: str = "<image>"
    placeholder_mode: Optional[str] = None
    projector_hidden_act: str = "gelu"
    scale_factor: int = 1
    prompt_template: str = "{history}USER: {prompt}\nASSISTANT:"
    turn_template: str = "USER: {prompt}\nASSISTANT: {response}\n"
    image_mean: List[float] = field(default_factory=lambda: [0.48145466, 0.4578275, 0.40821073])
    image_std: List[float] = field(default_factory=lambda: [0.26862954, 0.26130258, 0.27577711])

    def __post_init__(self):
        if isinstance(self.eos_token_id, int):
            self.eos_token_id = [self.eos_token_id]
        if self.placeholder_mode is None:
            self.placeholder_mode = _DEFAULT_PLACEHOLDER_MODES.get(self.architecture, "region")
        self._validate()

    # -----------------------------------------------------------------
    # Derived values
    # -----------------------------------------------------------------

    @property
    def max_context_length(self) -> int:
        return self.text.max_position_embeddings

    @property
    def image_seq_len(self) -> int:
        """Visual embeddings produced per image (a config constant)."""
        return self.vision.num_patches // (self.scale_factor ** 2)

    # -----------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------

    def _validate(self) -> None:
        text, vision = self.text, self.vision

        if self.placeholder_mode not in ("region", "per_patch"):
            raise ModelConfigError(
                f"Unknown placeholder_mode '{self.placeholder_mode}'",
                placeholder_mode=self.placeholder_mode,
            )
        if text.hidden_size % text.num_attention_heads != 0:
            raise ModelConfigError(
                f"text hidden_size {text.hidden_size} is not divisible by "
                f"num_attention_heads {text.num_attention_heads}",
                hidden_size=text.hidden_size,
                num_attention_heads=text.num_attention_heads,
            )
        if text.num_attention_heads % text.num_key_value_heads != 0:
            raise ModelConfigError(
                f"num_attention_heads {text.num_attention_heads} is not a "
                f"multiple of num_key_value_heads {text.num_key_value_heads}",
                num_attention_heads=text.num_attention_heads,
                num_key_value_heads=text.num_key_value_heads,
            )
        if vision.image_size % vision.patch_size != 0:
            raise ModelConfigError(
                f"image_size {vision.image_size} is not a multiple of "
                f"patch_size {vision.patch_size}",
                image_size=vision.image_size,
                patch_size=vision.patch_size,
            )
        if self.scale_factor < 1 or vision.patches_per_side % self.scale_factor != 0:
            raise ModelConfigError(
                f"patch grid {vision.patches_per_side} is not divisible by "
                f"scale_factor {self.scale_factor}",
                patches_per_side=vision.patches_per_side,
                scale_factor=self.scale_factor,
            )

        special_ids = {"image_token_id": self.image_token_id}
        special_ids.update({f"eos_token_id[{i}]": t for i, t in enumerate(self.eos_token_id)})
        if self.bos_token_id is not None:
            special_ids["bos_token_id"] = self.bos_token_id
        if self.image_boundary_token_id is not None:
            special_ids["image_boundary_token_id"] = self.image_boundary_token_id
        for name, token_id in special_ids.items():
            if not 0 <= token_id < text.vocab_size:
                raise ModelConfigError(
                    f"{name}={token_id} is outside the vocabulary [0, {text.vocab_size})",
                    field=name,
                    token_id=token_id,
                    vocab_size=text.vocab_size,
                )

    # -----------------------------------------------------------------
    # (De)serialization
    # -----------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelConfig":
        """
        Build a ModelConfig from a HuggingFace-style dict.

        Raises:
            ModelConfigError: Listing every absent required field.
        """
        text_data = data.get("text_config") or {}
        vision_data = data.get("vision_config") or {}

        missing = [f for f in _REQUIRED_TOP_LEVEL_FIELDS if data.get(f) is None]
        missing += [f"text_config.{f}" for f in _REQUIRED_TEXT_FIELDS if text_data.get(f) is None]
        missing += [f"vision_config.{f}" for f in _REQUIRED_VISION_FIELDS if vision_data.get(f) is None]
        if missing:
            raise ModelConfigError(
                f"Model configuration is missing required fields: {', '.join(missing)}",
                missing=missing,
            )

        try:
            text = TextConfig(**_known_fields(TextConfig, text_data))
            vision = VisionConfig(**_known_fields(VisionConfig, vision_data))
            top_level = _known_fields(cls, data, exclude=("text", "vision"))
            return cls(text=text, vision=vision, **top_level)
        except (TypeError, ValueError) as exc:
            if isinstance(exc, ModelConfigError):
                raise
            raise ModelConfigError(f"Invalid model configuration: {exc}") from exc

    @classmethod
    def from_json_file(cls, path: str) -> "ModelConfig":
        """Load a ModelConfig from a ``config.json`` file."""
        logger.info("Loading model config: %s", path)
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["text_config"] = data.pop("text")
        data["vision_config"] = data.pop("vision")
        return data

    def to_json_file(self, path: str) -> None:
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


def _known_fields(config_cls, data: Dict[str, Any], exclude=()) -> Dict[str, Any]:
    """Keep only keys that are dataclass fields; HF configs carry many extras."""
    names = {f.name for f in fields(config_cls)} - set(exclude)
    ignored = sorted(k for k in data if k not in names)
    if ignored:
        logger.debug("Ignoring %s config keys: %s", config_cls.__name__, ignored)
    return {k: v for k, v in data.items() if k in names}
