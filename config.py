# =============================================================================
# VLM Inference Engine - Centralized Configuration
# =============================================================================
# Provides a single Config dataclass containing all tunable parameters for
# both the HTTP client and server. Parameters are overridable via environment
# variables with the VLM_ prefix (e.g., VLM_MAX_NEW_TOKENS=64).
# =============================================================================

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import torch

from vlm.tensor import detect_device, resolve_dtype

# Project root directory (where this file lives)
_PROJECT_ROOT = str(Path(__file__).parent.resolve())


@dataclass
class Config:
    """
    Centralized configuration for the VLM inference engine.

    All fields can be overridden via environment variables prefixed with VLM_.
    """

    # -- Networking --
    server_host: str = "127.0.0.1"
    server_port: int = 8000
    request_timeout_seconds: float = 300.0

    # -- Model --
    model_dir: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "models", "vlm")
    )
    max_cache_length: int = 0  # 0 = model context length

    # -- Generation defaults --
    max_new_tokens: int = 256
    greedy: bool = True
    temperature: float = 1.0
    top_k: int = 0
    top_p: float = 1.0
    repetition_penalty: float = 1.0

    # -- Compute --
    device: str = field(default_factory=detect_device)
    torch_dtype_str: str = "float32"

    # -- Logging --
    log_level: str = "INFO"

    # -- Derived (computed post-init) --
    server_url: str = field(init=False)
    torch_dtype: torch.dtype = field(init=False)

    def __post_init__(self):
        """Apply environment variable overrides and compute derived fields."""
        self._apply_env_overrides()
        self.server_url = f"http://{self.server_host}:{self.server_port}"
        self.torch_dtype = resolve_dtype(self.torch_dtype_str)

    def _apply_env_overrides(self):
        """
        Override config fields from environment variables.

        Looks for VLM_<FIELD_NAME_UPPERCASE> environment variables and
        applies them with appropriate type conversion.
        """
        field_types = {
            "server_host": str,
            "server_port": int,
            "request_timeout_seconds": float,
            "model_dir": str,
            "max_cache_length": int,
            "max_new_tokens": int,
            "greedy": _parse_bool,
            "temperature": float,
            "top_k": int,
            "top_p": float,
            "repetition_penalty": float,
            "device": str,
            "torch_dtype_str": str,
            "log_level": str,
        }
        for field_name, field_type in field_types.items():
            env_key = f"VLM_{field_name.upper()}"
            env_value = os.environ.get(env_key)
            if env_value is not None:
                setattr(self, field_name, field_type(env_value))


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Return the singleton Config instance, creating it on first call.

    Returns:
        Config: The global configuration object.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance
