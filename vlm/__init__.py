# =============================================================================
# VLM Inference Engine - Core Package
# =============================================================================
# The multimodal inference pipeline: vision encoding, fusion of visual and
# text embeddings, and autoregressive decoding over a KV cache.  The server
# and client packages are thin layers on top of GenerationSession.
# =============================================================================

from vlm.decode import CancellationToken, DecodeLoop, DecodeState, FinishReason, StoppingCriteria
from vlm.errors import (
    AllocationError,
    CacheOverflowError,
    CacheStateError,
    ContextLengthExceededError,
    EmptyInputError,
    InputShapeError,
    InvalidSamplingConfigError,
    ModelConfigError,
    PlaceholderMismatchError,
    SessionStateError,
    ShapeError,
    VLMError,
)
from vlm.kv_cache import KVCache
from vlm.loader import ModelHandle, build_model, load_model, save_model
from vlm.model_config import ModelConfig, TextConfig, VisionConfig
from vlm.sampling import Sampler, SamplingConfig
from vlm.session import GenerationResult, GenerationSession, TokenEvent
from vlm.tokenizer import IncrementalDecoder, TextTokenizer

__all__ = [
    "AllocationError",
    "CacheOverflowError",
    "CacheStateError",
    "CancellationToken",
    "ContextLengthExceededError",
    "DecodeLoop",
    "DecodeState",
    "EmptyInputError",
    "FinishReason",
    "GenerationResult",
    "GenerationSession",
    "IncrementalDecoder",
    "InputShapeError",
    "InvalidSamplingConfigError",
    "KVCache",
    "ModelConfig",
    "ModelConfigError",
    "ModelHandle",
    "PlaceholderMismatchError",
    "Sampler",
    "SamplingConfig",
    "SessionStateError",
    "ShapeError",
    "StoppingCriteria",
    "TextConfig",
    "TextTokenizer",
    "TokenEvent",
    "VLMError",
    "VisionConfig",
    "build_model",
    "load_model",
    "save_model",
]
