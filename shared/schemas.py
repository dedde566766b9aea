# =============================================================================
# VLM Inference Engine - Shared API Schemas
# =============================================================================
# Pydantic models defining the data contracts between the HTTP client and
# the server.  These schemas are used for request/response validation and
# serialization across the HTTP API boundary.
#
# Images travel as base64-encoded PNG/JPEG bytes; the server decodes them
# with Pillow and runs the model's image processor before encoding.
# =============================================================================

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union


class SamplingParams(BaseModel):
    """
    Sampling parameters accepted over HTTP.

    Range checks are left to vlm.sampling.SamplingConfig so that invalid
    values surface as InvalidSamplingConfigError with the engine's details.
    """

    greedy: bool = True
    temperature: float = 1.0
    top_k: int = 0
    top_p: float = 1.0
    repetition_penalty: float = 1.0
    seed: Optional[int] = None


class GenerateRequest(BaseModel):
    """
    Request body for /api/v1/generate and /api/v1/generate/stream.

    Attributes:
        prompt:         User prompt; contains one image placeholder per image.
        images:         Base64-encoded image files (PNG/JPEG), in prompt order.
        max_new_tokens: Upper bound on generated tokens (server default if None).
        sampling:       Sampling parameters (server defaults if None).
        stop:           Stop strings or stop token ids.
    """

    prompt: str = Field(..., description="User prompt with image placeholders")
    images: List[str] = Field(default_factory=list, description="Base64-encoded image files")
    max_new_tokens: Optional[int] = Field(default=None, ge=0)
    sampling: Optional[SamplingParams] = None
    stop: List[Union[str, int]] = Field(default_factory=list)


class GenerationResponse(BaseModel):
    """
    Response for a completed generation.

    Attributes:
        text:               The generated text (cut at any stop string).
        token_ids:          Generated token ids.
        finish_reason:      Why generation stopped.
        prompt_tokens:      Length of the fused prompt in positions.
        processing_time_ms: Wall-clock time of the whole request.
        tokens_per_second:  Decode throughput.
    """

    text: str
    token_ids: List[int]
    finish_reason: str
    prompt_tokens: int
    processing_time_ms: float
    tokens_per_second: float


class StreamEvent(BaseModel):
    """One NDJSON line of /api/v1/generate/stream."""

    index: int
    token_id: Optional[int] = None
    text: str = ""
    finish_reason: Optional[str] = None


class ErrorResponse(BaseModel):
    """Structured engine error returned as the HTTP error detail."""

    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class HTTPErrorResponse(BaseModel):
    """FastAPI error envelope carrying an ErrorResponse as its detail."""

    detail: ErrorResponse
