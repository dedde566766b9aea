# =============================================================================
# VLM Inference Engine - FastAPI Server Application
# =============================================================================
# Defines the HTTP API endpoints for running image + prompt generation.  The
# model handle and tokenizer are loaded once at startup and shared read-only;
# every request gets its own GenerationSession (and therefore its own KV
# cache), so concurrent requests never share mutable state.
# =============================================================================

import base64
import binascii
import io
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

import torch
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from PIL import Image, UnidentifiedImageError

from config import get_config
from shared.schemas import (
    ErrorResponse,
    GenerateRequest,
    GenerationResponse,
    HTTPErrorResponse,
    SamplingParams,
    StreamEvent,
)
from vlm import GenerationSession, ModelHandle, SamplingConfig, TextTokenizer, load_model
from vlm.errors import InvalidSamplingConfigError, VLMError
from vlm.preprocess import ImagePreprocessor

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Global references populated during lifespan startup
# ---------------------------------------------------------------------------
_handle: Optional[ModelHandle] = None
_tokenizer: Optional[TextTokenizer] = None
_preprocessor: Optional[ImagePreprocessor] = None
_start_time: float = 0.0


def install_model(handle: ModelHandle, tokenizer: TextTokenizer) -> None:
    """Make a loaded model available to request handlers."""
    global _handle, _tokenizer, _preprocessor
    _handle = handle
    _tokenizer = tokenizer
    _preprocessor = ImagePreprocessor(handle.config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler: loads the model unless one was installed.

    On startup:
        - Loads config.json + model.pt from the configured model directory.
        - Loads the tokenizer from the same directory.
    """
    global _start_time

    config = get_config()
    _start_time = time.time()

    if _handle is None:
        logger.info("Starting server: loading model from %s...", config.model_dir)
        handle = load_model(config.model_dir, device=config.device, dtype=config.torch_dtype)
        tokenizer = TextTokenizer.from_pretrained(config.model_dir)
        install_model(handle, tokenizer)

    logger.info("Server ready: accepting requests.")
    yield
    logger.info("Shutting down server...")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title="VLM Inference Server",
    description=(
        "Accepts an image plus a text prompt, encodes the image with the "
        "model's vision tower, fuses it into the prompt and generates text "
        "autoregressively over a KV cache."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


ENGINE_ERROR_RESPONSES = {
    400: {"model": HTTPErrorResponse, "description": "Invalid input for the engine"},
    422: {"model": HTTPErrorResponse, "description": "Invalid sampling parameters"},
}


@app.get("/health")
def health_check():
    """
    Health check endpoint.

    Returns server status, whether the model is loaded, and uptime.
    """
    model_loaded = _handle is not None
    uptime = time.time() - _start_time if _start_time > 0 else 0.0
    return {
        "status": "ok" if model_loaded else "loading",
        "model_loaded": model_loaded,
        "architecture": _handle.config.architecture if model_loaded else None,
        "uptime_seconds": round(uptime, 2),
    }


def _engine_error(exc: VLMError) -> HTTPException:
    status = 422 if isinstance(exc, InvalidSamplingConfigError) else 400
    return HTTPException(status_code=status, detail=ErrorResponse(**exc.to_dict()).model_dump())


def _decode_images(encoded: List[str]) -> List[torch.Tensor]:
    """
    Decode base64 image files into pixel tensors.

    Raises:
        HTTPException: If any payload is not valid base64 or not an image.
    """
    pixels = []
    for index, data in enumerate(encoded):
        try:
            raw_bytes = base64.b64decode(data, validate=True)
            image = Image.open(io.BytesIO(raw_bytes))
            image.load()
        except (binascii.Error, UnidentifiedImageError, OSError) as exc:
            raise HTTPException(
                status_code=400,
                detail=f"Failed to decode image {index}: {exc}",
            )
        pixels.append(_preprocessor(image))
    return pixels


def _sampling_config(params: Optional[SamplingParams]) -> SamplingConfig:
    config = get_config()
    if params is None:
        return SamplingConfig(
            greedy=config.greedy,
            temperature=config.temperature,
            top_k=config.top_k,
            top_p=config.top_p,
            repetition_penalty=config.repetition_penalty,
        )
    return SamplingConfig(**params.model_dump())


def _new_session() -> GenerationSession:
    if _handle is None:
        raise HTTPException(status_code=503, detail="Model not loaded yet")
    config = get_config()
    return GenerationSession(_handle, _tokenizer, max_cache_length=config.max_cache_length or None)


def _prepare_request(request: GenerateRequest):
    session = _new_session()
    try:
        sampling = _sampling_config(request.sampling)
    except InvalidSamplingConfigError as exc:
        raise _engine_error(exc)
    images = _decode_images(request.images)
    max_new_tokens = request.max_new_tokens
    if max_new_tokens is None:
        max_new_tokens = get_config().max_new_tokens
    return session, sampling, images, max_new_tokens


@app.post("/api/v1/generate", response_model=GenerationResponse, responses=ENGINE_ERROR_RESPONSES)
def generate(request: GenerateRequest):
    """
    Generate a response for a prompt and optional images.

    Args:
        request: GenerateRequest with the prompt, base64 images, token budget,
                 sampling parameters and stop sequences.

    Returns:
        GenerationResponse with the generated text and timing info.
    """
    session, sampling, images, max_new_tokens = _prepare_request(request)

    inference_start = time.time()
    try:
        session.generate(
            request.prompt,
            image=images or None,
            max_new_tokens=max_new_tokens,
            sampling_config=sampling,
            stop=request.stop,
        )
    except VLMError as exc:
        logger.warning("Generation failed: %s", exc)
        raise _engine_error(exc)
    processing_time_ms = (time.time() - inference_start) * 1000.0

    result = session.last_result
    logger.info(
        "Generated %d token(s) (%.1fms, images=%d, finish=%s)",
        len(result.token_ids),
        processing_time_ms,
        len(images),
        result.finish_reason.value,
    )

    return GenerationResponse(
        text=result.text,
        token_ids=result.token_ids,
        finish_reason=result.finish_reason.value,
        prompt_tokens=result.prompt_tokens,
        processing_time_ms=round(processing_time_ms, 2),
        tokens_per_second=round(result.tokens_per_second, 2),
    )


@app.post("/api/v1/generate/stream", responses=ENGINE_ERROR_RESPONSES)
def generate_stream(request: GenerateRequest):
    """
    Stream generated tokens as newline-delimited JSON StreamEvents.

    Engine errors raised before the first token (bad placeholders, context
    overflow, bad image shapes) are returned as regular HTTP errors.
    """
    session, sampling, images, max_new_tokens = _prepare_request(request)

    events = session.stream(
        request.prompt,
        image=images or None,
        max_new_tokens=max_new_tokens,
        sampling_config=sampling,
        stop=request.stop,
    )
    # Pull the first event eagerly so prefill failures become HTTP errors
    try:
        first = next(events)
    except VLMError as exc:
        logger.warning("Generation failed: %s", exc)
        raise _engine_error(exc)

    def _lines():
        for event in _chain(first, events):
            payload = StreamEvent(
                index=event.index,
                token_id=event.token_id,
                text=event.text,
                finish_reason=event.finish_reason.value if event.finish_reason else None,
            )
            yield payload.model_dump_json() + "\n"

    return StreamingResponse(_lines(), media_type="application/x-ndjson")


def _chain(first, rest):
    yield first
    yield from rest
