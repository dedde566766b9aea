# =============================================================================
# VLM Inference Engine - Generation Session
# =============================================================================
# Binds a shared, read-only ModelHandle to an exclusively owned KV cache and
# a conversation history, and orchestrates one request end to end:
#
#   1. Render the prompt (history + current turn) and tokenize it
#   2. Apply the architecture's placeholder convention
#   3. Encode every image and fuse it into the token stream
#   4. PREFILL + DECODE through the decode loop
#   5. Decode emitted tokens back into text
#
# Any failure poisons the session: the cache is frozen, the error is
# re-raised unchanged, and the session refuses further work until reset().
# =============================================================================

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Union

import torch

from vlm.decode import CancellationToken, DecodeLoop, FinishReason, StoppingCriteria
from vlm.errors import SessionStateError
from vlm.fusion import FusedSequence
from vlm.loader import ModelHandle
from vlm.sampling import Sampler, SamplingConfig
from vlm.tokenizer import IncrementalDecoder, TextTokenizer

logger = logging.getLogger(__name__)

ImageInput = Union[None, torch.Tensor, Sequence[torch.Tensor]]

DEFAULT_MAX_NEW_TOKENS = 256


@dataclass
class Turn:
    """
    One completed exchange of the conversation.

    Attributes:
        prompt:       The user prompt as given.
        images:       Pixel tensors that accompanied the prompt.
        response:     Decoded response text.
        response_ids: Emitted token ids; later prompts splice these verbatim
                      instead of re-tokenizing ``response``.
    """

    prompt: str
    images: List[torch.Tensor]
    response: str
    response_ids: List[int] = field(default_factory=list)


@dataclass
class TokenEvent:
    """
    One item of a token stream.

    Attributes:
        index:         Position of the token in the output (-1 for the final event).
        token_id:      The generated id; None on the final event.
        text:          Newly visible text (may be empty while characters or
                       potential stop strings are incomplete).
        finish_reason: Set only on the final event.
    """

    index: int
    token_id: Optional[int]
    text: str
    finish_reason: Optional[FinishReason] = None


@dataclass
class GenerationResult:
    """Outcome of one generate/stream call."""

    text: str
    token_ids: List[int]
    finish_reason: FinishReason
    prompt_tokens: int
    prefill_ms: float = 0.0
    decode_ms: float = 0.0

    @property
    def tokens_per_second(self) -> float:
        if self.decode_ms <= 0:
            return 0.0
        return len(self.token_ids) / (self.decode_ms / 1000.0)


def _as_image_list(image: ImageInput) -> List[torch.Tensor]:
    if image is None:
        return []
    if isinstance(image, torch.Tensor):
        return [image]
    return list(image)


class GenerationSession:
    """
    Single-conversation generation over a shared model.

    Args:
        handle:           Loaded model (shared read-only with other sessions).
        tokenizer:        Text tokenizer adapter for this model.
        max_cache_length: Optional cap on cached positions (defaults to the
                          model's context length).
    """

    def __init__(
        self,
        handle: ModelHandle,
        tokenizer: TextTokenizer,
        max_cache_length: Optional[int] = None,
    ):
        self._handle = handle
        self._arch = handle.architecture
        self._config = handle.config
        self._tokenizer = tokenizer

        self._suppressed_ids = [
            i for i in (self._config.image_token_id, self._config.image_boundary_token_id)
            if i is not None
        ]

        context = self._config.max_context_length
        cache_length = min(max_cache_length, context) if max_cache_length else context
        self.cache = self._arch.new_cache(cache_length)

        self.history: List[Turn] = []
        self.last_result: Optional[GenerationResult] = None
        self._error: Optional[BaseException] = None
        self._lock = threading.Lock()

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    @property
    def poisoned(self) -> bool:
        return self._error is not None

    def reset(self) -> None:
        """Clear the cache, the conversation history and any poisoned state."""
        if not self._lock.acquire(blocking=False):
            raise SessionStateError("Cannot reset a session while it is generating")
        try:
            self.cache.reset()
            self.history.clear()
            self.last_result = None
            self._error = None
        finally:
            self._lock.release()
        logger.debug("Session reset")

    def _poison(self, exc: BaseException) -> None:
        self._error = exc
        self.cache.freeze()
        logger.warning(
            "Session poisoned by %s: %s (cache frozen at %d)",
            type(exc).__name__, exc, self.cache.current_length(),
        )

    # -----------------------------------------------------------------
    # Prompt preparation
    # -----------------------------------------------------------------

    def render_prompt(self, prompt: str) -> str:
        """Render the conversation history plus the new prompt."""
        config = self._config
        history = "".join(
            config.turn_template.format(prompt=turn.prompt, response=turn.response)
            for turn in self.history
        )
        return config.prompt_template.format(history=history, prompt=prompt)

    def _encode_template(self, template: str, **values) -> List[int]:
        text = template.format(**values)
        return self._tokenizer.encode(text) if text else []

    def prompt_token_ids(self, prompt: str) -> List[int]:
        """
        Tokenize the conversation history plus the new prompt.

        Template text and user prompts are tokenized; earlier responses are
        spliced in as the ids the model emitted, so a response that reads
        like a special token never turns into one.
        """
        config = self._config
        history: List[int] = []
        for turn in self.history:
            head, _, tail = config.turn_template.partition("{response}")
            history += self._encode_template(head, prompt=turn.prompt)
            history += turn.response_ids
            history += self._encode_template(tail, prompt=turn.prompt)

        head, _, tail = config.prompt_template.partition("{history}")
        return (
            self._encode_template(head, prompt=prompt)
            + history
            + self._encode_template(tail, prompt=prompt)
        )

    def _prepare(self, prompt: str, images: List[torch.Tensor]) -> FusedSequence:
        token_ids = self.prompt_token_ids(prompt)
        if self._config.bos_token_id is not None:
            token_ids = [self._config.bos_token_id] + token_ids
        token_ids = self._arch.expand_prompt(token_ids)

        all_images = [img for turn in self.history for img in turn.images] + images
        if not all_images:
            return self._arch.embed_text(token_ids)

        visual = [self._arch.encode_vision(pixels) for pixels in all_images]
        return self._arch.fuse_embeddings(token_ids, visual)

    # -----------------------------------------------------------------
    # Generation
    # -----------------------------------------------------------------

    def stream(
        self,
        prompt: str,
        image: ImageInput = None,
        max_new_tokens: int = DEFAULT_MAX_NEW_TOKENS,
        sampling_config: Optional[SamplingConfig] = None,
        stop: Sequence[Union[str, int]] = (),
        cancel: Optional[CancellationToken] = None,
    ) -> Iterator[TokenEvent]:
        """
        Lazily generate tokens for one turn.

        Nothing runs until the first item is pulled.  The iterator is finite
        and not restartable; the last item always has ``token_id=None`` and
        carries the finish reason.

        Args:
            prompt:          User prompt; must contain one placeholder
                             (``config.image_token``) per supplied image.
            image:           A pixel tensor, a sequence of them, or None.
            max_new_tokens:  Upper bound on generated tokens.
            sampling_config: Sampling parameters (greedy when None).
            stop:            Stop strings and/or stop token ids.
            cancel:          Cooperative cancellation token.

        Yields:
            TokenEvent per generated token, then one final event.

        Raises:
            SessionStateError: If the session is poisoned or already busy.
            Any VLMError from the pipeline, unchanged (session poisoned).
        """
        if not self._lock.acquire(blocking=False):
            raise SessionStateError("Session is already generating; sessions are sequential")
        try:
            if self._error is not None:
                raise SessionStateError(
                    f"Session is poisoned by an earlier {type(self._error).__name__}; "
                    f"call reset() or create a new session",
                    cause=type(self._error).__name__,
                )
            yield from self._run(prompt, image, max_new_tokens, sampling_config, stop, cancel)
        finally:
            self._lock.release()

    def _run(self, prompt, image, max_new_tokens, sampling_config, stop, cancel):
        images = _as_image_list(image)
        sampling_config = sampling_config or SamplingConfig()
        stop_strings = [s for s in stop if isinstance(s, str)]
        stop_ids = [s for s in stop if isinstance(s, int) and not isinstance(s, bool)]

        loop = None
        decoder = IncrementalDecoder(self._tokenizer, stop_strings)
        try:
            sampler = Sampler(sampling_config)
            self.cache.reset()

            start = time.time()
            fused = self._prepare(prompt, images)
            loop = DecodeLoop(
                forward=self._arch.forward_step,
                embed=self._arch.embed_tokens,
                cache=self.cache,
                sampler=sampler,
                stopping=StoppingCriteria(
                    eos_token_ids=self._config.eos_token_id,
                    stop_token_ids=stop_ids,
                    stop_strings=stop_strings,
                    decode_fn=self._tokenizer.decode,
                ),
                max_new_tokens=max_new_tokens,
                max_context=self._config.max_context_length,
                cancel=cancel,
                suppress_token_ids=self._suppressed_ids,
            )
            loop.prefill(fused.embeddings)
            prefill_ms = (time.time() - start) * 1000.0
            logger.debug(
                "Prefill: %d positions (%d image(s)) in %.1fms",
                len(fused), len(fused.image_spans), prefill_ms,
            )

            decode_start = time.time()
            for index, token_id in enumerate(loop):
                yield TokenEvent(index=index, token_id=token_id, text=decoder.push(token_id))
            decode_ms = (time.time() - decode_start) * 1000.0

        except GeneratorExit:
            if loop is not None and loop.finish_reason is None:
                logger.debug("Stream closed by consumer after %d token(s)", len(loop.tokens))
            raise
        except BaseException as exc:
            self._poison(exc)
            raise

        tail = decoder.flush()
        result = GenerationResult(
            text=decoder.text,
            token_ids=list(loop.tokens),
            finish_reason=loop.finish_reason,
            prompt_tokens=loop.prompt_length,
            prefill_ms=prefill_ms,
            decode_ms=decode_ms,
        )
        self.last_result = result
        self.history.append(Turn(
            prompt=prompt, images=images, response=result.text, response_ids=result.token_ids,
        ))

        logger.info(
            "Generated %d token(s) (%s, prompt=%d, %.1f tok/s)",
            len(result.token_ids), result.finish_reason.value,
            result.prompt_tokens, result.tokens_per_second,
        )
        yield TokenEvent(index=-1, token_id=None, text=tail, finish_reason=result.finish_reason)

    def generate(
        self,
        prompt: str,
        image: ImageInput = None,
        max_new_tokens: int = DEFAULT_MAX_NEW_TOKENS,
        sampling_config: Optional[SamplingConfig] = None,
        stop: Sequence[Union[str, int]] = (),
        cancel: Optional[CancellationToken] = None,
    ) -> str:
        """
        Generate a response for one turn and return its text.

        See stream() for the arguments.  Details of the run (token ids,
        finish reason, timings) are available afterwards in ``last_result``.
        """
        for _ in self.stream(prompt, image, max_new_tokens, sampling_config, stop, cancel):
            pass
        return self.last_result.text
