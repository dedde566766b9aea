# =============================================================================
# VLM Inference Engine - Decode Loop
# =============================================================================
# The autoregressive generation state machine:
#
#   PREFILL  one forward pass over the whole fused prompt, filling the cache
#   DECODE   sample -> stop-check -> emit -> forward the emitted token
#   STOPPED  terminal (EOS, token budget, stop token/string, cancellation,
#            or a full context window)
#
# The loop is an iterator over emitted token ids: lazy, finite and not
# restartable.  Steps are strictly sequential because every forward pass
# depends on the cache committed by the previous one.
# =============================================================================

import logging
import threading
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

import torch

from vlm.errors import ContextLengthExceededError, SessionStateError
from vlm.kv_cache import KVCache
from vlm.sampling import Sampler

logger = logging.getLogger(__name__)

# (n_new, hidden) embeddings + cache -> last-position logits
ForwardFn = Callable[[torch.Tensor, KVCache], torch.Tensor]
# (n,) token ids -> (n, hidden) embeddings
EmbedFn = Callable[[torch.Tensor], torch.Tensor]


class DecodeState(str, Enum):
    PREFILL = "prefill"
    DECODE = "decode"
    STOPPED = "stopped"


class FinishReason(str, Enum):
    EOS = "eos"
    MAX_TOKENS = "max_tokens"
    STOP_TOKEN = "stop_token"
    STOP_STRING = "stop_string"
    CANCELLED = "cancelled"
    CONTEXT_LENGTH = "context_length"


class CancellationToken:
    """Cooperative cancellation flag checked between decode steps."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class StoppingCriteria:
    """
    Token- and text-level stop conditions.

    Args:
        eos_token_ids:  Ids that end generation (never emitted).
        stop_token_ids: Extra caller-supplied ids that end generation (never
                        emitted).
        stop_strings:   Strings that end generation once they appear in the
                        decoded output (the matching token is emitted; the
                        session trims the text).
        decode_fn:      Token ids -> text, required when stop_strings is set.
    """

    def __init__(
        self,
        eos_token_ids: Iterable[int] = (),
        stop_token_ids: Iterable[int] = (),
        stop_strings: Sequence[str] = (),
        decode_fn: Optional[Callable[[Sequence[int]], str]] = None,
    ):
        self.eos_token_ids = frozenset(eos_token_ids)
        self.stop_token_ids = frozenset(stop_token_ids)
        self.stop_strings = [s for s in stop_strings if s]
        if self.stop_strings and decode_fn is None:
            raise ValueError("stop_strings require a decode_fn")
        self._decode_fn = decode_fn

    def check_token(self, token_id: int) -> Optional[FinishReason]:
        """Reason to stop *before* emitting ``token_id``, if any."""
        if token_id in self.eos_token_ids:
            return FinishReason.EOS
        if token_id in self.stop_token_ids:
            return FinishReason.STOP_TOKEN
        return None

    def check_output(self, token_ids: Sequence[int]) -> Optional[FinishReason]:
        """Reason to stop *after* emitting the last token, if any."""
        if not self.stop_strings:
            return None
        text = self._decode_fn(token_ids)
        if any(s in text for s in self.stop_strings):
            return FinishReason.STOP_STRING
        return None


class DecodeLoop:
    """
    One generation run over a prefilled prompt.

    Args:
        forward:        Language model forward over the cache.
        embed:          Token embedding lookup.
        cache:          The session's (empty) KV cache.
        sampler:        Next-token sampler.
        stopping:       Stop conditions.
        max_new_tokens: Upper bound on emitted tokens (0 = prefill only).
        max_context:    Model context limit checked at PREFILL.
        cancel:         Optional cancellation token checked between steps.
        suppress_token_ids: Ids that are never sampled (e.g. image placeholders).
    """

    def __init__(
        self,
        forward: ForwardFn,
        embed: EmbedFn,
        cache: KVCache,
        sampler: Sampler,
        stopping: StoppingCriteria,
        max_new_tokens: int,
        max_context: int,
        cancel: Optional[CancellationToken] = None,
        suppress_token_ids: Iterable[int] = (),
    ):
        if max_new_tokens < 0:
            raise ValueError(f"max_new_tokens must be >= 0, got {max_new_tokens}")
        self._forward = forward
        self._embed = embed
        self._cache = cache
        self._sampler = sampler
        self._stopping = stopping
        self._max_new_tokens = max_new_tokens
        self._max_context = max_context
        self._cancel = cancel
        self._suppressed = torch.tensor(sorted(set(suppress_token_ids)), dtype=torch.long)

        self.state = DecodeState.PREFILL
        self.finish_reason: Optional[FinishReason] = None
        self.tokens: List[int] = []
        self.prompt_length = 0
        self.decode_steps = 0
        self._logits: Optional[torch.Tensor] = None

    # -----------------------------------------------------------------
    # State transitions
    # -----------------------------------------------------------------

    def _stop(self, reason: FinishReason) -> None:
        self.state = DecodeState.STOPPED
        self.finish_reason = reason
        self._logits = None
        logger.debug(
            "Decode loop stopped: %s after %d token(s) (cache=%d)",
            reason.value, len(self.tokens), self._cache.current_length(),
        )

    def prefill(self, embeddings: torch.Tensor) -> None:
        """
        Process the fused prompt once, populating the cache.

        Raises:
            ContextLengthExceededError: If the prompt is longer than the
                                        context limit (cache untouched).
            SessionStateError:          If called twice.
        """
        if self.state is not DecodeState.PREFILL:
            raise SessionStateError(
                f"prefill() called in state {self.state.value}", state=self.state.value
            )

        length = embeddings.shape[0]
        limit = min(self._max_context, self._cache.max_length)
        if length > limit:
            raise ContextLengthExceededError(
                f"Fused prompt has {length} positions but the context limit is {limit}",
                prompt_length=length,
                max_context_length=self._max_context,
                cache_max_length=self._cache.max_length,
            )

        self._logits = self._forward(embeddings, self._cache)
        self.prompt_length = length
        logger.debug("Prefilled %d positions", length)

        if self._max_new_tokens == 0:
            self._stop(FinishReason.MAX_TOKENS)
        else:
            self.state = DecodeState.DECODE

    def step(self) -> Optional[int]:
        """
        Advance one decode step.

        Returns:
            The newly emitted token id, or None once the loop has STOPPED.
        """
        if self.state is DecodeState.PREFILL:
            raise SessionStateError("step() called before prefill()", state=self.state.value)
        if self.state is DecodeState.STOPPED:
            return None

        logits = self._logits
        if self._suppressed.numel() > 0:
            logits = logits.index_fill(-1, self._suppressed.to(logits.device), float("-inf"))
        token = self._sampler.sample(logits, self.tokens)

        reason = self._stopping.check_token(token)
        if reason is not None:
            self._stop(reason)
            return None

        self.tokens.append(token)

        reason = self._stopping.check_output(self.tokens)
        if reason is None and len(self.tokens) >= self._max_new_tokens:
            reason = FinishReason.MAX_TOKENS
        if reason is None and self._cancel is not None and self._cancel.cancelled:
            reason = FinishReason.CANCELLED
        if reason is None and self._cache.current_length() >= self._max_context:
            reason = FinishReason.CONTEXT_LENGTH
        if reason is None and self._cache.is_full:
            reason = FinishReason.CONTEXT_LENGTH
        if reason is not None:
            self._stop(reason)
            return token

        embedding = self._embed(torch.tensor([token], dtype=torch.long))
        self._logits = self._forward(embedding, self._cache)
        self.decode_steps += 1
        return token

    # -----------------------------------------------------------------
    # Iterator protocol
    # -----------------------------------------------------------------

    def __iter__(self):
        return self

    def __next__(self) -> int:
        if self._cancel is not None and self._cancel.cancelled and self.state is DecodeState.DECODE:
            self._stop(FinishReason.CANCELLED)
        token = self.step()
        if token is None:
            raise StopIteration
        return token
