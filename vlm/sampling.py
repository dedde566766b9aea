# =============================================================================
# VLM Inference Engine - Sampling
# =============================================================================
# Chooses the next token from a logit vector: greedy argmax, or temperature
# scaling followed by optional top-k / top-p truncation and a multinomial
# draw.  A repetition penalty may be applied to already generated tokens
# first.  Each Sampler owns its own seeded torch.Generator so concurrent
# sessions never share RNG state.
# =============================================================================

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence

import torch

from vlm.errors import InvalidSamplingConfigError

logger = logging.getLogger(__name__)


@dataclass
class SamplingConfig:
    """
    Parameters governing next-token selection.

    Attributes:
        greedy:             Pick the argmax; the stochastic fields are ignored.
        temperature:        Logit divisor (> 0).  Values near 0 approach greedy.
        top_k:              Keep only the k most likely tokens (0 = disabled).
        top_p:              Nucleus threshold in (0, 1] (1.0 = disabled).
        repetition_penalty: Penalty for tokens already generated (1.0 = off).
        seed:               Seed of the sampler's RNG; None draws a random seed.
    """

    greedy: bool = True
    temperature: float = 1.0
    top_k: int = 0
    top_p: float = 1.0
    repetition_penalty: float = 1.0
    seed: Optional[int] = None

    def __post_init__(self):
        self.validate()

    @classmethod
    def greedy_decoding(cls) -> "SamplingConfig":
        return cls(greedy=True)

    def validate(self) -> None:
        """
        Raises:
            InvalidSamplingConfigError: If any parameter is out of range.
        """
        if not self.temperature > 0:
            raise InvalidSamplingConfigError(
                f"temperature must be > 0, got {self.temperature}",
                temperature=self.temperature,
            )
        if not 0 < self.top_p <= 1.0:
            raise InvalidSamplingConfigError(
                f"top_p must be in (0, 1], got {self.top_p}",
                top_p=self.top_p,
            )
        if self.top_k < 0:
            raise InvalidSamplingConfigError(
                f"top_k must be >= 0, got {self.top_k}",
                top_k=self.top_k,
            )
        if not self.repetition_penalty > 0:
            raise InvalidSamplingConfigError(
                f"repetition_penalty must be > 0, got {self.repetition_penalty}",
                repetition_penalty=self.repetition_penalty,
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Sampler:
    """
    Stateless-per-call token sampler bound to one generation.

    Args:
        config: Validated sampling parameters.
    """

    def __init__(self, config: SamplingConfig):
        config.validate()
        self.config = config
        self._generator = torch.Generator(device="cpu")
        if config.seed is not None:
            self._generator.manual_seed(config.seed)
        else:
            self._generator.seed()

    def sample(self, logits: torch.Tensor, previous_tokens: Sequence[int] = ()) -> int:
        """
        Select the next token id.

        Args:
            logits:          1-D tensor of shape (vocab_size,).
            previous_tokens: Tokens generated so far (for the repetition penalty).

        Returns:
            The chosen token id.
        """
        logits = logits.detach().to(device="cpu", dtype=torch.float32)
        config = self.config

        if config.repetition_penalty != 1.0 and len(previous_tokens) > 0:
            logits = apply_repetition_penalty(logits, previous_tokens, config.repetition_penalty)

        if config.greedy:
            return int(torch.argmax(logits))

        # Shift so the best logit is 0; tiny temperatures then saturate to
        # -inf instead of overflowing to +inf
        logits = logits.to(torch.float64)
        logits = (logits - logits.max()) / config.temperature
        if config.top_k > 0:
            logits = top_k_filter(logits, config.top_k)
        if config.top_p < 1.0:
            logits = top_p_filter(logits, config.top_p)

        probs = torch.softmax(logits, dim=-1)
        token = torch.multinomial(probs, num_samples=1, generator=self._generator)
        return int(token)


def apply_repetition_penalty(
    logits: torch.Tensor,
    previous_tokens: Sequence[int],
    penalty: float,
) -> torch.Tensor:
    """CTRL-style penalty: shrink positive and grow negative logits of seen tokens."""
    logits = logits.clone()
    index = torch.tensor(sorted(set(previous_tokens)), dtype=torch.long)
    seen = logits[index]
    logits[index] = torch.where(seen > 0, seen / penalty, seen * penalty)
    return logits


def top_k_filter(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Mask every logit below the k-th largest to -inf."""
    k = min(k, logits.shape[-1])
    threshold = torch.topk(logits, k).values[-1]
    return logits.masked_fill(logits < threshold, float("-inf"))


def top_p_filter(logits: torch.Tensor, top_p: float) -> torch.Tensor:
    """
    Nucleus filtering: keep the smallest set of tokens whose cumulative
    probability reaches ``top_p``.  The most likely token is always kept.
    """
    sorted_logits, sorted_indices = torch.sort(logits, descending=True)
    cumulative = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)

    # Drop a token once the mass *before* it already reaches top_p
    remove = (cumulative - torch.softmax(sorted_logits, dim=-1)) >= top_p
    remove[0] = False

    mask = torch.zeros_like(remove)
    mask[sorted_indices] = remove
    return logits.masked_fill(mask, float("-inf"))
