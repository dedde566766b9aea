# =============================================================================
# VLM Inference Engine - Text Tokenizer Adapter
# =============================================================================
# Thin pass-through to a HuggingFace tokenizer.  Special tokens (the image
# placeholder, EOS) map to their reserved ids; decoding never normalizes
# whitespace so that decode(encode(text)) == text.
#
# IncrementalDecoder turns the growing list of generated ids into text
# deltas for streaming, holding back pieces that end mid-way through a
# multi-byte UTF-8 character.
# =============================================================================

import logging
from typing import List, Optional, Sequence

from transformers import AutoTokenizer, PreTrainedTokenizerBase

logger = logging.getLogger(__name__)

_REPLACEMENT_CHAR = "�"


class TextTokenizer:
    """
    Adapter around a HuggingFace tokenizer.

    Args:
        tokenizer: Any ``PreTrainedTokenizerBase`` (slow or fast).
    """

    def __init__(self, tokenizer: PreTrainedTokenizerBase):
        self._tokenizer = tokenizer

    @classmethod
    def from_pretrained(cls, path: str) -> "TextTokenizer":
        """Load a tokenizer from a local model directory (no hub download)."""
        logger.info("Loading tokenizer: %s", path)
        return cls(AutoTokenizer.from_pretrained(path, local_files_only=True))

    @property
    def vocab_size(self) -> int:
        return len(self._tokenizer)

    @property
    def eos_token_id(self) -> Optional[int]:
        return self._tokenizer.eos_token_id

    @property
    def bos_token_id(self) -> Optional[int]:
        return self._tokenizer.bos_token_id

    def token_id(self, token: str) -> int:
        """Return the id of a single (usually special) token string."""
        token_id = self._tokenizer.convert_tokens_to_ids(token)
        if token_id is None or token_id == self._tokenizer.unk_token_id:
            raise KeyError(f"Token {token!r} is not in the vocabulary")
        return token_id

    def encode(self, text: str) -> List[int]:
        """Encode text to token ids without adding BOS/EOS."""
        return list(self._tokenizer.encode(text, add_special_tokens=False))

    def decode(self, token_ids: Sequence[int], skip_special_tokens: bool = False) -> str:
        """Decode token ids to text, preserving whitespace exactly."""
        return self._tokenizer.decode(
            list(token_ids),
            skip_special_tokens=skip_special_tokens,
            clean_up_tokenization_spaces=False,
        )


class IncrementalDecoder:
    """
    Produce text deltas from a growing sequence of token ids.

    Decodes the full sequence on every push (byte-level tokenizers may need
    several tokens to form one character) and emits only the new suffix.
    When stop strings are given, text is cut at the first stop string and
    any tail that could still grow into one is held back.

    Args:
        tokenizer:    The TextTokenizer used for decoding.
        stop_strings: Strings that terminate the visible output.
    """

    def __init__(self, tokenizer: TextTokenizer, stop_strings: Sequence[str] = ()):
        self._tokenizer = tokenizer
        self._stop_strings = [s for s in stop_strings if s]
        self._token_ids: List[int] = []
        self._emitted = 0

    @property
    def text(self) -> str:
        """Visible text so far: decoded output cut at the first stop string."""
        text = self._tokenizer.decode(self._token_ids)
        cut = self._stop_index(text)
        return text if cut is None else text[:cut]

    def _stop_index(self, text: str) -> Optional[int]:
        hits = [text.find(s) for s in self._stop_strings]
        hits = [h for h in hits if h >= 0]
        return min(hits) if hits else None

    def _holdback(self, text: str) -> int:
        """Length of the longest suffix of ``text`` that prefixes a stop string."""
        longest = 0
        for stop in self._stop_strings:
            for n in range(min(len(stop) - 1, len(text)), longest, -1):
                if text.endswith(stop[:n]):
                    longest = n
                    break
        return longest

    def push(self, token_id: int) -> str:
        """Add one token and return the newly completed text (may be empty)."""
        self._token_ids.append(token_id)
        text = self._tokenizer.decode(self._token_ids)

        cut = self._stop_index(text)
        if cut is not None:
            end = cut
        elif text.endswith(_REPLACEMENT_CHAR):
            return ""
        else:
            end = len(text) - self._holdback(text)

        if end <= self._emitted:
            return ""
        delta = text[self._emitted:end]
        self._emitted = end
        return delta

    def flush(self) -> str:
        """Return whatever is still held back (incomplete characters included)."""
        text = self.text
        delta = text[self._emitted:]
        self._emitted = max(self._emitted, len(text))
        return delta
