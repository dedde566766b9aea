# =============================================================================
# VLM Inference Engine - Error Kinds
# =============================================================================
# Every failure the inference core can surface.  All of them are fatal for
# the session that raised them: nothing is retried internally.  Each error
# carries a ``details`` dict with the offending shapes, ids or configuration
# values so callers can log precisely what failed.
# =============================================================================

from typing import Any, Dict


class VLMError(Exception):
    """
    Base class for all inference-core errors.

    Args:
        message: Human-readable description.
        **details: Structured context (shapes, ids, config values).
    """

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dict (used by the HTTP layer)."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": {k: _jsonable(v) for k, v in self.details.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class ShapeError(VLMError, ValueError):
    """Tensor metadata mismatch (element count, dimensions, layout)."""


class AllocationError(VLMError, MemoryError):
    """Tensor allocation failed; the caller may retry after freeing sessions."""


class InputShapeError(VLMError, ValueError):
    """Pixel tensor does not match the vision encoder configuration."""


class PlaceholderMismatchError(VLMError, ValueError):
    """Placeholder token count disagrees with the number of supplied images."""


class EmptyInputError(VLMError, ValueError):
    """Text tokens or visual embeddings were empty."""


class CacheOverflowError(VLMError, RuntimeError):
    """KV cache reached its maximum length."""


class CacheStateError(VLMError, RuntimeError):
    """KV cache used out of order (uneven layer writes, writes after freeze)."""


class ContextLengthExceededError(VLMError, ValueError):
    """Fused prompt is longer than the model's maximum context length."""


class InvalidSamplingConfigError(VLMError, ValueError):
    """Sampling parameters are out of range."""


class ModelConfigError(VLMError, ValueError):
    """Model configuration is missing required fields or is inconsistent."""


class SessionStateError(VLMError, RuntimeError):
    """Session is poisoned by an earlier failure or already generating."""
