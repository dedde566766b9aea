# =============================================================================
# VLM Inference Engine - KV Cache
# =============================================================================
# Per-layer attention key/value storage reused across decode steps.  Buffers
# are pre-allocated to ``max_length`` and filled in place; writes are staged
# per layer and only become visible through current_length() once every
# layer has staged the same number of positions and commit() is called.
# =============================================================================

import logging
from typing import List, Tuple, Union

import torch

from vlm import tensor as tb
from vlm.errors import CacheOverflowError, CacheStateError, ShapeError

logger = logging.getLogger(__name__)


class KVCache:
    """
    Contiguous key/value cache for a causal decoder.

    Each layer owns key and value buffers of shape
    ``(num_heads, max_length, head_dim)``.  The committed length is shared by
    all layers and grows monotonically until reset().

    Args:
        num_layers: Number of transformer layers.
        num_heads:  Number of key/value heads per layer.
        head_dim:   Dimension of each head.
        max_length: Maximum number of cached positions.
        device:     Device the buffers live on.
        dtype:      Element type of the buffers.
    """

    def __init__(
        self,
        num_layers: int,
        num_heads: int,
        head_dim: int,
        max_length: int,
        device: Union[str, torch.device] = "cpu",
        dtype: torch.dtype = torch.float32,
    ):
        self.num_layers = num_layers
        self.num_heads = num_heads
        self.head_dim = head_dim
        self.max_length = max_length
        self.device = torch.device(device)
        self.dtype = dtype

        shape = (num_layers, num_heads, max_length, head_dim)
        self._keys = tb.allocate(shape, dtype=dtype, device=device, fill=0.0)
        self._values = tb.allocate(shape, dtype=dtype, device=device, fill=0.0)

        self._length = 0
        self._staged: List[int] = [0] * num_layers
        self._frozen = False

        logger.debug(
            "KV cache ready: %d layers x %d heads x %d positions x %d dims (%d bytes)",
            num_layers, num_heads, max_length, head_dim, self.nbytes,
        )

    # -----------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------

    def current_length(self) -> int:
        """Committed number of cached positions (identical for all layers)."""
        return self._length

    @property
    def remaining(self) -> int:
        return self.max_length - self._length

    @property
    def is_full(self) -> bool:
        return self._length >= self.max_length

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def nbytes(self) -> int:
        return 2 * tb.nbytes(self._keys.shape, self.dtype)

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    def append(self, layer_index: int, key: torch.Tensor, value: torch.Tensor) -> None:
        """
        Stage one decode step for a layer.

        Args:
            layer_index: Layer being written.
            key, value:  Tensors of shape (num_heads, 1, head_dim).

        Raises:
            ShapeError:         If the slice is not exactly one position long.
            CacheOverflowError: If the cache is already at max_length.
            CacheStateError:    If the layer was already written this step or
                                the cache is frozen.
        """
        if key.dim() == 3 and key.shape[1] != 1:
            raise ShapeError(
                f"Decode append must add exactly 1 position, got {key.shape[1]}",
                layer_index=layer_index,
                key_shape=list(key.shape),
            )
        self._stage(layer_index, key, value, single_step=True)

    def extend(self, layer_index: int, key: torch.Tensor, value: torch.Tensor) -> None:
        """
        Stage several positions for a layer (prefill).

        Args:
            layer_index: Layer being written.
            key, value:  Tensors of shape (num_heads, n_positions, head_dim).
        """
        self._stage(layer_index, key, value, single_step=False)

    def _stage(self, layer_index, key, value, single_step: bool) -> None:
        if self._frozen:
            raise CacheStateError(
                f"KV cache is frozen at length {self._length}; reset it before reuse",
                current_length=self._length,
            )
        if not 0 <= layer_index < self.num_layers:
            raise CacheStateError(
                f"Layer index {layer_index} out of range [0, {self.num_layers})",
                layer_index=layer_index,
                num_layers=self.num_layers,
            )
        expected = [self.num_heads, None, self.head_dim]
        tb.check_shape(key, expected, name=f"layer {layer_index} key")
        tb.check_shape(value, list(key.shape), name=f"layer {layer_index} value")
        if self._staged[layer_index]:
            raise CacheStateError(
                f"Layer {layer_index} already staged {self._staged[layer_index]} "
                f"position(s) for this step",
                layer_index=layer_index,
            )

        n_new = key.shape[1]
        if self._length + n_new > self.max_length:
            raise CacheOverflowError(
                f"KV cache overflow: {self._length} cached + {n_new} new > "
                f"max_length {self.max_length}",
                current_length=self._length,
                new_positions=n_new,
                max_length=self.max_length,
            )

        start, end = self._length, self._length + n_new
        self._keys[layer_index, :, start:end] = key.to(self.dtype)
        self._values[layer_index, :, start:end] = value.to(self.dtype)
        self._staged[layer_index] = n_new

    def commit(self) -> int:
        """
        Publish the staged step once every layer has written it.

        Returns:
            The new committed length.

        Raises:
            CacheStateError: If layers staged different numbers of positions.
        """
        staged = set(self._staged)
        if len(staged) != 1 or 0 in staged:
            raise CacheStateError(
                f"Uneven staged writes across layers: {self._staged}",
                staged=list(self._staged),
            )
        self._length += staged.pop()
        self._staged = [0] * self.num_layers
        return self._length

    def discard(self) -> None:
        """Drop staged (uncommitted) writes."""
        self._staged = [0] * self.num_layers

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def layer(self, layer_index: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Return views of a layer's keys and values.

        The views cover the committed positions plus whatever this layer has
        staged in the current step, each (num_heads, length, head_dim).
        """
        end = self._length + self._staged[layer_index]
        return self._keys[layer_index, :, :end], self._values[layer_index, :, :end]

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def freeze(self) -> None:
        """Reject further writes; current_length() stays where it is."""
        self.discard()
        self._frozen = True

    def reset(self) -> None:
        """Forget every cached position and unfreeze."""
        self._length = 0
        self._staged = [0] * self.num_layers
        self._frozen = False
