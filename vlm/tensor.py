# =============================================================================
# VLM Inference Engine - Tensor Buffer
# =============================================================================
# Metadata bookkeeping around torch tensors: allocation with explicit failure
# modes, zero-copy views, shape assertions, and dtype / device resolution.
# All arithmetic is delegated to torch; nothing here does math.
# =============================================================================

import logging
import math
from typing import Optional, Sequence, Tuple, Union

import torch

from vlm.errors import AllocationError, ShapeError

logger = logging.getLogger(__name__)

Shape = Tuple[int, ...]

_DTYPE_MAP = {
    "float16": torch.float16,
    "float32": torch.float32,
    "bfloat16": torch.bfloat16,
    "int32": torch.int32,
    "int64": torch.int64,
}


def resolve_dtype(dtype: Union[str, torch.dtype]) -> torch.dtype:
    """
    Convert a string dtype name to a torch.dtype.

    Args:
        dtype: One of "float16", "float32", "bfloat16", "int32", "int64",
               or an existing torch.dtype (returned unchanged).

    Returns:
        The corresponding torch.dtype.

    Raises:
        ValueError: If the name is not recognised.
    """
    if isinstance(dtype, torch.dtype):
        return dtype
    try:
        return _DTYPE_MAP[dtype]
    except KeyError:
        raise ValueError(
            f"Unsupported dtype '{dtype}'. Supported: {list(_DTYPE_MAP.keys())}"
        ) from None


def detect_device() -> str:
    """
    Auto-detect the best available compute device.

    Returns:
        str: "mps" on Apple Silicon, "cuda" on NVIDIA GPUs, "cpu" as fallback.
    """
    if torch.backends.mps.is_available():
        return "mps"
    elif torch.cuda.is_available():
        return "cuda"
    return "cpu"


def nbytes(shape: Sequence[int], dtype: torch.dtype) -> int:
    """Number of bytes a contiguous tensor of this shape and dtype occupies."""
    itemsize = torch.empty((), dtype=dtype).element_size()
    return math.prod(shape) * itemsize


def describe(tensor: torch.Tensor) -> str:
    """Compact metadata string, e.g. ``float16[576, 4096]@cpu``."""
    dtype = str(tensor.dtype).replace("torch.", "")
    return f"{dtype}{list(tensor.shape)}@{tensor.device}"


def allocate(
    shape: Sequence[int],
    dtype: torch.dtype = torch.float32,
    device: Union[str, torch.device] = "cpu",
    fill: Optional[float] = None,
) -> torch.Tensor:
    """
    Allocate a contiguous tensor.

    Args:
        shape:  Positive dimensions.
        dtype:  Element type.
        device: Target device.
        fill:   Optional fill value; the buffer is left uninitialized if None.

    Returns:
        The newly allocated tensor, exclusively owned by the caller.

    Raises:
        ShapeError:      If any dimension is not a positive integer.
        AllocationError: If the backend runs out of memory.
    """
    shape = tuple(shape)
    if not shape or any(not isinstance(d, int) or d <= 0 for d in shape):
        raise ShapeError(
            f"Cannot allocate tensor with shape {list(shape)}: "
            f"dimensions must be positive integers",
            shape=list(shape),
        )

    try:
        if fill is None:
            tensor = torch.empty(shape, dtype=dtype, device=device)
        else:
            tensor = torch.full(shape, fill, dtype=dtype, device=device)
    except torch.cuda.OutOfMemoryError as exc:
        raise _allocation_error(shape, dtype, device, exc) from exc
    except RuntimeError as exc:
        if "out of memory" not in str(exc).lower():
            raise
        raise _allocation_error(shape, dtype, device, exc) from exc

    logger.debug("Allocated %s (%d bytes)", describe(tensor), nbytes(shape, dtype))
    return tensor


def _allocation_error(shape, dtype, device, exc) -> AllocationError:
    requested = nbytes(shape, dtype)
    return AllocationError(
        f"Out of memory allocating {list(shape)} {dtype} on {device} "
        f"({requested} bytes): {exc}",
        shape=list(shape),
        dtype=str(dtype),
        device=str(device),
        bytes=requested,
    )


def view(tensor: torch.Tensor, shape: Sequence[int]) -> torch.Tensor:
    """
    Reinterpret a tensor with a new shape without copying.

    At most one dimension may be -1 and is inferred from the element count.

    Raises:
        ShapeError: If the element counts differ or the tensor's layout
                    cannot be viewed without a copy.
    """
    shape = list(shape)
    numel = tensor.numel()

    if shape.count(-1) > 1:
        raise ShapeError(
            f"Only one dimension may be inferred, got {shape}", shape=shape
        )
    if -1 in shape:
        known = math.prod(d for d in shape if d != -1)
        if known <= 0 or numel % known != 0:
            raise ShapeError(
                f"Cannot view {describe(tensor)} as {shape}",
                source_shape=list(tensor.shape),
                target_shape=shape,
            )
        shape[shape.index(-1)] = numel // known

    if any(d <= 0 for d in shape) or math.prod(shape) != numel:
        raise ShapeError(
            f"Cannot view {describe(tensor)} as {shape}: element count "
            f"{numel} != {math.prod(shape)}",
            source_shape=list(tensor.shape),
            target_shape=shape,
        )

    try:
        return tensor.view(shape)
    except RuntimeError as exc:
        raise ShapeError(
            f"Cannot view {describe(tensor)} as {shape} without a copy: {exc}",
            source_shape=list(tensor.shape),
            target_shape=shape,
        ) from exc


def check_shape(
    tensor: torch.Tensor,
    expected: Sequence[Optional[int]],
    name: str = "tensor",
) -> None:
    """
    Assert a tensor's shape.  ``None`` entries in ``expected`` match any size.

    Raises:
        ShapeError: On rank or dimension mismatch.
    """
    actual = list(tensor.shape)
    if len(actual) != len(expected) or any(
        e is not None and e != a for e, a in zip(expected, actual)
    ):
        raise ShapeError(
            f"{name} has shape {actual}, expected {list(expected)}",
            name=name,
            actual=actual,
            expected=list(expected),
        )
