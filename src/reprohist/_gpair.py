"""Gradient pair arrays and histogram buffers.

Gradient pairs are stored as a single ``(n_rows, 2)`` array: column 0 holds
the gradient, column 1 the Hessian. Histograms use the same layout with one
row per bin. Two precisions are supported, ``float32`` and ``float64``; the
histogram dtype is the accumulator precision.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from ._backends import is_cuda

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, DTypeLike, NDArray

FLOAT_DTYPES = (np.dtype(np.float32), np.dtype(np.float64))


class GradientPair(NamedTuple):
    """A single (gradient, Hessian) pair."""
    grad: float
    hess: float


class RoundingFactor(GradientPair):
    """Per-statistic power-of-two rounding factors for one boosting round.

    Both fields are numpy scalars of the accumulator dtype.
    """
    __slots__ = ()

    @property
    def dtype(self) -> np.dtype:
        return np.asarray(self.grad).dtype

    def as_array(self) -> NDArray:
        return np.array([self.grad, self.hess], dtype=self.dtype)


def check_float_dtype(dtype: DTypeLike, what: str = "dtype") -> np.dtype:
    """Normalize ``dtype`` and check it is float32 or float64."""
    dtype = np.dtype(dtype)
    if dtype not in FLOAT_DTYPES:
        raise TypeError(f"{what} must be float32 or float64, got {dtype}")
    return dtype


def is_device_array(arr) -> bool:
    """True for arrays living on a CUDA device (Numba, CuPy, PyTorch, ...)."""
    return hasattr(arr, '__cuda_array_interface__')


def to_numpy(arr: ArrayLike) -> NDArray:
    """Convert various array types to numpy.

    Handles: numpy, Numba device arrays, PyTorch, JAX, CuPy
    """
    if isinstance(arr, np.ndarray):
        return arr

    # Numba device array
    if hasattr(arr, 'copy_to_host'):
        return arr.copy_to_host()

    # PyTorch
    if hasattr(arr, 'cpu') and hasattr(arr, 'numpy'):
        return arr.cpu().numpy()

    # CuPy
    if hasattr(arr, 'get'):
        return arr.get()

    return np.asarray(arr)


def gradient_pairs(
    grad: ArrayLike,
    hess: ArrayLike | None = None,
    dtype: DTypeLike = np.float32,
) -> NDArray:
    """Pack gradients and Hessians into a contiguous ``(n_rows, 2)`` array.

    Args:
        grad: Gradients, shape (n_rows,). If ``hess`` is None this may
            already be an ``(n_rows, 2)`` pair array.
        hess: Hessians, shape (n_rows,).
        dtype: float32 (narrow, default) or float64 (wide).

    Returns:
        C-contiguous array of shape (n_rows, 2).

    Example:
        >>> gpair = rh.gradient_pairs(2 * (pred - y), np.full(len(y), 2.0))
    """
    dtype = check_float_dtype(dtype)

    if hess is None:
        pairs = to_numpy(grad)
        if pairs.ndim != 2 or pairs.shape[1] != 2:
            raise ValueError(
                f"Expected gradient pairs of shape (n_rows, 2), got {pairs.shape}"
            )
        return np.ascontiguousarray(pairs, dtype=dtype)

    grad_np = to_numpy(grad).ravel()
    hess_np = to_numpy(hess).ravel()
    if grad_np.shape != hess_np.shape:
        raise ValueError(
            f"grad and hess must have the same length, got {grad_np.shape[0]} "
            f"and {hess_np.shape[0]}"
        )

    pairs = np.empty((grad_np.shape[0], 2), dtype=dtype)
    pairs[:, 0] = grad_np
    pairs[:, 1] = hess_np
    return pairs


def allocate_histogram(
    n_bins: int,
    dtype: DTypeLike = np.float64,
    *,
    device: str | None = None,
):
    """Allocate a zero-initialized ``(n_bins, 2)`` histogram.

    The histogram build adds into its destination, so every build needs a
    freshly zeroed buffer.

    Args:
        n_bins: Number of bins (``EllpackMatrix.n_bins``).
        dtype: Accumulator precision.
        device: "cuda" or "cpu". Defaults to the active backend.
    """
    dtype = check_float_dtype(dtype)
    if n_bins < 0:
        raise ValueError(f"n_bins must be non-negative, got {n_bins}")

    if device is None:
        device = "cuda" if is_cuda() else "cpu"

    if device == "cuda":
        from ._backends._cuda import zeros
        return zeros((n_bins, 2), dtype)
    return np.zeros((n_bins, 2), dtype=dtype)
