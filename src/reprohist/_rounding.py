"""Rounding factors and truncation for order-independent summation.

Floating-point addition is not associative, so a histogram accumulated with
atomics comes out differently from run to run. We avoid this by first
truncating every addend onto a fixed grid whose spacing is tied to a
power-of-two rounding factor ``M``. As long as every partial sum stays below
``M`` in magnitude, sums of grid values are exact and therefore identical in
any order.

The rounding factor is derived once per boosting round from the whole
gradient array:

    positive_sum = sum(max(x, 0))
    negative_sum = sum(max(-x, 0))
    delta = max(positive_sum, negative_sum) / (1 - 2 * n * eps)
    M = 2 ** exponent(delta)

Splitting signs gives a bound that cancellation cannot hide, and the
``1 - 2 * n * eps`` factor leaves headroom for the rounding each truncation
introduces.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from ._backends import is_cuda
from ._gpair import RoundingFactor, check_float_dtype, is_device_array, to_numpy

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, DTypeLike, NDArray

logger = logging.getLogger(__name__)


def truncate(rounding, x):
    """Truncate ``x`` onto the grid defined by ``rounding``.

    Adding ``|x|`` to ``rounding`` rounds it to a multiple of
    ``rounding * eps``; subtracting ``rounding`` again is exact. The sign is
    restored afterwards so the grid is symmetric about zero and values
    already on it are left unchanged.

    This function is compiled as-is for the CPU and CUDA kernels, so every
    call site truncates identically.
    """
    t = (rounding + abs(x)) - rounding
    if x < 0:
        return -t
    return t


def truncate_array(rounding, values: ArrayLike) -> NDArray:
    """Vectorised :func:`truncate` for host arrays.

    ``values`` are cast to the dtype of ``rounding`` first.
    """
    rounding = np.asarray(rounding)
    values = np.asarray(values, dtype=rounding.dtype)
    t = (rounding + np.abs(values)) - rounding
    return np.where(values < 0, -t, t)


def split_signed_value(x):
    """Split one value into ``(max(x, 0), max(-x, 0))``.

    NaN goes to the negative part so that it poisons the negative sum
    instead of vanishing. Compiled as-is for the CPU and CUDA reductions.
    """
    if x >= 0:
        return x, 0.0
    return 0.0, -x


def split_signed(gpair: ArrayLike) -> tuple[NDArray, NDArray]:
    """Split gradient pairs into positive and negated-negative parts.

    Vectorised :func:`split_signed_value`, with the same NaN rule.

    Args:
        gpair: Gradient pairs, shape (n_rows, 2).

    Returns:
        (positive, negative): Both shaped like ``gpair``. Gradient and
        Hessian are split independently.
    """
    gpair = to_numpy(gpair)
    zero = gpair.dtype.type(0)
    nonneg = gpair >= 0
    positive = np.where(nonneg, gpair, zero)
    negative = np.where(nonneg, zero, -gpair)
    return positive, negative


def create_rounding_factor(max_abs: float, n: int, dtype: DTypeLike = np.float64):
    """Smallest power of two above the error-adjusted bound ``max_abs``.

    Args:
        max_abs: Largest one-sided magnitude sum, non-negative.
        n: Number of values that will be summed.
        dtype: Accumulator precision.

    Returns:
        ``2 ** e`` as a scalar of ``dtype``, or exactly zero when
        ``max_abs`` is zero.
    """
    dtype = check_float_dtype(dtype)
    T = dtype.type

    if not np.isfinite(max_abs):
        raise ValueError(f"Gradient sums must be finite, got {max_abs}")
    if max_abs < 0:
        raise ValueError(f"max_abs must be non-negative, got {max_abs}")

    eps = np.finfo(dtype).eps
    denom = T(1.0) - T(2 * n) * eps
    if denom <= 0:
        raise ValueError(
            f"Cannot bound the summation error of {n} values in {dtype}; "
            "accumulate in float64 instead"
        )

    with np.errstate(over="ignore"):
        delta = T(max_abs) / denom
        if delta == 0:
            return T(0.0)

        # frexp gives delta = m * 2**exp with m in [0.5, 1), so 2**exp > delta
        _, exponent = np.frexp(delta)
        factor = T(np.ldexp(T(1.0), exponent))

    if not (np.isfinite(delta) and np.isfinite(factor)):
        raise ValueError(
            f"Rounding factor overflows {dtype} for max_abs={max_abs}"
        )
    return factor


def signed_sums(gpair) -> tuple[NDArray, NDArray]:
    """Sum positive and negated-negative parts of every statistic.

    Returns:
        (positive_sum, negative_sum): float64 arrays of shape (2,).
    """
    if is_cuda() and is_device_array(gpair):
        from ._backends._cuda import signed_sums_cuda
        return signed_sums_cuda(gpair)

    from ._backends._cpu import signed_sums_cpu
    return signed_sums_cpu(np.ascontiguousarray(to_numpy(gpair)))


def compute_rounding_factor(gpair, dtype: DTypeLike | None = None) -> RoundingFactor:
    """Compute the rounding factor for a whole round of gradient pairs.

    Call this once per boosting round on the full gradient array and pass
    the result to every histogram build of that round.

    Args:
        gpair: Gradient pairs, shape (n_rows, 2). Host or device array.
        dtype: Accumulator precision. Defaults to ``gpair.dtype``.

    Returns:
        RoundingFactor with one power of two per statistic.

    Example:
        >>> gpair = rh.gradient_pairs(grad, hess)
        >>> rounding = rh.compute_rounding_factor(gpair, np.float64)
    """
    if len(gpair.shape) != 2 or gpair.shape[1] != 2:
        raise ValueError(
            f"Expected gradient pairs of shape (n_rows, 2), got {tuple(gpair.shape)}"
        )
    dtype = check_float_dtype(gpair.dtype if dtype is None else dtype)
    n_rows = gpair.shape[0]

    positive_sum, negative_sum = signed_sums(gpair)
    max_abs = np.maximum(positive_sum, negative_sum)

    rounding = RoundingFactor(
        create_rounding_factor(float(max_abs[0]), n_rows, dtype),
        create_rounding_factor(float(max_abs[1]), n_rows, dtype),
    )
    logger.debug(
        "Rounding factor for %d rows: grad=%r hess=%r (%s)",
        n_rows, rounding.grad, rounding.hess, dtype,
    )
    return rounding
