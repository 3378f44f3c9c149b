"""Gradient histogram construction.

A histogram build sums the truncated gradient pairs of one node's rows into
``n_bins`` accumulators. The kernel is launched as a grid of blocks; with
shared-memory staging each block first sums into a private buffer and then
merges it into the destination, otherwise every thread adds straight into
the destination. Because every addend is truncated with the round's
rounding factor first, the result does not depend on the launch shape, the
row order, or the staging mode.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Mapping, NamedTuple

import numpy as np

from ._backends import is_cuda
from ._ellpack import EllpackMatrix
from ._gpair import (
    RoundingFactor,
    allocate_histogram,
    check_float_dtype,
    is_device_array,
    to_numpy,
)

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, DTypeLike, NDArray

logger = logging.getLogger(__name__)

# Per-block staging budget when no device can be queried (48 KiB, the
# default shared memory limit of CUDA devices)
DEFAULT_SHARED_MEMORY_BYTES = 48 * 1024


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class HistogramConfig:
    """Launch configuration for histogram builds.

    Args:
        block_threads: Threads per block.
        items_per_thread: Target number of elements per thread; sets the
            grid size as ``ceil(n_elements / (items_per_thread * block_threads))``.
        grid_size: Fixed number of blocks (overrides the computed grid).
        max_shared_memory: Per-block staging budget in bytes. None queries the
            CUDA device, or uses 48 KiB on CPU.
        max_cpu_blocks: Upper bound on computed CPU grids, which bounds the
            memory of per-block staging buffers. None uses Numba's thread count.
    """
    block_threads: int = 256
    items_per_thread: int = 8
    grid_size: int | None = None
    max_shared_memory: int | None = None
    max_cpu_blocks: int | None = None

    def __post_init__(self):
        if self.block_threads < 1:
            raise ValueError(f"block_threads must be >= 1, got {self.block_threads}")
        if self.items_per_thread < 1:
            raise ValueError(f"items_per_thread must be >= 1, got {self.items_per_thread}")
        if self.grid_size is not None and self.grid_size < 1:
            raise ValueError(f"grid_size must be >= 1, got {self.grid_size}")
        if self.max_shared_memory is not None and self.max_shared_memory < 0:
            raise ValueError(
                f"max_shared_memory must be non-negative, got {self.max_shared_memory}"
            )
        if self.max_cpu_blocks is not None and self.max_cpu_blocks < 1:
            raise ValueError(f"max_cpu_blocks must be >= 1, got {self.max_cpu_blocks}")


class LaunchParams(NamedTuple):
    """Kernel launch shape for one build."""
    grid_size: int
    block_threads: int
    shared_bytes: int   # Dynamic shared memory per block (0 when direct)
    use_shared: bool

    @property
    def n_threads(self) -> int:
        return self.grid_size * self.block_threads


# =============================================================================
# Builder
# =============================================================================

class HistogramBuilder:
    """Plans and launches gradient histogram builds.

    Example:
        >>> builder = rh.HistogramBuilder(rh.HistogramConfig(block_threads=128))
        >>> rounding = rh.compute_rounding_factor(gpair, np.float64)
        >>> hist = rh.allocate_histogram(matrix.n_bins, np.float64)
        >>> builder.build(matrix, gpair, ridx, hist, rounding)
    """

    def __init__(self, config: HistogramConfig | None = None):
        self.config = config if config is not None else HistogramConfig()

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    @staticmethod
    def staging_bytes(n_bins: int, dtype: DTypeLike) -> int:
        """Bytes of one block's staging buffer."""
        return n_bins * 2 * np.dtype(dtype).itemsize

    def shared_memory_budget(self) -> int:
        """Per-block fast memory available for staging, in bytes."""
        if self.config.max_shared_memory is not None:
            return self.config.max_shared_memory
        if is_cuda():
            from ._backends._cuda import max_shared_memory
            return max_shared_memory()
        return DEFAULT_SHARED_MEMORY_BYTES

    def use_shared_memory(self, n_bins: int, dtype: DTypeLike) -> bool:
        """Whether a staging buffer for ``n_bins`` fits in one block."""
        return self.staging_bytes(n_bins, dtype) <= self.shared_memory_budget()

    def grid_size(self, n_elements: int) -> int:
        """Number of blocks for ``n_elements`` (row, feature) entries."""
        config = self.config
        if config.grid_size is not None:
            return config.grid_size

        per_block = config.items_per_thread * config.block_threads
        grid = max(1, -(-n_elements // per_block))
        if not is_cuda():
            from ._backends._cpu import max_parallel_blocks
            cap = config.max_cpu_blocks or max_parallel_blocks()
            grid = min(grid, cap)
        return grid

    def launch_params(
        self,
        n_elements: int,
        n_bins: int,
        dtype: DTypeLike,
        use_shared: bool | None = None,
    ) -> LaunchParams:
        """Decide the launch shape and staging mode of one build.

        Args:
            n_elements: ``len(ridx) * row_stride``.
            n_bins: Histogram size.
            dtype: Accumulator dtype.
            use_shared: Force staging on or off. None picks staging whenever
                the buffer fits. Forcing it on when it does not fit falls back
                to direct accumulation.
        """
        fits = self.use_shared_memory(n_bins, dtype)
        if use_shared is None:
            shared = fits
            if not fits:
                logger.debug(
                    "Histogram of %d bins does not fit in shared memory; "
                    "using direct accumulation",
                    n_bins,
                )
        elif use_shared and not fits:
            logger.warning(
                "Staging buffer of %d bytes exceeds the %d byte budget; "
                "accumulating directly into the histogram",
                self.staging_bytes(n_bins, dtype), self.shared_memory_budget(),
            )
            shared = False
        else:
            shared = bool(use_shared)

        return LaunchParams(
            grid_size=self.grid_size(n_elements),
            block_threads=self.config.block_threads,
            shared_bytes=self.staging_bytes(n_bins, dtype) if shared else 0,
            use_shared=shared,
        )

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    def build(
        self,
        matrix: EllpackMatrix,
        gpair,
        ridx,
        histogram,
        rounding: RoundingFactor,
        use_shared: bool | None = None,
    ) -> LaunchParams | None:
        """Add the truncated gradient pairs of ``ridx`` into ``histogram``.

        Args:
            matrix: Quantized feature matrix.
            gpair: Gradient pairs of all rows, shape (n_rows, 2).
            ridx: Row ids of the node, 1-D integer array.
            histogram: Zero-initialized destination, shape (n_bins, 2). Its
                dtype is the accumulator precision. Mutated in place.
            rounding: Rounding factor of the current round, in the
                histogram's dtype.
            use_shared: Force staging on or off (None: automatic).

        Returns:
            The launch parameters used, or None when ``ridx`` is empty.
        """
        ridx = _as_row_indices(ridx)
        acc_dtype = _validate_build_args(matrix, gpair, ridx, histogram, rounding)

        n_elements = ridx.shape[0] * matrix.row_stride
        if n_elements == 0:
            logger.debug("Empty node; histogram left unchanged")
            return None

        params = self.launch_params(n_elements, matrix.n_bins, acc_dtype, use_shared)
        logger.debug(
            "Building histogram: %d rows x %d stride, %d bins, grid=%d, block=%d, shared=%s",
            ridx.shape[0], matrix.row_stride, matrix.n_bins,
            params.grid_size, params.block_threads, params.use_shared,
        )

        rounding_grad = acc_dtype.type(rounding.grad)
        rounding_hess = acc_dtype.type(rounding.hess)

        if is_cuda():
            from ._backends._cuda import build_histogram_cuda
            build_histogram_cuda(
                matrix.gidx, matrix.n_bins, ridx, gpair,
                rounding_grad, rounding_hess, histogram,
                params.grid_size, params.block_threads, params.use_shared,
            )
        else:
            from ._backends._cpu import build_histogram_cpu
            if is_device_array(histogram):
                raise TypeError(
                    "Received a CUDA histogram but the CPU backend is active. "
                    "Allocate it with device='cpu' or set REPROHIST_BACKEND=cuda"
                )
            build_histogram_cpu(
                np.ascontiguousarray(to_numpy(matrix.gidx)),
                matrix.n_bins,
                np.ascontiguousarray(to_numpy(ridx)),
                np.ascontiguousarray(to_numpy(gpair)),
                rounding_grad, rounding_hess, histogram,
                params.grid_size, params.block_threads, params.use_shared,
            )
        return params


def _as_row_indices(ridx):
    if is_device_array(ridx) or isinstance(ridx, np.ndarray):
        return ridx
    ridx = np.asarray(ridx)
    if ridx.size == 0:
        ridx = ridx.astype(np.uint32)
    return ridx


def _validate_build_args(matrix, gpair, ridx, histogram, rounding) -> np.dtype:
    """Check build arguments before any launch. Returns the accumulator dtype."""
    if not isinstance(matrix, EllpackMatrix):
        raise TypeError(f"matrix must be an EllpackMatrix, got {type(matrix).__name__}")

    n_bins = matrix.n_bins
    if tuple(histogram.shape) != (n_bins, 2):
        raise ValueError(
            f"histogram must have shape ({n_bins}, 2), got {tuple(histogram.shape)}"
        )
    acc_dtype = check_float_dtype(histogram.dtype, "histogram dtype")
    if not is_device_array(histogram) and not histogram.flags['C_CONTIGUOUS']:
        raise ValueError("histogram must be C-contiguous")

    if len(gpair.shape) != 2 or gpair.shape[1] != 2:
        raise ValueError(
            f"Expected gradient pairs of shape (n_rows, 2), got {tuple(gpair.shape)}"
        )
    if gpair.shape[0] != matrix.n_rows:
        raise ValueError(
            f"gpair has {gpair.shape[0]} rows but the matrix has {matrix.n_rows}"
        )
    gpair_dtype = check_float_dtype(gpair.dtype, "gpair dtype")
    if gpair_dtype.itemsize > acc_dtype.itemsize:
        raise TypeError(
            f"Cannot accumulate {gpair_dtype} gradient pairs into a {acc_dtype} "
            "histogram; use a float64 histogram"
        )

    if len(ridx.shape) != 1:
        raise ValueError(f"ridx must be 1-D, got shape {tuple(ridx.shape)}")
    if not np.issubdtype(np.dtype(ridx.dtype), np.integer):
        raise TypeError(f"ridx must hold integer row ids, got {ridx.dtype}")
    if not is_device_array(ridx) and ridx.shape[0] > 0:
        lo = int(np.min(ridx))
        hi = int(np.max(ridx))
        if lo < 0 or hi >= matrix.n_rows:
            raise ValueError(
                f"Row ids must lie in [0, {matrix.n_rows}), got [{lo}, {hi}]"
            )

    rounding_dtype = np.asarray(rounding.grad).dtype
    if rounding_dtype != acc_dtype:
        raise TypeError(
            f"Rounding factor is {rounding_dtype} but the histogram is {acc_dtype}; "
            f"compute it with compute_rounding_factor(gpair, np.{acc_dtype.name})"
        )
    return acc_dtype


# =============================================================================
# Functional API
# =============================================================================

def build_gradient_histogram(
    matrix: EllpackMatrix,
    gpair,
    ridx,
    histogram,
    rounding: RoundingFactor,
    use_shared: bool | None = None,
    *,
    config: HistogramConfig | None = None,
) -> None:
    """Build one node's gradient histogram, adding into ``histogram``.

    See :meth:`HistogramBuilder.build`. ``histogram`` must be zeroed by the
    caller, e.g. with :func:`allocate_histogram`.

    Example:
        >>> rounding = rh.compute_rounding_factor(gpair)
        >>> hist = rh.allocate_histogram(matrix.n_bins, gpair.dtype)
        >>> rh.build_gradient_histogram(matrix, gpair, ridx, hist, rounding)
    """
    HistogramBuilder(config).build(matrix, gpair, ridx, histogram, rounding, use_shared)


def build_node_histograms(
    matrix: EllpackMatrix,
    gpair,
    node_rows: Mapping[int, ArrayLike],
    rounding: RoundingFactor,
    *,
    use_shared: bool | None = None,
    config: HistogramConfig | None = None,
) -> dict[int, NDArray]:
    """Build histograms for several nodes with one shared rounding factor.

    Args:
        matrix: Quantized feature matrix.
        gpair: Gradient pairs of all rows.
        node_rows: Mapping from node id to that node's row ids.
        rounding: Rounding factor of the current round.

    Returns:
        Dict mapping node id to a freshly built histogram in the rounding
        factor's dtype.
    """
    builder = HistogramBuilder(config)
    dtype = rounding.dtype
    device = "cuda" if is_cuda() else "cpu"

    histograms = {}
    for node_id, rows in node_rows.items():
        hist = allocate_histogram(matrix.n_bins, dtype, device=device)
        builder.build(matrix, gpair, rows, hist, rounding, use_shared)
        histograms[node_id] = hist
    return histograms


def subtract_histogram(parent, child):
    """Derive a sibling histogram as ``parent - child``.

    Both histograms must come from builds with the same rounding factor.
    Every bin then holds an exact sum on the truncation grid, so the
    difference equals the sibling's directly built histogram.
    """
    if tuple(parent.shape) != tuple(child.shape):
        raise ValueError(
            f"Histogram shapes differ: {tuple(parent.shape)} vs {tuple(child.shape)}"
        )
    if np.dtype(parent.dtype) != np.dtype(child.dtype):
        raise TypeError(f"Histogram dtypes differ: {parent.dtype} vs {child.dtype}")

    if is_cuda() and (is_device_array(parent) or is_device_array(child)):
        from ._backends._cuda import subtract_histogram_cuda
        return subtract_histogram_cuda(parent, child)

    from ._backends._cpu import subtract_histogram_cpu
    return subtract_histogram_cpu(
        np.ascontiguousarray(to_numpy(parent)),
        np.ascontiguousarray(to_numpy(child)),
    )
