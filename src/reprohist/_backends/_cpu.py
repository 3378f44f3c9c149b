"""CPU backend implementations using Numba JIT.

The CPU kernels reproduce the CUDA launch grid: a launch of ``grid_size``
blocks with ``block_threads`` threads each, every thread walking the flat
element space with a grid stride. Work runs in parallel (``prange``) into
private accumulators: one per block when staging, one per worker otherwise.
Since there are no atomics, the accumulators are then merged into the
histogram in a fixed order, in parallel over bins.
"""

from __future__ import annotations

import numpy as np
from numba import get_num_threads, jit, prange

from .._rounding import split_signed_value, truncate

_truncate = jit(nopython=True, inline="always")(truncate)
_split_signed_value = jit(nopython=True, inline="always")(split_signed_value)

# Fixed chunking keeps the reduction order independent of the thread count
_N_REDUCE_CHUNKS = 64


# =============================================================================
# Rounding Factor Reduction
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def _signed_partial_sums(
    gpair: np.ndarray,     # (n_rows, 2) float32/float64
    partials: np.ndarray,  # (n_chunks, 4) float64
):
    """Per-chunk sums of the split positive and negative parts."""
    n_rows = gpair.shape[0]
    n_chunks = partials.shape[0]
    chunk = (n_rows + n_chunks - 1) // n_chunks

    for c in prange(n_chunks):
        pos_g = 0.0
        pos_h = 0.0
        neg_g = 0.0
        neg_h = 0.0
        end = min(n_rows, (c + 1) * chunk)
        for i in range(c * chunk, end):
            p, n = _split_signed_value(np.float64(gpair[i, 0]))
            pos_g += p
            neg_g += n
            p, n = _split_signed_value(np.float64(gpair[i, 1]))
            pos_h += p
            neg_h += n
        partials[c, 0] = pos_g
        partials[c, 1] = pos_h
        partials[c, 2] = neg_g
        partials[c, 3] = neg_h


def signed_sums_cpu(gpair: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """One-sided sums of gradient pairs (CPU).

    Returns:
        positive_sum: Shape (2,), float64
        negative_sum: Shape (2,), float64
    """
    partials = np.zeros((_N_REDUCE_CHUNKS, 4), dtype=np.float64)
    if gpair.shape[0] > 0:
        _signed_partial_sums(gpair, partials)

    # Fixed shape, so the chunk sums combine in the same order every call
    totals = partials.sum(axis=0)
    return totals[:2].copy(), totals[2:].copy()


# =============================================================================
# Histogram Kernels
# =============================================================================

@jit(nopython=True, cache=True)
def _accumulate_thread(
    gidx: np.ndarray,       # (n_rows, row_stride) uint32
    n_bins: int,
    ridx: np.ndarray,       # (n_node_rows,) uint32
    gpair: np.ndarray,      # (n_rows, 2) float32/float64
    rounding_grad,
    rounding_hess,
    thread: int,
    n_threads: int,
    out: np.ndarray,        # (n_bins, 2) accumulator
):
    """Run one simulated thread's grid-stride loop to completion."""
    row_stride = gidx.shape[1]
    n_elements = ridx.shape[0] * row_stride

    for idx in range(thread, n_elements, n_threads):
        row = ridx[idx // row_stride]
        bin_idx = gidx[row, idx % row_stride]
        # Missing value
        if bin_idx == n_bins:
            continue
        out[bin_idx, 0] += _truncate(rounding_grad, gpair[row, 0])
        out[bin_idx, 1] += _truncate(rounding_hess, gpair[row, 1])


@jit(nopython=True, parallel=True, cache=True)
def _build_histogram_direct(
    gidx, n_bins, ridx, gpair,
    rounding_grad, rounding_hess,
    grid_size: int,
    block_threads: int,
    partials: np.ndarray,   # (n_workers, n_bins, 2) accumulator
):
    """Worker-local accumulation standing in for global atomics.

    Worker ``w`` runs blocks ``w, w + n_workers, ...`` into ``partials[w]``.
    """
    n_threads = grid_size * block_threads
    n_workers = partials.shape[0]

    for w in prange(n_workers):
        acc = partials[w]
        for b in range(n_bins):
            acc[b, 0] = 0
            acc[b, 1] = 0

        for block in range(w, grid_size, n_workers):
            for t in range(block_threads):
                _accumulate_thread(
                    gidx, n_bins, ridx, gpair,
                    rounding_grad, rounding_hess,
                    block * block_threads + t, n_threads, acc,
                )


@jit(nopython=True, parallel=True, cache=True)
def _build_histogram_staged(
    gidx, n_bins, ridx, gpair,
    rounding_grad, rounding_hess,
    grid_size: int,
    block_threads: int,
    staging: np.ndarray,    # (grid_size, n_bins, 2) accumulator
):
    """Each block accumulates into its own staging buffer."""
    n_threads = grid_size * block_threads

    for block in prange(grid_size):
        smem = staging[block]
        for b in range(n_bins):
            smem[b, 0] = 0
            smem[b, 1] = 0

        for t in range(block_threads):
            _accumulate_thread(
                gidx, n_bins, ridx, gpair,
                rounding_grad, rounding_hess,
                block * block_threads + t, n_threads, smem,
            )


@jit(nopython=True, parallel=True, cache=True)
def _merge_staging(
    staging: np.ndarray,    # (grid_size, n_bins, 2)
    rounding_grad,
    rounding_hess,
    hist: np.ndarray,       # (n_bins, 2)
):
    """Truncate every staging buffer and add it into the histogram."""
    for b in prange(staging.shape[1]):
        for block in range(staging.shape[0]):
            hist[b, 0] += _truncate(rounding_grad, staging[block, b, 0])
            hist[b, 1] += _truncate(rounding_hess, staging[block, b, 1])


@jit(nopython=True, parallel=True, cache=True)
def _merge_partials(
    partials: np.ndarray,   # (n_workers, n_bins, 2)
    hist: np.ndarray,       # (n_bins, 2)
):
    for b in prange(partials.shape[1]):
        for w in range(partials.shape[0]):
            hist[b, 0] += partials[w, b, 0]
            hist[b, 1] += partials[w, b, 1]


def build_histogram_cpu(
    gidx: np.ndarray,
    n_bins: int,
    ridx: np.ndarray,
    gpair: np.ndarray,
    rounding_grad,
    rounding_hess,
    hist: np.ndarray,
    grid_size: int,
    block_threads: int,
    use_shared: bool,
) -> None:
    """Build one node's gradient histogram on CPU, adding into ``hist``.

    Args:
        gidx: Bin ids, shape (n_rows, row_stride). ``n_bins`` marks missing.
        n_bins: Total number of bins.
        ridx: Row ids of the node.
        gpair: Gradient pairs, shape (n_rows, 2).
        rounding_grad: Gradient rounding factor (accumulator dtype).
        rounding_hess: Hessian rounding factor (accumulator dtype).
        hist: Destination histogram, shape (n_bins, 2), mutated in place.
        grid_size: Number of simulated blocks.
        block_threads: Simulated threads per block.
        use_shared: Stage per block before merging into ``hist``. Otherwise
            accumulate per worker, at most one buffer per Numba thread.
    """
    if use_shared:
        staging = np.empty((grid_size, n_bins, 2), dtype=hist.dtype)
        _build_histogram_staged(
            gidx, n_bins, ridx, gpair,
            rounding_grad, rounding_hess,
            grid_size, block_threads, staging,
        )
        _merge_staging(staging, rounding_grad, rounding_hess, hist)
    else:
        n_workers = direct_workers(grid_size)
        partials = np.empty((n_workers, n_bins, 2), dtype=hist.dtype)
        _build_histogram_direct(
            gidx, n_bins, ridx, gpair,
            rounding_grad, rounding_hess,
            grid_size, block_threads, partials,
        )
        _merge_partials(partials, hist)


def max_parallel_blocks() -> int:
    """Number of blocks the CPU can run concurrently."""
    return get_num_threads()


def direct_workers(grid_size: int) -> int:
    """Number of worker-local accumulators for a direct build."""
    return max(1, min(grid_size, get_num_threads()))


# =============================================================================
# Histogram Subtraction
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def _subtract_histogram(parent, child, out):
    for b in prange(parent.shape[0]):
        out[b, 0] = parent[b, 0] - child[b, 0]
        out[b, 1] = parent[b, 1] - child[b, 1]


def subtract_histogram_cpu(parent: np.ndarray, child: np.ndarray) -> np.ndarray:
    """Sibling histogram as ``parent - child`` (CPU)."""
    out = np.empty_like(parent)
    _subtract_histogram(parent, child, out)
    return out
