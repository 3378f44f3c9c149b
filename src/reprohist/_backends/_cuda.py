"""CUDA backend implementations using Numba CUDA."""

from __future__ import annotations

import numpy as np
from numba import cuda, float32, float64

from .._rounding import split_signed_value, truncate

_truncate = cuda.jit(device=True)(truncate)
_split_signed_value = cuda.jit(device=True)(split_signed_value)

# Launch shape of the rounding-factor reduction. Fixed so the order in
# which partial sums are combined never changes.
_REDUCE_BLOCKS = 64
_REDUCE_THREADS = 256


# =============================================================================
# Device Helpers
# =============================================================================

def to_device(arr):
    """Copy a host array to the current device (no-op for device arrays)."""
    if hasattr(arr, '__cuda_array_interface__'):
        return as_cuda_array(arr)
    return cuda.to_device(np.ascontiguousarray(arr))


def as_cuda_array(arr):
    """Zero-copy view of any ``__cuda_array_interface__`` array."""
    if cuda.is_cuda_array(arr) and hasattr(arr, 'copy_to_host'):
        return arr
    return cuda.as_cuda_array(arr)


def zeros(shape, dtype):
    """Zero-filled device array."""
    return cuda.to_device(np.zeros(shape, dtype=dtype))


def max_shared_memory() -> int:
    """Per-block shared memory budget of the current device, in bytes."""
    return int(cuda.get_current_device().MAX_SHARED_MEMORY_PER_BLOCK)


# =============================================================================
# Rounding Factor Reduction
# =============================================================================

@cuda.jit
def _signed_partial_sums_kernel(gpair, partials):
    """Grid-stride sums of the split parts, one row of ``partials`` per thread."""
    tid = cuda.grid(1)
    stride = cuda.gridsize(1)

    pos_g = 0.0
    pos_h = 0.0
    neg_g = 0.0
    neg_h = 0.0
    for i in range(tid, gpair.shape[0], stride):
        p, n = _split_signed_value(float64(gpair[i, 0]))
        pos_g += p
        neg_g += n
        p, n = _split_signed_value(float64(gpair[i, 1]))
        pos_h += p
        neg_h += n

    partials[tid, 0] = pos_g
    partials[tid, 1] = pos_h
    partials[tid, 2] = neg_g
    partials[tid, 3] = neg_h


def signed_sums_cuda(gpair) -> tuple[np.ndarray, np.ndarray]:
    """One-sided sums of gradient pairs (GPU).

    Returns:
        positive_sum: Shape (2,), float64
        negative_sum: Shape (2,), float64
    """
    d_gpair = as_cuda_array(gpair)
    n_threads = _REDUCE_BLOCKS * _REDUCE_THREADS
    d_partials = cuda.device_array((n_threads, 4), dtype=np.float64)

    _signed_partial_sums_kernel[_REDUCE_BLOCKS, _REDUCE_THREADS](d_gpair, d_partials)
    partials = d_partials.copy_to_host()

    # Fixed shape, so the partials combine in the same order every call
    totals = partials.sum(axis=0)
    return totals[:2].copy(), totals[2:].copy()


# =============================================================================
# Histogram Kernel
# =============================================================================

def _make_histogram_kernel(acc_type):
    """Compile the histogram kernel for one accumulator type.

    The staging buffer lives in dynamic shared memory, so its element type
    has to be fixed when the kernel is compiled.
    """

    @cuda.jit
    def kernel(gidx, n_bins, ridx, gpair, rounding_grad, rounding_hess,
               hist, use_shared):
        # Interleaved (grad, hess) per bin: smem[2 * bin], smem[2 * bin + 1]
        smem = cuda.shared.array(0, dtype=acc_type)
        tx = cuda.threadIdx.x
        block_threads = cuda.blockDim.x

        if use_shared:
            for i in range(tx, 2 * n_bins, block_threads):
                smem[i] = 0
            cuda.syncthreads()

        row_stride = gidx.shape[1]
        n_elements = ridx.shape[0] * row_stride
        for idx in range(cuda.grid(1), n_elements, cuda.gridsize(1)):
            row = ridx[idx // row_stride]
            bin_idx = gidx[row, idx % row_stride]
            if bin_idx != n_bins:
                g = _truncate(rounding_grad, gpair[row, 0])
                h = _truncate(rounding_hess, gpair[row, 1])
                if use_shared:
                    cuda.atomic.add(smem, 2 * bin_idx, g)
                    cuda.atomic.add(smem, 2 * bin_idx + 1, h)
                else:
                    cuda.atomic.add(hist, (bin_idx, 0), g)
                    cuda.atomic.add(hist, (bin_idx, 1), h)

        if use_shared:
            cuda.syncthreads()
            for b in range(tx, n_bins, block_threads):
                cuda.atomic.add(hist, (b, 0), _truncate(rounding_grad, smem[2 * b]))
                cuda.atomic.add(hist, (b, 1), _truncate(rounding_hess, smem[2 * b + 1]))

    return kernel


_HISTOGRAM_KERNELS = {
    np.dtype(np.float32): _make_histogram_kernel(float32),
    np.dtype(np.float64): _make_histogram_kernel(float64),
}


def build_histogram_cuda(
    gidx,
    n_bins: int,
    ridx,
    gpair,
    rounding_grad,
    rounding_hess,
    hist,
    grid_size: int,
    block_threads: int,
    use_shared: bool,
) -> None:
    """Build one node's gradient histogram on GPU, adding into ``hist``.

    Host arrays are copied to the device; a host ``hist`` receives the
    result. Blocks until the kernel has finished so launch and execution
    errors surface here.
    """
    d_hist = to_device(hist)
    dtype = np.dtype(d_hist.dtype)
    shared_bytes = 2 * n_bins * dtype.itemsize if use_shared else 0

    kernel = _HISTOGRAM_KERNELS[dtype]
    kernel[grid_size, block_threads, 0, shared_bytes](
        to_device(gidx),
        n_bins,
        to_device(ridx),
        to_device(gpair),
        rounding_grad,
        rounding_hess,
        d_hist,
        use_shared,
    )
    cuda.synchronize()

    if not hasattr(hist, '__cuda_array_interface__'):
        d_hist.copy_to_host(hist)


# =============================================================================
# Histogram Subtraction
# =============================================================================

@cuda.jit
def _subtract_histogram_kernel(parent, child, out):
    b = cuda.grid(1)
    if b < parent.shape[0]:
        out[b, 0] = parent[b, 0] - child[b, 0]
        out[b, 1] = parent[b, 1] - child[b, 1]


def subtract_histogram_cuda(parent, child):
    """Sibling histogram as ``parent - child`` (GPU)."""
    d_parent = to_device(parent)
    d_child = to_device(child)
    out = cuda.device_array_like(d_parent)
    threads = 256
    blocks = max(1, (d_parent.shape[0] + threads - 1) // threads)
    _subtract_histogram_kernel[blocks, threads](d_parent, d_child, out)
    return out
