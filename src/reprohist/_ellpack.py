"""Quantized feature matrix in Ellpack layout.

The histogram kernel reads bin ids row by row. Each row holds
``row_stride`` global bin ids; bin ids of feature ``f`` occupy the range
``feature_segments[f]:feature_segments[f + 1]``. A bin id equal to
``n_bins`` marks a missing value and is skipped when building histograms.

:func:`quantize` builds such a matrix from dense data. The kernel only relies
on the :class:`EllpackMatrix` fields, so any producer of bin ids works.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from ._backends import get_backend, is_cuda
from ._gpair import is_device_array, to_numpy

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray


@dataclass
class EllpackMatrix:
    """Row-major quantized feature matrix.

    Attributes:
        gidx: Global bin ids, shape (n_rows, row_stride), uint32
        n_bins: Total number of bins across all features
        feature_segments: Bin offsets per feature, shape (n_features + 1,)
        device: "cuda" or "cpu"
    """
    gidx: NDArray[np.uint32]  # Or DeviceNDArray for CUDA
    n_bins: int
    feature_segments: NDArray[np.int64] | None = None
    device: str = "cpu"

    def __post_init__(self):
        if len(self.gidx.shape) != 2:
            raise ValueError(
                f"gidx must be 2D (n_rows, row_stride), got shape {tuple(self.gidx.shape)}"
            )
        if not np.issubdtype(np.dtype(self.gidx.dtype), np.integer):
            raise TypeError(f"gidx must hold integer bin ids, got {self.gidx.dtype}")
        if self.n_bins < 0:
            raise ValueError(f"n_bins must be non-negative, got {self.n_bins}")

        # Device arrays are trusted; host ids are checked once here
        if not is_device_array(self.gidx) and self.gidx.size > 0:
            lo = int(self.gidx.min())
            hi = int(self.gidx.max())
            if lo < 0 or hi > self.n_bins:
                raise ValueError(
                    f"Bin ids must lie in [0, {self.n_bins}] ({self.n_bins} = missing), "
                    f"got [{lo}, {hi}]"
                )

    @property
    def n_rows(self) -> int:
        return self.gidx.shape[0]

    @property
    def row_stride(self) -> int:
        return self.gidx.shape[1]

    @property
    def null_value(self) -> int:
        """Bin id marking a missing value."""
        return self.n_bins

    @property
    def n_features(self) -> int | None:
        if self.feature_segments is None:
            return None
        return len(self.feature_segments) - 1

    def bin_index(self, row: int, column: int) -> int:
        """Bin id stored at (row, column); ``n_bins`` if missing.

        Device matrices copy back only the requested element.
        """
        return int(self.gidx[row, column])

    def to_device(self) -> EllpackMatrix:
        """Copy of this matrix with ``gidx`` on the CUDA device."""
        from ._backends._cuda import to_device
        return EllpackMatrix(
            gidx=to_device(self.gidx),
            n_bins=self.n_bins,
            feature_segments=self.feature_segments,
            device="cuda",
        )

    def __repr__(self) -> str:
        return (
            f"EllpackMatrix(n_rows={self.n_rows}, row_stride={self.row_stride}, "
            f"n_bins={self.n_bins}, device={self.device!r})"
        )


def quantize(
    X: ArrayLike,
    max_bins: int = 256,
    *,
    compact: bool = False,
    device: str | None = None,
) -> EllpackMatrix:
    """Quantize dense features into an :class:`EllpackMatrix`.

    Args:
        X: Input features, shape (n_rows, n_features). NaN marks missing.
           Accepts numpy arrays, PyTorch tensors, JAX arrays, CuPy arrays.
        max_bins: Maximum number of bins per feature.
        compact: Move present values to the front of each row and shrink
            ``row_stride`` to the largest number of present values per row.
        device: Target device ("cuda" or "cpu"). Defaults to the active
            backend. "cuda" requires the CUDA backend.

    Returns:
        EllpackMatrix with global bin ids.

    Example:
        >>> import reprohist as rh
        >>> matrix = rh.quantize(X_train, max_bins=64)
        >>> hist = rh.allocate_histogram(matrix.n_bins)
    """
    if device not in (None, "cuda", "cpu"):
        raise ValueError(f"device must be 'cuda' or 'cpu', got {device!r}")
    if device == "cuda" and not is_cuda():
        raise RuntimeError(
            "device='cuda' requested but the CPU backend is active; "
            "call set_backend('cuda') first"
        )
    if max_bins < 1:
        raise ValueError(f"max_bins must be >= 1, got {max_bins}")

    X_np = to_numpy(X)
    if X_np.ndim != 2:
        raise ValueError(f"X must be 2D (n_rows, n_features), got shape {X_np.shape}")

    n_rows, n_features = X_np.shape

    local_bins, bin_counts = _quantile_bin(X_np, max_bins)

    feature_segments = np.zeros(n_features + 1, dtype=np.int64)
    np.cumsum(bin_counts, out=feature_segments[1:])
    n_bins = int(feature_segments[-1])

    missing = local_bins < 0
    gidx = (local_bins + feature_segments[:-1]).astype(np.uint32)
    gidx[missing] = n_bins

    if compact and n_features > 0:
        row_stride = int((~missing).sum(axis=1).max()) if n_rows > 0 else 0
        order = np.argsort(missing, axis=1, kind="stable")
        gidx = np.take_along_axis(gidx, order, axis=1)[:, :row_stride]

    gidx = np.ascontiguousarray(gidx)

    if device is None:
        device = get_backend()

    matrix = EllpackMatrix(
        gidx=gidx,
        n_bins=n_bins,
        feature_segments=feature_segments,
        device="cpu",
    )
    if device == "cuda":
        matrix = matrix.to_device()
    return matrix


def _quantile_bin(
    X: NDArray[np.floating],
    max_bins: int,
) -> tuple[NDArray[np.int64], NDArray[np.int64]]:
    """Bin features using quantiles (parallelized across features).

    Returns:
        binned: Per-feature bin ids, shape (n_rows, n_features), -1 if missing
        bin_counts: Number of bins of each feature, shape (n_features,)
    """
    from joblib import Parallel, delayed

    n_rows, n_features = X.shape

    percentiles = np.linspace(0, 100, max_bins + 1)[1:-1]

    def bin_single_feature(f: int) -> tuple[NDArray[np.int64], int]:
        col = X[:, f].astype(np.float64)
        present = ~np.isnan(col)
        binned_col = np.full(n_rows, -1, dtype=np.int64)

        if not present.any():
            return binned_col, 1

        edges = np.unique(np.percentile(col[present], percentiles))
        binned_col[present] = np.digitize(col[present], edges)
        return binned_col, len(edges) + 1

    # Threads, not processes: features share X
    results = Parallel(n_jobs=-1, prefer="threads")(
        delayed(bin_single_feature)(f) for f in range(n_features)
    )

    if not results:
        return np.empty((n_rows, 0), dtype=np.int64), np.empty(0, dtype=np.int64)

    binned = np.column_stack([r[0] for r in results])
    bin_counts = np.array([r[1] for r in results], dtype=np.int64)
    return binned, bin_counts
