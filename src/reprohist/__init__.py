"""reprohist: Bit-reproducible gradient histograms for gradient boosting.

Builds per-node gradient/Hessian histograms on GPU (Numba CUDA) or CPU
(Numba parallel) with results that are identical bit for bit no matter how
the work is split across threads and blocks.

Quick Start:
    >>> import numpy as np
    >>> import reprohist as rh
    >>>
    >>> # Quantize once
    >>> matrix = rh.quantize(X_train, max_bins=256)
    >>>
    >>> # Once per boosting round
    >>> gpair = rh.gradient_pairs(grad, hess)
    >>> rounding = rh.compute_rounding_factor(gpair, np.float64)
    >>>
    >>> # Once per tree node
    >>> hist = rh.allocate_histogram(matrix.n_bins, np.float64)
    >>> rh.build_gradient_histogram(matrix, gpair, node_rows, hist, rounding)

Sibling Histograms:
    >>> right = rh.subtract_histogram(parent_hist, left_hist)
"""

__version__ = "0.1.0"

# Data
from ._ellpack import EllpackMatrix, quantize
from ._gpair import GradientPair, RoundingFactor, gradient_pairs, allocate_histogram

# Reproducible summation
from ._rounding import (
    compute_rounding_factor,
    create_rounding_factor,
    split_signed,
    truncate,
    truncate_array,
)

# Histogram building
from ._histogram import (
    HistogramBuilder,
    HistogramConfig,
    LaunchParams,
    build_gradient_histogram,
    build_node_histograms,
    subtract_histogram,
)

# Backend control
from ._backends import get_backend, set_backend, is_cuda, is_cpu

__all__ = [
    # Version
    "__version__",
    # Data
    "EllpackMatrix",
    "quantize",
    "GradientPair",
    "RoundingFactor",
    "gradient_pairs",
    "allocate_histogram",
    # Reproducible summation
    "compute_rounding_factor",
    "create_rounding_factor",
    "split_signed",
    "truncate",
    "truncate_array",
    # Histogram building
    "HistogramBuilder",
    "HistogramConfig",
    "LaunchParams",
    "build_gradient_histogram",
    "build_node_histograms",
    "subtract_histogram",
    # Backend
    "get_backend",
    "set_backend",
    "is_cuda",
    "is_cpu",
]
