"""Shared fixtures for reprohist tests."""

import numpy as np
import pytest

import reprohist as rh

try:
    from numba import cuda
    CUDA_AVAILABLE = cuda.is_available()
except Exception:
    CUDA_AVAILABLE = False


@pytest.fixture(autouse=True)
def cpu_backend(request):
    """Run tests on the CPU backend unless marked ``cuda``."""
    if request.node.get_closest_marker("cuda"):
        yield
        return

    original = rh.get_backend()
    rh.set_backend("cpu")
    yield
    if original != "cpu":
        rh.set_backend(original)


@pytest.fixture
def scenario():
    """Five rows, two bins: four cancelling rows in bin 0, one row in bin 1."""
    gidx = np.array([[0], [0], [0], [0], [1]], dtype=np.uint32)
    matrix = rh.EllpackMatrix(gidx=gidx, n_bins=2)
    gpair = np.array(
        [[1.0, 1.0], [-1.0, 1.0], [0.5, 0.5], [-0.5, 0.5], [2.0, 2.0]],
        dtype=np.float32,
    )
    ridx = np.arange(5, dtype=np.uint32)
    return matrix, gpair, ridx


@pytest.fixture
def random_problem():
    """Quantized matrix with missing values and wide-ranging gradients."""
    rng = np.random.default_rng(42)
    n_rows, n_features = 2000, 6

    X = rng.standard_normal((n_rows, n_features))
    X[rng.random((n_rows, n_features)) < 0.1] = np.nan
    matrix = rh.quantize(X, max_bins=32, device="cpu")

    scale = 10.0 ** rng.uniform(-4, 3, size=n_rows)
    grad = rng.standard_normal(n_rows) * scale
    hess = rng.random(n_rows) * scale
    gpair = rh.gradient_pairs(grad, hess, dtype=np.float32)
    return matrix, gpair


def reference_histogram(matrix, gpair, ridx, rounding):
    """Sequential numpy histogram of truncated gradient pairs."""
    dtype = rounding.dtype
    gidx = np.asarray(matrix.gidx)
    ridx = np.asarray(ridx, dtype=np.int64)

    bins = gidx[ridx].ravel().astype(np.int64)
    rows = np.repeat(ridx, matrix.row_stride)
    keep = bins != matrix.n_bins

    hist = np.zeros((matrix.n_bins, 2), dtype=dtype)
    grad = rh.truncate_array(rounding.grad, np.asarray(gpair)[rows[keep], 0])
    hess = rh.truncate_array(rounding.hess, np.asarray(gpair)[rows[keep], 1])
    np.add.at(hist[:, 0], bins[keep], grad)
    np.add.at(hist[:, 1], bins[keep], hess)
    return hist


@pytest.fixture
def reference():
    return reference_histogram
