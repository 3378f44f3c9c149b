"""Backend selection for reprohist.

The backend decides where histogram kernels run:

- "cuda": Numba CUDA kernels with shared-memory staging and atomics
- "cpu": Numba parallel CPU kernels simulating the same launch grid

The backend is auto-detected on first use. Override it with the
``REPROHIST_BACKEND`` environment variable or :func:`set_backend`.
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)

_VALID_BACKENDS = ("cuda", "cpu")

_BACKEND: str | None = None


def _cuda_available() -> bool:
    try:
        from numba import cuda
    except ImportError:
        return False
    try:
        return bool(cuda.is_available())
    except Exception:  # driver probing can fail in odd ways
        logger.debug("CUDA availability probe failed", exc_info=True)
        return False


def _detect_backend() -> str:
    requested = os.environ.get("REPROHIST_BACKEND")
    if requested:
        requested = requested.strip().lower()
        if requested not in _VALID_BACKENDS:
            raise ValueError(
                f"REPROHIST_BACKEND must be 'cuda' or 'cpu', got {requested!r}"
            )
        if requested == "cuda" and not _cuda_available():
            raise RuntimeError(
                "REPROHIST_BACKEND=cuda but CUDA is not available"
            )
        return requested
    return "cuda" if _cuda_available() else "cpu"


def get_backend() -> str:
    """Return the active backend name ("cuda" or "cpu")."""
    global _BACKEND
    if _BACKEND is None:
        _BACKEND = _detect_backend()
        logger.info("Using %s backend", _BACKEND)
    return _BACKEND


def set_backend(backend: str) -> None:
    """Force a backend.

    Args:
        backend: "cuda" or "cpu".

    Raises:
        ValueError: Unknown backend name.
        RuntimeError: "cuda" requested but no CUDA device is available.
    """
    global _BACKEND
    if backend not in _VALID_BACKENDS:
        raise ValueError(f"backend must be 'cuda' or 'cpu', got {backend!r}")
    if backend == "cuda" and not _cuda_available():
        raise RuntimeError("CUDA backend requested but CUDA is not available")
    if backend != _BACKEND:
        logger.info("Switching to %s backend", backend)
    _BACKEND = backend


def is_cuda() -> bool:
    """True when kernels run on a CUDA device."""
    return get_backend() == "cuda"


def is_cpu() -> bool:
    """True when kernels run on the CPU."""
    return get_backend() == "cpu"


__all__ = ["get_backend", "set_backend", "is_cuda", "is_cpu"]
