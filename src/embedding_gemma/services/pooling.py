"""Mask-aware mean pooling and L2 normalization.

Pure functions over numpy arrays. Padding positions never contribute to a
pooled vector, which is what makes results independent of how inputs were
batched.
"""

from __future__ import annotations

import numpy as np

from embedding_gemma.exceptions import InvalidInputError

_EPS = 1e-12


def mean_pool(hidden: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Average token vectors over attended positions.

    Args:
        hidden: Hidden states of shape (B, T, H).
        mask: Attention mask of shape (B, T); nonzero means attended.

    Returns:
        Float32 array of shape (B, H). Rows with no attended position are
        all zeros.
    """
    if hidden.ndim != 3 or mask.ndim != 2 or hidden.shape[:2] != mask.shape:
        raise InvalidInputError(
            f"Cannot pool hidden {hidden.shape} with mask {mask.shape}",
            field="hidden",
        )
    weights = (mask != 0).astype(np.float64)[:, :, None]
    # Padded positions may hold NaN/inf from the backend; 0 * NaN is still NaN
    masked = np.where(weights > 0, hidden.astype(np.float64), 0.0)
    summed = masked.sum(axis=1)
    counts = weights.sum(axis=1)
    pooled = np.divide(
        summed, counts, out=np.zeros_like(summed), where=counts > 0
    )
    return pooled.astype(np.float32)


def pool(hidden: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Single-input form of ``mean_pool``: (T, H) and (T,) to (H,)."""
    return mean_pool(hidden[None, ...], np.asarray(mask)[None, ...])[0]


def l2_normalize(vectors: np.ndarray) -> np.ndarray:
    """Scale each vector (last axis) to unit length; zero vectors stay zero."""
    values = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(values, axis=-1, keepdims=True)
    normalized = np.divide(
        values, norms, out=np.zeros_like(values), where=norms > _EPS
    )
    return normalized.astype(np.float32)


def truncate_dimension(vectors: np.ndarray, dimension: int) -> np.ndarray:
    """Keep the leading ``dimension`` components and renormalize.

    Matryoshka-trained models front-load information, so a prefix of the
    full vector is itself a usable embedding.
    """
    values = np.asarray(vectors)
    full = values.shape[-1]
    if dimension < 1 or dimension > full:
        raise InvalidInputError(
            f"Output dimension must be in 1..{full}, got {dimension}",
            field="dimension",
            value=dimension,
        )
    if dimension == full:
        return values.astype(np.float32)
    return l2_normalize(values[..., :dimension])
