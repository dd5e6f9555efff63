"""Two-stage dimensionality reduction for opinion maps.

Stage one projects raw embeddings linearly (PCA) into a compact analysis space
used for clustering. Stage two lays that compact space out in three dimensions
with UMAP for display. Every function here is pure: matrices in, matrices out.

Functions:
    l2_normalise(matrix): Row-normalise vectors.
    reduce_compact(vectors, n_components, seed): PCA to the analysis space.
    project_3d(compact, ...): UMAP (or PCA for tiny samples) to three display axes.
    rescale_axes(coords): Min-max rescale each axis into [0, 100].
    reduce_embeddings(vectors, ...): Run both stages and bundle the result.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
import umap
from sklearn.decomposition import PCA

from opinion_map.core.config import get_settings
from opinion_map.core.errors import PipelineError

_LOGGER = logging.getLogger(__name__)

DISPLAY_MIN = 0.0
DISPLAY_MAX = 100.0
# spectral initialisation needs comfortably more points than output dimensions
_SPECTRAL_INIT_MIN_POINTS = 20
_UMAP_MIN_POINTS = 4


@dataclass(slots=True)
class ReductionResult:
    compact: np.ndarray
    coords_3d: np.ndarray
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    explained_variance: float | None = None
    warnings: list[str] = field(default_factory=list)


def l2_normalise(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def reduce_compact(
    vectors: np.ndarray,
    *,
    n_components: int,
    seed: int = 42,
) -> tuple[np.ndarray, float | None]:
    """Project ``vectors`` onto at most ``n_components`` principal components.

    The component count is clamped to the sample and feature counts, so small
    samples simply get a narrower analysis space.
    """

    if vectors.ndim != 2:
        raise PipelineError(f"Expected a 2D embedding matrix, got shape {vectors.shape!r}")
    n_samples, n_features = vectors.shape
    if n_samples < 2:
        raise PipelineError("At least two vectors are required for dimensionality reduction")

    components = max(1, min(n_components, n_samples, n_features))
    if components >= n_features:
        return vectors.astype(np.float32, copy=True), None

    pca = PCA(n_components=components, random_state=seed)
    reduced = pca.fit_transform(vectors)
    explained = float(np.sum(pca.explained_variance_ratio_))
    return reduced.astype(np.float32), explained


def rescale_axes(coords: np.ndarray, low: float = DISPLAY_MIN, high: float = DISPLAY_MAX) -> np.ndarray:
    """Rescale each column independently into ``[low, high]``; flat axes sit at the midpoint."""

    coords = np.asarray(coords, dtype=np.float64)
    if coords.size == 0:
        return coords.astype(np.float32)
    mins = coords.min(axis=0)
    spans = coords.max(axis=0) - mins
    scaled = np.empty_like(coords)
    for axis in range(coords.shape[1]):
        if spans[axis] <= 0 or not np.isfinite(spans[axis]):
            scaled[:, axis] = (low + high) / 2.0
        else:
            scaled[:, axis] = low + (coords[:, axis] - mins[axis]) / spans[axis] * (high - low)
    return np.clip(scaled, low, high).astype(np.float32)


def _pad_columns(coords: np.ndarray, width: int) -> np.ndarray:
    if coords.shape[1] >= width:
        return coords[:, :width]
    padding = np.zeros((coords.shape[0], width - coords.shape[1]), dtype=coords.dtype)
    return np.hstack([coords, padding])


def project_3d(
    compact: np.ndarray,
    *,
    n_neighbors: int,
    min_dist: float,
    metric: str = "euclidean",
    seed: int = 42,
) -> tuple[np.ndarray, str, dict[str, Any], list[str]]:
    """Lay ``compact`` out in three dimensions; returns raw (unscaled) coordinates."""

    n_samples = compact.shape[0]
    notes: list[str] = []

    if n_samples < _UMAP_MIN_POINTS:
        notes.append(f"UMAP skipped for {n_samples} points; using principal axes")
        components = min(3, n_samples, compact.shape[1])
        coords = PCA(n_components=components, random_state=seed).fit_transform(compact)
        return _pad_columns(coords, 3), "pca", {"n_components": 3}, notes

    effective_neighbors = max(2, min(n_neighbors, n_samples - 1))
    if effective_neighbors != n_neighbors:
        notes.append(f"UMAP n_neighbors clamped from {n_neighbors} to {effective_neighbors}")
    init = "spectral" if n_samples >= _SPECTRAL_INIT_MIN_POINTS else "random"

    params = {
        "n_neighbors": effective_neighbors,
        "min_dist": float(min_dist),
        "metric": metric,
        "seed": int(seed),
        "init": init,
    }
    reducer = umap.UMAP(
        n_components=3,
        n_neighbors=effective_neighbors,
        min_dist=float(min_dist),
        metric=metric,
        init=init,
        random_state=int(seed),
    )
    with warnings.catch_warnings():
        # random_state forces single-threaded layout; umap warns about it every call
        warnings.filterwarnings("ignore", message=".*n_jobs.*overridden.*")
        coords = reducer.fit_transform(compact)
    return np.asarray(coords, dtype=np.float64), "umap", params, notes


def reduce_embeddings(
    vectors: np.ndarray,
    *,
    n_components: Optional[int] = None,
    n_neighbors: Optional[int] = None,
    min_dist: Optional[float] = None,
    metric: Optional[str] = None,
    seed: Optional[int] = None,
) -> ReductionResult:
    settings = get_settings()
    n_components = n_components or settings.pca_components
    n_neighbors = n_neighbors or settings.umap_n_neighbors
    min_dist = settings.umap_min_dist if min_dist is None else min_dist
    metric = metric or settings.umap_metric
    seed = settings.umap_seed if seed is None else seed

    matrix = l2_normalise(np.asarray(vectors, dtype=np.float32))
    compact, explained = reduce_compact(matrix, n_components=n_components, seed=seed)
    raw_coords, method, params, notes = project_3d(
        compact,
        n_neighbors=n_neighbors,
        min_dist=min_dist,
        metric=metric,
        seed=seed,
    )
    for note in notes:
        _LOGGER.warning(note)

    coords = rescale_axes(raw_coords)
    params = {"pca_components": int(compact.shape[1]), **params}
    _LOGGER.info(
        "Reduced %d vectors %s -> %d (PCA) -> 3 (%s)",
        matrix.shape[0],
        matrix.shape[1],
        compact.shape[1],
        method,
    )
    return ReductionResult(
        compact=compact,
        coords_3d=coords,
        method=method,
        params=params,
        explained_variance=explained,
        warnings=notes,
    )
