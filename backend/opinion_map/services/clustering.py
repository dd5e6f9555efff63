"""K-means clustering over the compact analysis space.

Functions:
    select_k(compact, min_k, max_k, seed): Pick a cluster count by silhouette score.
    cluster_points(compact, coords_3d, ...): Assign clusters, flag outliers, and summarise geometry.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
from scipy.spatial.distance import cdist
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning
from sklearn.metrics import silhouette_samples, silhouette_score

from opinion_map.core.config import get_settings
from opinion_map.core.errors import PipelineError
from opinion_map.models.projection import OUTLIER_CLUSTER_ID

_LOGGER = logging.getLogger(__name__)

_SILHOUETTE_SAMPLE_LIMIT = 2000


@dataclass(slots=True)
class ClusterSummary:
    cluster_id: int
    size: int
    centroid_3d: tuple[float, float, float]
    member_indices: list[int]
    coherence: Optional[float] = None


@dataclass(slots=True)
class ClusteringResult:
    labels: np.ndarray
    confidence: np.ndarray
    clusters: list[ClusterSummary]
    k_selected: int
    silhouette: Optional[float] = None
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def cluster_count(self) -> int:
        return len(self.clusters)

    @property
    def outlier_count(self) -> int:
        return int(np.sum(self.labels == OUTLIER_CLUSTER_ID))


def _fit_kmeans(compact: np.ndarray, k: int, seed: int) -> KMeans:
    model = KMeans(n_clusters=k, n_init=10, random_state=seed)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        model.fit(compact)
    return model


def _silhouette(compact: np.ndarray, labels: np.ndarray, seed: int) -> Optional[float]:
    distinct = np.unique(labels)
    if distinct.size < 2 or distinct.size >= labels.size:
        return None
    sample_size = min(labels.size, _SILHOUETTE_SAMPLE_LIMIT)
    return float(silhouette_score(compact, labels, sample_size=sample_size, random_state=seed))


def select_k(
    compact: np.ndarray,
    *,
    min_k: int,
    max_k: int,
    seed: int = 42,
) -> tuple[int, dict[int, Optional[float]]]:
    """Return the k in ``[min_k, max_k]`` with the best silhouette score.

    The range is clamped to ``n - 1`` so every candidate leaves at least one
    multi-member cluster. Ties go to the smaller k.
    """

    n_samples = compact.shape[0]
    upper = min(max_k, n_samples - 1)
    lower = min(min_k, upper)
    if upper < 2:
        return 1, {}

    scores: dict[int, Optional[float]] = {}
    best_k = lower
    best_score = -np.inf
    for k in range(max(lower, 2), upper + 1):
        model = _fit_kmeans(compact, k, seed)
        score = _silhouette(compact, model.labels_, seed)
        scores[k] = score
        if score is not None and score > best_score:
            best_k, best_score = k, score
    return best_k, scores


def cluster_points(
    compact: np.ndarray,
    coords_3d: np.ndarray,
    *,
    min_k: Optional[int] = None,
    max_k: Optional[int] = None,
    min_size: Optional[int] = None,
    outlier_zscore: Optional[float] = None,
    seed: Optional[int] = None,
) -> ClusteringResult:
    """Cluster ``compact`` and describe each cluster in the ``coords_3d`` display space.

    A point is an outlier when its distance to its centroid exceeds the
    cluster's mean distance by more than ``outlier_zscore`` standard
    deviations, or when its cluster is dissolved for being smaller than
    ``min_size``. Dissolution stops once only ``min_k`` clusters remain.
    Surviving clusters are renumbered ``0..C-1`` by descending size.
    """

    settings = get_settings()
    min_k = min_k or settings.cluster_min_k
    max_k = max_k or settings.cluster_max_k
    min_size = settings.cluster_min_size if min_size is None else min_size
    outlier_zscore = settings.cluster_outlier_zscore if outlier_zscore is None else outlier_zscore
    seed = settings.cluster_seed if seed is None else seed

    n_samples = compact.shape[0]
    if n_samples == 0:
        raise PipelineError("Cannot cluster an empty sample")
    if coords_3d.shape[0] != n_samples:
        raise PipelineError(
            "Display coordinates do not match the analysis matrix",
            analysis_rows=n_samples,
            display_rows=int(coords_3d.shape[0]),
        )

    k, scores = select_k(compact, min_k=min_k, max_k=max_k, seed=seed)
    if k <= 1:
        raw_labels = np.zeros(n_samples, dtype=int)
        centers = compact.mean(axis=0, keepdims=True)
    else:
        model = _fit_kmeans(compact, k, seed)
        raw_labels = np.asarray(model.labels_, dtype=int)
        centers = model.cluster_centers_

    distances = cdist(compact, centers)
    assigned = distances[np.arange(n_samples), raw_labels]

    mean_distance: dict[int, float] = {}
    working = raw_labels.copy()
    for label in np.unique(raw_labels):
        mask = raw_labels == label
        member_d = assigned[mask]
        mean_d = float(member_d.mean())
        std_d = float(member_d.std())
        mean_distance[int(label)] = mean_d
        if std_d > 0:
            working[mask & (assigned > mean_d + outlier_zscore * std_d)] = OUTLIER_CLUSTER_ID

    sizes = {
        int(label): int(np.sum(working == label))
        for label in np.unique(working)
        if label != OUTLIER_CLUSTER_ID
    }
    surviving = len(sizes)
    for label, size in sorted(sizes.items(), key=lambda item: (item[1], item[0])):
        if size >= min_size or surviving <= min_k:
            continue
        working[working == label] = OUTLIER_CLUSTER_ID
        surviving -= 1
        _LOGGER.debug("Dissolved cluster %d with %d members", label, size)

    remaining = [label for label in sizes if np.any(working == label)]
    remaining.sort(key=lambda label: (-int(np.sum(working == label)), label))
    remap = {old: new for new, old in enumerate(remaining)}

    labels = np.full(n_samples, OUTLIER_CLUSTER_ID, dtype=int)
    for old, new in remap.items():
        labels[working == old] = new

    confidence = np.empty(n_samples, dtype=np.float64)
    for idx in range(n_samples):
        scale = mean_distance.get(int(raw_labels[idx]), 0.0)
        confidence[idx] = 1.0 if scale <= 0 else 1.0 / (1.0 + assigned[idx] / scale)
    confidence = np.clip(confidence, 0.0, 1.0)

    per_point_silhouette: Optional[np.ndarray] = None
    members_mask = labels != OUTLIER_CLUSTER_ID
    real_labels = labels[members_mask]
    distinct = np.unique(real_labels)
    if 2 <= distinct.size < real_labels.size:
        per_point_silhouette = np.full(n_samples, np.nan)
        per_point_silhouette[members_mask] = silhouette_samples(compact[members_mask], real_labels)

    clusters: list[ClusterSummary] = []
    for cluster_id in range(len(remaining)):
        member_idx = np.flatnonzero(labels == cluster_id)
        centroid = coords_3d[member_idx].mean(axis=0)
        coherence = None
        if per_point_silhouette is not None:
            coherence = float(np.nanmean(per_point_silhouette[member_idx]))
        clusters.append(
            ClusterSummary(
                cluster_id=cluster_id,
                size=int(member_idx.size),
                centroid_3d=(float(centroid[0]), float(centroid[1]), float(centroid[2])),
                member_indices=member_idx.tolist(),
                coherence=coherence,
            )
        )

    overall = None
    if per_point_silhouette is not None:
        overall = float(np.nanmean(per_point_silhouette[members_mask]))

    result = ClusteringResult(
        labels=labels,
        confidence=confidence,
        clusters=clusters,
        k_selected=k,
        silhouette=overall,
        params={
            "algorithm": "kmeans",
            "k_range": [min_k, max_k],
            "k_selected": k,
            "k_scores": {str(key): value for key, value in scores.items()},
            "min_size": min_size,
            "outlier_zscore": outlier_zscore,
            "seed": seed,
        },
    )
    _LOGGER.info(
        "Clustered %d points into %d clusters (k=%d, %d outliers, silhouette=%s)",
        n_samples,
        result.cluster_count,
        k,
        result.outlier_count,
        f"{overall:.3f}" if overall is not None else "n/a",
    )
    return result
