"""Cluster-count search, k-means partitioning and representative selection."""
from __future__ import annotations

import logging
import math
import warnings
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning

from backend.app.config import ClusteringConfig

LOGGER = logging.getLogger(__name__)

# Similarities below this floor are treated as unbounded distance.
_SIMILARITY_FLOOR = -0.5
_TRIAL_ERRORS = (ValueError, FloatingPointError, np.linalg.LinAlgError)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return the cosine similarity of two vectors.

    Mismatched lengths and zero-norm vectors yield ``-1.0``.
    """

    u = np.asarray(a, dtype=np.float64)
    v = np.asarray(b, dtype=np.float64)
    if u.shape != v.shape or u.size == 0:
        return -1.0
    denominator = float(np.linalg.norm(u) * np.linalg.norm(v))
    if denominator == 0.0:
        return -1.0
    return float(np.clip(np.dot(u, v) / denominator, -1.0, 1.0))


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Return ``1 - cosine_similarity`` or ``inf`` for degenerate pairs."""

    similarity = cosine_similarity(a, b)
    if similarity < _SIMILARITY_FLOOR:
        return math.inf
    return 1.0 - similarity


def cosine_similarity_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Return pairwise cosine similarities between the rows of ``a`` and ``b``."""

    left = np.asarray(a, dtype=np.float64)
    right = np.asarray(b, dtype=np.float64)
    left_norms = np.linalg.norm(left, axis=1)
    right_norms = np.linalg.norm(right, axis=1)
    denominator = np.outer(left_norms, right_norms)
    with np.errstate(divide="ignore", invalid="ignore"):
        similarities = (left @ right.T) / denominator
    similarities = np.where(denominator == 0.0, -1.0, similarities)
    return np.clip(similarities, -1.0, 1.0)


def cosine_distance_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Return pairwise cosine distances, ``inf`` where a pair is degenerate."""

    similarities = cosine_similarity_matrix(a, b)
    return np.where(similarities < _SIMILARITY_FLOOR, np.inf, 1.0 - similarities)


def _point_silhouette(a: float, b: float) -> float:
    if math.isinf(b):
        return 0.0
    if math.isinf(a):
        return -1.0
    scale = max(a, b)
    if scale == 0.0:
        return 0.0
    return (b - a) / scale


def silhouette_score(
    embeddings: np.ndarray,
    labels: Sequence[int],
    *,
    sample_indices: Optional[Sequence[int]] = None,
) -> float:
    """Score a labelling with a cosine-distance silhouette.

    For each scored point ``a`` is the mean distance to the other members of
    its cluster (0 when alone) and ``b`` the smallest mean distance to any
    other cluster. The point scores ``(b - a) / max(a, b)``, or 0 when ``b`` is
    unbounded. Labellings with fewer than two clusters score -1.

    Args:
        embeddings: Matrix of shape ``(n, dimensions)``.
        labels: Cluster label per row.
        sample_indices: Optional subset of rows to score. Distances are still
            measured against every row.

    Returns:
        float: Mean per-point score.
    """

    label_array = np.asarray(labels)
    n_points = label_array.size
    if n_points == 0 or len(embeddings) != n_points:
        return -1.0
    unique_labels = np.unique(label_array)
    if unique_labels.size < 2:
        return -1.0
    rows = np.arange(n_points) if sample_indices is None else np.asarray(sample_indices, dtype=int)
    distances = cosine_distance_matrix(embeddings[rows], embeddings)
    # A point is never compared with itself.
    distances[np.arange(rows.size), rows] = 0.0

    masks = [label_array == label for label in unique_labels]
    counts = np.array([mask.sum() for mask in masks], dtype=np.float64)
    sums = np.column_stack([distances[:, mask].sum(axis=1) for mask in masks])
    own_positions = np.searchsorted(unique_labels, label_array[rows])

    total = 0.0
    for row in range(rows.size):
        own = own_positions[row]
        own_count = counts[own] - 1
        a = float(sums[row, own] / own_count) if own_count > 0 else 0.0
        others = np.delete(sums[row] / counts, own)
        b = float(others.min()) if others.size else math.inf
        total += _point_silhouette(a, b)
    return total / rows.size


@contextmanager
def quiet_convergence() -> Iterator[None]:
    """Silence k-means convergence warnings for the enclosed block.

    Duplicate mentions leave fewer distinct points than clusters. The warning
    filter is process-wide, so enter this once on the calling thread rather
    than inside worker threads.
    """

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        yield


@dataclass(frozen=True)
class Partition:
    """Cluster labels and centroids produced by a k-means run."""

    k: int
    labels: np.ndarray
    centroids: np.ndarray


def partition(
    embeddings: np.ndarray,
    k: int,
    *,
    max_iterations: int = 100,
    random_seed: int = 42,
) -> Partition:
    """Run k-means with k-means++ seeding over the raw embedding vectors.

    Args:
        embeddings: Matrix of shape ``(n, dimensions)``; never modified.
        k: Requested number of clusters, ``1 <= k <= n``.
        max_iterations: Iteration cap for Lloyd's algorithm.
        random_seed: Seed for k-means++ initialization.

    Returns:
        Partition: Label per row and one centroid per cluster.

    Raises:
        ValueError: If ``k`` is outside ``[1, n]``.
        FloatingPointError: If the run produced non-finite centroids.
    """

    n_points = len(embeddings)
    if k < 1 or k > n_points:
        msg = f"cannot partition {n_points} points into {k} clusters"
        raise ValueError(msg)
    if k == 1:
        labels = np.zeros(n_points, dtype=int)
        centroids = np.asarray(embeddings, dtype=np.float64).mean(axis=0, keepdims=True)
        return Partition(k=1, labels=labels, centroids=centroids)
    model = KMeans(
        n_clusters=k,
        init="k-means++",
        n_init=1,
        max_iter=max_iterations,
        random_state=random_seed,
    )
    labels = model.fit_predict(embeddings)
    centroids = np.asarray(model.cluster_centers_, dtype=np.float64)
    if not np.all(np.isfinite(centroids)):
        raise FloatingPointError("k-means produced non-finite centroids")
    return Partition(k=k, labels=np.asarray(labels, dtype=int), centroids=centroids)


def _sample_rows(n_points: int, config: ClusteringConfig) -> Optional[np.ndarray]:
    limit = config.silhouette_sample_size
    if limit is None or n_points <= limit:
        return None
    rng = np.random.default_rng(config.random_seed)
    return np.sort(rng.choice(n_points, size=limit, replace=False))


def _score_candidate(
    embeddings: np.ndarray,
    k: int,
    config: ClusteringConfig,
    sample_indices: Optional[np.ndarray],
) -> Optional[float]:
    try:
        trial = partition(
            embeddings,
            k,
            max_iterations=config.max_iterations,
            random_seed=config.random_seed,
        )
        silhouette = silhouette_score(embeddings, trial.labels, sample_indices=sample_indices)
    except _TRIAL_ERRORS as exc:
        LOGGER.warning("Skipping k=%d after clustering trial failed: %s", k, exc)
        return None
    if math.isnan(silhouette):
        LOGGER.warning("Skipping k=%d after silhouette evaluated to NaN", k)
        return None
    score = silhouette - config.cluster_count_penalty * (k - 2)
    LOGGER.debug("k=%d silhouette=%.4f penalized=%.4f", k, silhouette, score)
    return score


def select_cluster_count(embeddings: np.ndarray, config: ClusteringConfig) -> int:
    """Choose the number of clusters by penalized silhouette search.

    Candidates run from 2 to ``min(max_clusters, n, max(2, n // 2))``. Each is
    scored as its silhouette minus ``cluster_count_penalty * (k - 2)``; the
    best score wins and ties favour the smaller ``k``. Failed trials are
    skipped and, when every trial fails, 2 is returned.

    Args:
        embeddings: Matrix of shape ``(n, dimensions)``.
        config: Clustering configuration.

    Returns:
        int: Selected cluster count.
    """

    n_points = len(embeddings)
    if n_points <= 1:
        return 1
    if n_points == 2:
        return 2
    upper = min(config.max_clusters, n_points, max(2, n_points // 2))
    candidates = list(range(2, upper + 1))
    if not candidates:
        return 2

    shared = np.asarray(embeddings, dtype=np.float64).view()
    shared.flags.writeable = False
    sample_indices = _sample_rows(n_points, config)

    def _evaluate(k: int) -> Optional[float]:
        return _score_candidate(shared, k, config, sample_indices)

    with quiet_convergence():
        if config.search_workers > 1 and len(candidates) > 1:
            workers = min(config.search_workers, len(candidates))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="k-search") as executor:
                scores = list(executor.map(_evaluate, candidates))
        else:
            scores = [_evaluate(k) for k in candidates]

    best_k: Optional[int] = None
    best_score = -math.inf
    for k, score in zip(candidates, scores):
        if score is None:
            continue
        if best_k is None or score > best_score:
            best_k = k
            best_score = score
    if best_k is None:
        LOGGER.warning("All %d cluster-count trials failed; falling back to k=2", len(candidates))
        return 2
    LOGGER.info("Selected k=%d for %d items (score %.4f)", best_k, n_points, best_score)
    return best_k


@dataclass(frozen=True)
class Cluster:
    """A non-empty k-means cluster with its representative member."""

    cluster_id: int
    member_indices: Tuple[int, ...]
    centroid: np.ndarray
    representative_index: int
    representative_text: str
    representative_embedding: np.ndarray


def build_clusters(
    result: Partition,
    embeddings: np.ndarray,
    texts: Sequence[str],
) -> List[Cluster]:
    """Attach representatives to every non-empty cluster of a partition.

    The representative is the member with the smallest cosine distance to the
    cluster centroid; ties go to the lowest row index. Clusters without members
    are dropped.

    Args:
        result: Partition to describe.
        embeddings: Matrix the partition was computed from.
        texts: Raw item text per row.

    Returns:
        List[Cluster]: Clusters ordered by cluster id.
    """

    clusters: List[Cluster] = []
    for cluster_id in range(result.k):
        members = np.flatnonzero(result.labels == cluster_id)
        if members.size == 0:
            LOGGER.debug("Dropping empty cluster %d", cluster_id)
            continue
        centroid = result.centroids[cluster_id]
        distances = cosine_distance_matrix(embeddings[members], centroid[np.newaxis, :])[:, 0]
        best = int(members[int(np.argmin(distances))])
        clusters.append(
            Cluster(
                cluster_id=cluster_id,
                member_indices=tuple(int(index) for index in members),
                centroid=centroid,
                representative_index=best,
                representative_text=texts[best],
                representative_embedding=np.asarray(embeddings[best], dtype=np.float64),
            )
        )
    return clusters
