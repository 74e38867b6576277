"""Second-pass merge of clusters whose representatives are near-duplicates."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from backend.app.config import ClusteringConfig

from .clustering import Cluster, cosine_similarity
from .text_normalization import normalize_for_key

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergedGroup:
    """Union of one or more clusters treated as a single menu item."""

    member_indices: Tuple[int, ...]
    representative_texts: Tuple[str, ...]
    cluster_ids: Tuple[int, ...]


class UnionFind:
    """Disjoint-set forest over the integers ``0..size-1``."""

    def __init__(self, size: int) -> None:
        self._parent = list(range(size))

    def find(self, item: int) -> int:
        parent = self._parent
        while parent[item] != item:
            parent[item] = parent[parent[item]]
            item = parent[item]
        return item

    def union(self, a: int, b: int) -> bool:
        """Join the sets holding ``a`` and ``b``; return whether they were separate."""

        root_a = self.find(a)
        root_b = self.find(b)
        if root_a == root_b:
            return False
        self._parent[root_b] = root_a
        return True


def keys_compatible(key_a: str, key_b: str) -> bool:
    """Return whether two grouping keys are equal or one contains the other."""

    return key_a == key_b or key_a in key_b or key_b in key_a


def should_merge(similarity: float, key_a: str, key_b: str, config: ClusteringConfig) -> bool:
    """Decide whether two cluster representatives describe the same item.

    A pair merges when its similarity reaches ``merge_similarity_threshold``
    and either the keys are compatible or the similarity also clears the
    threshold plus ``key_guard_margin``.
    """

    threshold = config.merge_similarity_threshold
    if similarity < threshold:
        return False
    if keys_compatible(key_a, key_b):
        return True
    return similarity >= threshold + config.key_guard_margin


def merge_clusters(clusters: Sequence[Cluster], config: ClusteringConfig) -> List[MergedGroup]:
    """Union clusters whose representatives pass the merge rule.

    Every unordered pair is evaluated, so merging is transitive: A~B and B~C
    place A, B and C in one group even when A and C fail the rule directly.

    Args:
        clusters: Clusters ordered by cluster id.
        config: Clustering configuration carrying the merge thresholds.

    Returns:
        List[MergedGroup]: Groups ordered by their first constituent cluster.
    """

    keys = [normalize_for_key(cluster.representative_text) for cluster in clusters]
    forest = UnionFind(len(clusters))
    merges = 0
    for i in range(len(clusters)):
        for j in range(i + 1, len(clusters)):
            similarity = cosine_similarity(
                clusters[i].representative_embedding,
                clusters[j].representative_embedding,
            )
            if not should_merge(similarity, keys[i], keys[j], config):
                continue
            if forest.union(i, j):
                merges += 1
                LOGGER.debug(
                    "Merging cluster %d (%s) into %d (%s) at similarity %.4f",
                    clusters[j].cluster_id,
                    clusters[j].representative_text,
                    clusters[i].cluster_id,
                    clusters[i].representative_text,
                    similarity,
                )

    grouped: Dict[int, List[int]] = {}
    for position in range(len(clusters)):
        grouped.setdefault(forest.find(position), []).append(position)
    groups: List[MergedGroup] = []
    for positions in grouped.values():
        members = sorted(index for position in positions for index in clusters[position].member_indices)
        groups.append(
            MergedGroup(
                member_indices=tuple(members),
                representative_texts=tuple(clusters[position].representative_text for position in positions),
                cluster_ids=tuple(clusters[position].cluster_id for position in positions),
            )
        )
    LOGGER.info("Merged %d clusters into %d groups (%d unions)", len(clusters), len(groups), merges)
    return groups
