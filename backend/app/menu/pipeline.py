"""Menu clustering pipeline orchestration."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from backend.app.config import AppConfig, ClusteringConfig, load_config
from backend.app.contracts import ItemMention, MenuCategory, MenuItem

from .aggregation import aggregate_groups
from .clustering import Cluster, build_clusters, partition, quiet_convergence, select_cluster_count
from .embedding import EmbeddingClient, EmbeddingProvider, create_embedding_provider
from .merge import MergedGroup, merge_clusters
from .text_normalization import normalize_for_key

LOGGER = logging.getLogger(__name__)

ITEMS_CATEGORY = "Items"
EMPTY_CATEGORY = "Menu Items"

MentionLike = Union[ItemMention, Mapping[str, Any]]


@dataclass(frozen=True, slots=True)
class ItemRow:
    """A mention that survived normalization, addressed by its row index."""

    raw_text: str
    normalized_key: str
    rating: float


@dataclass(frozen=True)
class MenuClusteringResult:
    """Intermediate and final artifacts of one pipeline run."""

    rows: Sequence[ItemRow]
    cluster_count: int
    clusters: Sequence[Cluster]
    groups: Sequence[MergedGroup]
    items: Sequence[MenuItem]

    def to_categories(self) -> List[MenuCategory]:
        """Return the single-category payload handed back to callers."""

        if not self.rows:
            return [MenuCategory(category=EMPTY_CATEGORY, items=[])]
        return [MenuCategory(category=ITEMS_CATEGORY, items=list(self.items))]


def _coerce_rating(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        rating = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(rating):
        return None
    return rating


def prepare_rows(mentions: Iterable[MentionLike]) -> List[ItemRow]:
    """Normalize mentions into rows, dropping unusable ones.

    Mentions whose item normalizes to an empty key, or whose rating is not a
    finite number, are skipped silently.

    Args:
        mentions: :class:`ItemMention` instances or mappings with ``item`` and
            ``rating`` keys.

    Returns:
        List[ItemRow]: Surviving rows in input order.
    """

    rows: List[ItemRow] = []
    dropped = 0
    for mention in mentions:
        if isinstance(mention, ItemMention):
            item, raw_rating = mention.item, mention.rating
        else:
            item, raw_rating = mention.get("item"), mention.get("rating")
        raw_text = str(item).strip() if item is not None else ""
        key = normalize_for_key(raw_text)
        rating = _coerce_rating(raw_rating)
        if not key or rating is None:
            dropped += 1
            continue
        rows.append(ItemRow(raw_text=raw_text, normalized_key=key, rating=rating))
    if dropped:
        LOGGER.info("Dropped %d mentions without a usable item or rating", dropped)
    return rows


class MenuClusteringPipeline:
    """Group free-text item mentions into canonical, rated menu items."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        embedding_provider: Optional[EmbeddingProvider] = None,
        embedding_client: Optional[EmbeddingClient] = None,
    ) -> None:
        if embedding_provider is not None and embedding_client is not None:
            raise ValueError("Provide either an embedding_provider or an embedding_client, not both")
        self._config = config or load_config()
        if embedding_client is not None:
            self._client = embedding_client
        else:
            provider = embedding_provider or create_embedding_provider(self._config.embedding)
            self._client = EmbeddingClient(provider)

    @property
    def clustering_config(self) -> ClusteringConfig:
        """Return the default clustering configuration."""

        return self._config.clustering

    def run(
        self,
        mentions: Iterable[MentionLike],
        *,
        clustering: Optional[ClusteringConfig] = None,
    ) -> MenuClusteringResult:
        """Execute the full pipeline for one batch of mentions.

        Args:
            mentions: Item mentions for a single place.
            clustering: Optional per-call override of the clustering settings.

        Returns:
            MenuClusteringResult: Rows, clusters, merged groups and menu items.

        Raises:
            ConfigurationError: If the embedding provider is misconfigured.
            EmbeddingUnavailable: If the embedding provider fails.
            EmbeddingCountMismatch: If the provider breaks the count contract.
        """

        settings = clustering or self._config.clustering
        rows = prepare_rows(mentions)
        if not rows:
            LOGGER.info("No usable mentions; returning an empty menu")
            return MenuClusteringResult(rows=(), cluster_count=0, clusters=(), groups=(), items=())

        texts = [row.raw_text for row in rows]
        embeddings = self._client.embed(texts)
        cluster_count = select_cluster_count(embeddings, settings)
        with quiet_convergence():
            result = partition(
                embeddings,
                min(cluster_count, len(rows)),
                max_iterations=settings.max_iterations,
                random_seed=settings.random_seed,
            )
        clusters = build_clusters(result, embeddings, texts)
        groups = merge_clusters(clusters, settings)
        items = aggregate_groups(groups, [row.rating for row in rows])
        LOGGER.info(
            "Clustered %d mentions into %d clusters and %d menu items",
            len(rows),
            len(clusters),
            len(items),
        )
        return MenuClusteringResult(
            rows=tuple(rows),
            cluster_count=cluster_count,
            clusters=tuple(clusters),
            groups=tuple(groups),
            items=tuple(items),
        )

    def build_menu(
        self,
        mentions: Iterable[MentionLike],
        *,
        clustering: Optional[ClusteringConfig] = None,
    ) -> List[MenuCategory]:
        """Return the ranked menu for ``mentions`` as a one-element category list."""

        return self.run(mentions, clustering=clustering).to_categories()

