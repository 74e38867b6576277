"""Menu item clustering package: embeddings, k-means search and merge logic."""

from .aggregation import aggregate_groups
from .clustering import Cluster, Partition, build_clusters, partition, select_cluster_count, silhouette_score
from .embedding import (
    EmbeddingClient,
    EmbeddingCountMismatch,
    EmbeddingError,
    EmbeddingProvider,
    EmbeddingUnavailable,
    HashingEmbeddingProvider,
    OpenAIEmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
    create_embedding_provider,
)
from .merge import MergedGroup, UnionFind, merge_clusters
from .pipeline import ItemRow, MenuClusteringPipeline, MenuClusteringResult, prepare_rows
from .text_normalization import normalize_for_embedding, normalize_for_key, title_case

__all__ = [
    "Cluster",
    "EmbeddingClient",
    "EmbeddingCountMismatch",
    "EmbeddingError",
    "EmbeddingProvider",
    "EmbeddingUnavailable",
    "HashingEmbeddingProvider",
    "ItemRow",
    "MenuClusteringPipeline",
    "MenuClusteringResult",
    "MergedGroup",
    "OpenAIEmbeddingProvider",
    "Partition",
    "SentenceTransformerEmbeddingProvider",
    "UnionFind",
    "aggregate_groups",
    "build_clusters",
    "create_embedding_provider",
    "merge_clusters",
    "normalize_for_embedding",
    "normalize_for_key",
    "partition",
    "prepare_rows",
    "select_cluster_count",
    "silhouette_score",
    "title_case",
]
