"""End-to-end tests for the menu clustering pipeline."""
from __future__ import annotations

import math
import random
from typing import Dict, Iterable, List, Sequence

import numpy as np
import pytest

from backend.app.config import AppConfig, ConfigurationError, load_config
from backend.app.contracts import ItemMention, MenuCategory
from backend.app.menu import (
    EmbeddingClient,
    EmbeddingCountMismatch,
    EmbeddingError,
    HashingEmbeddingProvider,
    MenuClusteringPipeline,
    prepare_rows,
)


class StubEmbeddingProvider:
    """Embedding provider that returns predefined vectors for normalized text."""

    def __init__(self, vectors: Dict[str, Iterable[float]]) -> None:
        self._vectors = {key: [float(value) for value in vector] for key, vector in vectors.items()}
        self.calls: List[List[str]] = []

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [self._vectors[text] for text in texts]


class ShortProvider:
    """Provider that drops the last vector of every batch."""

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return [[1.0, 0.0] for _ in texts][:-1]


@pytest.fixture(name="config")
def fixture_config() -> AppConfig:
    return load_config()


@pytest.fixture(name="guac_provider")
def fixture_guac_provider() -> StubEmbeddingProvider:
    return StubEmbeddingProvider(
        {
            "guacamole": [1.0, 0.0, 0.0],
            "guac": [0.95, 0.31, 0.0],
            "chips and salsa": [0.0, 0.0, 1.0],
        }
    )


def test_guacamole_example(config, guac_provider) -> None:
    pipeline = MenuClusteringPipeline(config, embedding_provider=guac_provider)
    mentions = [
        ItemMention(item="guacamole", rating=5),
        ItemMention(item="guac", rating=4),
        ItemMention(item="chips and salsa", rating=3),
    ]

    categories = pipeline.build_menu(mentions)

    assert len(categories) == 1
    assert categories[0].category == "Items"
    items = categories[0].items
    assert len(items) == 2
    guac, chips = items
    assert guac.name in {"Guacamole", "Guac"}
    assert guac.rating == 4.5
    assert guac.review_count == 2
    assert chips.name == "Chips And Salsa"
    assert chips.rating == 3.0
    assert chips.review_count == 1
    assert len(guac_provider.calls) == 1


def test_empty_input_returns_placeholder_category(config, guac_provider) -> None:
    pipeline = MenuClusteringPipeline(config, embedding_provider=guac_provider)
    assert pipeline.build_menu([]) == [MenuCategory(category="Menu Items", items=[])]
    assert guac_provider.calls == []


def test_unusable_rows_are_dropped_before_embedding(config, guac_provider) -> None:
    pipeline = MenuClusteringPipeline(config, embedding_provider=guac_provider)
    mentions = [
        {"item": None, "rating": 4},
        {"item": "  ", "rating": 4},
        {"item": "!!!", "rating": 5},
        {"item": "guac", "rating": float("nan")},
        {"item": "guac", "rating": True},
        {"item": "guac", "rating": "not a number"},
    ]
    assert pipeline.build_menu(mentions) == [MenuCategory(category="Menu Items", items=[])]
    assert guac_provider.calls == []


def test_prepare_rows_accepts_mappings_and_mentions() -> None:
    rows = prepare_rows(
        [
            {"item": " Street Tacos ", "rating": "4"},
            ItemMention(item="Chips & Salsa", rating=3.5),
            {"item": "flan", "rating": float("inf")},
        ]
    )
    assert [(row.raw_text, row.normalized_key, row.rating) for row in rows] == [
        ("Street Tacos", "street taco", 4.0),
        ("Chips & Salsa", "chip and salsa", 3.5),
    ]


def test_single_valid_row_yields_single_item(config, guac_provider) -> None:
    pipeline = MenuClusteringPipeline(config, embedding_provider=guac_provider)
    result = pipeline.run([{"item": "Guac", "rating": 4.0}])
    assert result.cluster_count == 1
    assert [(item.name, item.rating, item.review_count) for item in result.items] == [("Guac", 4.0, 1)]


def test_count_mismatch_raises_without_output(config) -> None:
    pipeline = MenuClusteringPipeline(config, embedding_provider=ShortProvider())
    with pytest.raises(EmbeddingCountMismatch):
        pipeline.build_menu([{"item": "tacos", "rating": 4}, {"item": "nachos", "rating": 3}])


def test_non_finite_embeddings_abort_the_batch(config) -> None:
    provider = StubEmbeddingProvider(
        {
            "tacos": [1.0, 0.0],
            "nachos": [float("nan"), 1.0],
            "flan": [0.0, 1.0],
            "elote": [0.7, 0.7],
            "churros": [0.2, 0.9],
        }
    )
    pipeline = MenuClusteringPipeline(config, embedding_provider=provider)
    mentions = [{"item": name, "rating": 4} for name in ("tacos", "nachos", "flan", "elote", "churros")]
    with pytest.raises(EmbeddingError):
        pipeline.build_menu(mentions)


def test_missing_credential_fails_at_construction(monkeypatch, config) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    openai_config = config.model_copy(
        update={"embedding": config.embedding.model_copy(update={"provider": "openai"})}
    )
    with pytest.raises(ConfigurationError):
        MenuClusteringPipeline(openai_config)


def test_rejects_provider_and_client_together(config, guac_provider) -> None:
    with pytest.raises(ValueError):
        MenuClusteringPipeline(
            config,
            embedding_provider=guac_provider,
            embedding_client=EmbeddingClient(guac_provider),
        )


def test_identical_rows_share_a_group(config) -> None:
    pipeline = MenuClusteringPipeline(config, embedding_provider=HashingEmbeddingProvider(32))
    mentions = [
        {"item": "Fish Taco", "rating": 4},
        {"item": "Horchata", "rating": 5},
        {"item": "Fish Taco", "rating": 4},
        {"item": "Churros", "rating": 2},
        {"item": "Elote", "rating": 3},
        {"item": "Tamales", "rating": 4},
    ]
    result = pipeline.run(mentions)
    owning = [group for group in result.groups if 0 in group.member_indices]
    assert len(owning) == 1
    assert 2 in owning[0].member_indices


def test_clustering_override_is_applied_per_call(config) -> None:
    pipeline = MenuClusteringPipeline(config, embedding_provider=HashingEmbeddingProvider(32))
    mentions = [{"item": name, "rating": 4} for name in ("a1", "b2", "c3", "d4", "e5", "f6", "g7", "h8")]
    narrow = config.clustering.model_copy(update={"max_clusters": 2})
    result = pipeline.run(mentions, clustering=narrow)
    assert result.cluster_count == 2
    assert pipeline.clustering_config.max_clusters == config.clustering.max_clusters


@pytest.mark.parametrize("seed", [1, 2, 3, 4])
def test_output_invariants_hold_for_random_batches(config, seed) -> None:
    rng = random.Random(seed)
    vocabulary = [
        "Carne Asada Taco",
        "carne asada tacos",
        "Al Pastor",
        "Guacamole",
        "guac",
        "Churros",
        "Horchata",
        "Queso Fundido",
        "Elote",
        "Mole Enchiladas",
    ]
    mentions = [
        {"item": rng.choice(vocabulary), "rating": rng.choice([1, 2, 3, 3.5, 4, 4.5, 5])}
        for _ in range(rng.randint(3, 30))
    ]
    pipeline = MenuClusteringPipeline(config, embedding_provider=HashingEmbeddingProvider(64))

    result = pipeline.run(mentions)

    assert sum(item.review_count for item in result.items) == len(result.rows)
    ratings = [item.rating for item in result.items]
    assert ratings == sorted(ratings, reverse=True)
    members = sorted(index for group in result.groups for index in group.member_indices)
    assert members == list(range(len(result.rows)))
    spans = []
    for group in result.groups:
        member_ratings = [result.rows[index].rating for index in group.member_indices]
        spans.append((len(member_ratings), min(member_ratings), max(member_ratings)))
    for item in result.items:
        assert math.isfinite(item.rating)
        assert any(
            count == item.review_count and low <= item.rating <= high for count, low, high in spans
        )


def test_embeddings_are_not_shared_between_runs(config) -> None:
    provider = StubEmbeddingProvider({"tacos": [1.0, 0.0], "nachos": [0.0, 1.0], "flan": [0.7, 0.7]})
    pipeline = MenuClusteringPipeline(config, embedding_provider=provider)
    first = pipeline.build_menu([{"item": "tacos", "rating": 4}, {"item": "nachos", "rating": 2}])
    second = pipeline.build_menu([{"item": "tacos", "rating": 4}, {"item": "nachos", "rating": 2}])
    assert first == second
    assert np.array(provider.calls).shape == (2, 2)
