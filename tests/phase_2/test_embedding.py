"""Tests for the embedding client and provider backends."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pytest

import backend.app.menu.embedding as embedding_module
from backend.app.config import ConfigurationError, EmbeddingConfig
from backend.app.menu.embedding import (
    EmbeddingClient,
    EmbeddingCountMismatch,
    EmbeddingUnavailable,
    HashingEmbeddingProvider,
    OpenAIEmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
    create_embedding_provider,
)


@dataclass
class _FakeResponse:
    """Simplified HTTP response used for testing."""

    status_code: int
    body: Optional[Any] = None
    text: str = ""

    def json(self) -> Any:
        if self.body is None:
            raise ValueError("no body")
        return self.body


class _FakeHTTPClient:
    """Deterministic HTTP client for unit tests."""

    def __init__(self, responses: List[_FakeResponse]) -> None:
        self._responses = responses
        self.calls: List[Tuple[str, Dict[str, Any], Dict[str, str]]] = []

    def post(self, url: str, *, headers: Dict[str, str], json: Dict[str, Any]) -> _FakeResponse:
        if not self._responses:
            raise AssertionError("No more fake responses configured")
        self.calls.append((url, json, headers))
        return self._responses.pop(0)

    def close(self) -> None:
        return None


class RecordingProvider:
    """Provider returning canned vectors and recording its inputs."""

    def __init__(self, vectors: Sequence[Sequence[float]]) -> None:
        self._vectors = [list(vector) for vector in vectors]
        self.calls: List[List[str]] = []

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return self._vectors


class FailingProvider:
    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        raise ConnectionError("network unreachable")


@pytest.fixture(name="embedding_settings")
def fixture_embedding_settings() -> EmbeddingConfig:
    return EmbeddingConfig(max_retries=1, backoff_initial_seconds=0.01, backoff_max_seconds=0.01)


def test_client_normalizes_and_batches_once() -> None:
    provider = RecordingProvider([[1.0, 0.0], [0.0, 1.0]])
    client = EmbeddingClient(provider)

    matrix = client.embed(["The Chips & Salsa", "GUAC!"])

    assert provider.calls == [["chips and salsa", "guac"]]
    assert matrix.shape == (2, 2)
    assert matrix.dtype == np.float64


def test_client_empty_input_skips_provider() -> None:
    provider = RecordingProvider([])
    matrix = EmbeddingClient(provider).embed([])
    assert matrix.shape[0] == 0
    assert provider.calls == []


def test_client_raises_on_count_mismatch() -> None:
    provider = RecordingProvider([[1.0, 0.0]])
    with pytest.raises(EmbeddingCountMismatch):
        EmbeddingClient(provider).embed(["a", "b"])


def test_client_wraps_provider_failures() -> None:
    with pytest.raises(EmbeddingUnavailable) as excinfo:
        EmbeddingClient(FailingProvider()).embed(["tacos"])
    assert isinstance(excinfo.value.__cause__, ConnectionError)


def test_client_rejects_ragged_vectors() -> None:
    provider = RecordingProvider([[1.0, 0.0], [1.0]])
    with pytest.raises(EmbeddingUnavailable):
        EmbeddingClient(provider).embed(["a", "b"])


@pytest.mark.parametrize("bad_value", [float("nan"), float("inf"), float("-inf")])
def test_client_rejects_non_finite_vectors(bad_value) -> None:
    provider = RecordingProvider([[1.0, 0.0], [bad_value, 1.0], [0.0, 1.0]])
    with pytest.raises(EmbeddingUnavailable, match="non-finite"):
        EmbeddingClient(provider).embed(["tacos", "nachos", "flan"])


def test_openai_provider_orders_vectors_by_index(embedding_settings) -> None:
    response = _FakeResponse(
        status_code=200,
        body={
            "data": [
                {"index": 1, "embedding": [0.0, 1.0]},
                {"index": 0, "embedding": [1.0, 0.0]},
            ]
        },
    )
    fake_client = _FakeHTTPClient([response])
    provider = OpenAIEmbeddingProvider(embedding_settings.openai, api_key="test-key", client=fake_client)

    vectors = provider.embed(["chips", "salsa"])

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    url, payload, headers = fake_client.calls[0]
    assert url == "/embeddings"
    assert payload == {"model": "text-embedding-3-small", "input": ["chips", "salsa"]}
    assert headers["Authorization"] == "Bearer test-key"


def test_openai_provider_retries_retryable_status(embedding_settings) -> None:
    fake_client = _FakeHTTPClient(
        [
            _FakeResponse(status_code=429, body={"error": {"message": "slow down"}}),
            _FakeResponse(status_code=200, body={"data": [{"index": 0, "embedding": [0.6, 0.8]}]}),
        ]
    )
    provider = OpenAIEmbeddingProvider(embedding_settings.openai, api_key="test-key", client=fake_client)

    assert provider.embed(["tacos"]) == [[0.6, 0.8]]
    assert len(fake_client.calls) == 2


def test_openai_provider_failure_surfaces_as_unavailable(embedding_settings) -> None:
    fake_client = _FakeHTTPClient([_FakeResponse(status_code=401, body={"error": {"message": "bad key"}})])
    provider = OpenAIEmbeddingProvider(embedding_settings.openai, api_key="test-key", client=fake_client)

    with pytest.raises(EmbeddingUnavailable):
        EmbeddingClient(provider).embed(["tacos"])


def test_openai_provider_rejects_missing_data(embedding_settings) -> None:
    fake_client = _FakeHTTPClient([_FakeResponse(status_code=200, body={"object": "list"})])
    provider = OpenAIEmbeddingProvider(embedding_settings.openai, api_key="test-key", client=fake_client)

    with pytest.raises(EmbeddingUnavailable):
        provider.embed(["tacos"])


def test_missing_api_key_raises_configuration_error(monkeypatch, embedding_settings) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        create_embedding_provider(embedding_settings)


def test_hashing_provider_is_deterministic_and_normalized() -> None:
    provider = HashingEmbeddingProvider(dimensions=48)
    first, second, other = provider.embed(["guacamole", "guacamole", "nachos"])
    assert first == second
    assert first != other
    assert len(first) == 48
    assert np.isclose(np.linalg.norm(first), 1.0)


def test_create_provider_selects_hashing() -> None:
    provider = create_embedding_provider(EmbeddingConfig(provider="hashing", hashing_dimensions=16))
    assert isinstance(provider, HashingEmbeddingProvider)


def test_sentence_transformer_missing_package_raises(monkeypatch) -> None:
    monkeypatch.setattr(embedding_module, "SentenceTransformer", None)
    with pytest.raises(ConfigurationError):
        create_embedding_provider(EmbeddingConfig(provider="sentence_transformers"))


def test_sentence_transformer_provider_caches_model(monkeypatch) -> None:
    calls: Dict[str, int] = {"init": 0}

    class DummyModel:
        def __init__(self, model_name: str) -> None:
            calls["init"] += 1

        def encode(self, sentences, **kwargs):
            return np.ones((len(sentences), 3), dtype=np.float32)

    monkeypatch.setattr(embedding_module, "SentenceTransformer", DummyModel)
    monkeypatch.setattr(SentenceTransformerEmbeddingProvider, "_GLOBAL_MODELS", {})
    first = SentenceTransformerEmbeddingProvider("dummy-model")
    second = SentenceTransformerEmbeddingProvider("dummy-model")

    assert first.embed(["a", "b"]) == [[1.0, 1.0, 1.0], [1.0, 1.0, 1.0]]
    second.embed(["c"])
    assert calls["init"] == 1
