"""Embedding client and provider backends for item names."""
from __future__ import annotations

import logging
import math
import unicodedata
from hashlib import sha256
from threading import Lock
from typing import Dict, List, Optional, Sequence

import numpy as np

try:  # pragma: no cover - optional dependency
    from sentence_transformers import SentenceTransformer
except Exception:  # pragma: no cover - optional dependency
    SentenceTransformer = None

from backend.app.config import ConfigurationError, EmbeddingConfig, OpenAIConfig
from backend.app.utils.openai_http import OpenAIHTTPClient, _HTTPClient

from .text_normalization import normalize_for_embedding

LOGGER = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Base class for embedding failures that abort a batch."""


class EmbeddingUnavailable(EmbeddingError):
    """Raised when the embedding provider is unreachable or returns an error."""


class EmbeddingCountMismatch(EmbeddingError):
    """Raised when the provider returns a different number of vectors than requested."""


class EmbeddingProvider:
    """Protocol for embedding a batch of texts into dense vectors."""

    def embed(self, texts: Sequence[str]) -> Sequence[Sequence[float]]:  # pragma: no cover - interface method
        raise NotImplementedError


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by the OpenAI embeddings endpoint."""

    _ENDPOINT = "/embeddings"

    def __init__(
        self,
        settings: OpenAIConfig,
        *,
        api_key: Optional[str] = None,
        client: Optional[_HTTPClient] = None,
        http_client: Optional[OpenAIHTTPClient] = None,
    ) -> None:
        if http_client is not None and client is not None:
            raise ValueError("Provide either a client or http_client, not both")
        self._settings = settings
        self._http = http_client or OpenAIHTTPClient(settings, api_key=api_key, client=client)

    def close(self) -> None:
        """Release the underlying HTTP client."""

        self._http.close()

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed ``texts`` with a single request.

        Args:
            texts: Already normalized strings.

        Returns:
            List[List[float]]: One vector per returned entry, ordered by the
                ``index`` field of the response.

        Raises:
            EmbeddingUnavailable: If the response payload is malformed.
        """

        payload = {"model": self._settings.model, "input": list(texts)}
        body = self._http.post_json(self._ENDPOINT, payload)
        data = body.get("data")
        if not isinstance(data, list):
            LOGGER.error("OpenAI embeddings response missing data: %s", body)
            raise EmbeddingUnavailable("OpenAI embeddings response missing data")
        entries = []
        for position, entry in enumerate(data):
            if not isinstance(entry, dict) or not isinstance(entry.get("embedding"), list):
                raise EmbeddingUnavailable("OpenAI embeddings response entry malformed")
            index = entry.get("index", position)
            entries.append((int(index), [float(value) for value in entry["embedding"]]))
        entries.sort(key=lambda item: item[0])
        return [vector for _, vector in entries]


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Embedding provider powered by a local sentence-transformers model."""

    _GLOBAL_MODELS: Dict[str, "SentenceTransformer"] = {}
    _GLOBAL_LOCK: Lock = Lock()

    def __init__(self, model_name: str, *, batch_size: int = 64) -> None:
        self._model_name = model_name
        self._batch_size = max(batch_size, 1)
        self._model: Optional[SentenceTransformer] = None
        self._lock = Lock()

    @classmethod
    def is_available(cls) -> bool:
        """Return whether sentence-transformers is installed."""

        return SentenceTransformer is not None

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        model = self._get_model()
        vectors = model.encode(
            list(texts),
            batch_size=self._batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
        )
        return np.asarray(vectors, dtype=np.float64).tolist()

    def _get_model(self) -> SentenceTransformer:
        if SentenceTransformer is None:
            msg = "sentence-transformers must be installed to use the local embedding provider"
            raise ConfigurationError(msg)
        if self._model is not None:
            return self._model
        with self._lock:
            if self._model is not None:
                return self._model
            with self._GLOBAL_LOCK:
                cached = self._GLOBAL_MODELS.get(self._model_name)
                if cached is None:
                    try:
                        cached = SentenceTransformer(self._model_name)
                    except Exception as exc:  # noqa: BLE001
                        LOGGER.exception("Failed to load SentenceTransformer model '%s'", self._model_name)
                        raise EmbeddingUnavailable("sentence-transformer model unavailable") from exc
                    self._GLOBAL_MODELS[self._model_name] = cached
            self._model = cached
            return cached


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic embedding provider using hashing for reproducibility.

    Identical strings map to identical vectors; unrelated strings land close to
    orthogonal. There is no semantic signal, so it is only suitable for offline
    runs and smoke tests.
    """

    def __init__(self, dimensions: int = 64) -> None:
        if dimensions <= 0:
            msg = "Embedding dimensions must be positive"
            raise ValueError(msg)
        self._dimensions = dimensions

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return [self._embed_one(text).tolist() for text in texts]

    def _embed_one(self, text: str) -> np.ndarray:
        normalized = unicodedata.normalize("NFKC", text)
        digest = sha256(normalized.encode("utf-8")).digest()
        hashed = np.frombuffer(digest, dtype=np.uint8).astype(np.float64) - 127.5
        if hashed.size < self._dimensions:
            repeats = math.ceil(self._dimensions / hashed.size)
            hashed = np.tile(hashed, repeats)
        vector = hashed[: self._dimensions]
        norm = np.linalg.norm(vector)
        if norm == 0:
            return np.zeros(self._dimensions, dtype=np.float64)
        return vector / norm


class EmbeddingClient:
    """Adapter that normalizes item names and embeds them in one batch."""

    def __init__(self, provider: EmbeddingProvider) -> None:
        self._provider = provider

    @property
    def provider(self) -> EmbeddingProvider:
        """Return the wrapped provider."""

        return self._provider

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        """Embed raw item names, preserving input order.

        Args:
            texts: Raw item names. Each is passed through
                :func:`normalize_for_embedding` before the provider call.

        Returns:
            np.ndarray: Matrix of shape ``(len(texts), dimensions)``. An empty
                input yields an empty matrix without calling the provider.

        Raises:
            ConfigurationError: If the provider is misconfigured.
            EmbeddingUnavailable: If the provider fails or returns ragged or
                non-finite vectors.
            EmbeddingCountMismatch: If the number of vectors differs from the input.
        """

        if not texts:
            return np.zeros((0, 0), dtype=np.float64)
        values = [normalize_for_embedding(text) for text in texts]
        try:
            vectors = self._provider.embed(values)
        except (ConfigurationError, EmbeddingError):
            raise
        except Exception as exc:  # noqa: BLE001 - provider failures are surfaced uniformly
            LOGGER.error("Embedding generation failed for %d texts: %s", len(values), exc)
            raise EmbeddingUnavailable(
                "Embedding generation failed. Check the provider credential and model availability."
            ) from exc
        if len(vectors) != len(values):
            msg = f"Embedding count mismatch: requested {len(values)}, received {len(vectors)}"
            LOGGER.error(msg)
            raise EmbeddingCountMismatch(msg)
        try:
            matrix = np.asarray(vectors, dtype=np.float64)
        except ValueError as exc:
            raise EmbeddingUnavailable("Embedding provider returned vectors of differing length") from exc
        if matrix.ndim != 2 or matrix.shape[1] == 0:
            raise EmbeddingUnavailable("Embedding provider returned malformed vectors")
        if not np.all(np.isfinite(matrix)):
            LOGGER.error("Embedding provider returned non-finite values for %d texts", len(values))
            raise EmbeddingUnavailable("Embedding provider returned non-finite values")
        LOGGER.debug("Embedded %d texts into %d dimensions", matrix.shape[0], matrix.shape[1])
        return matrix


def create_embedding_provider(
    config: EmbeddingConfig,
    *,
    api_key: Optional[str] = None,
) -> EmbeddingProvider:
    """Instantiate the provider named by ``config.provider``.

    Args:
        config: Embedding configuration section.
        api_key: Optional OpenAI credential overriding ``OPENAI_API_KEY``.

    Returns:
        EmbeddingProvider: Configured provider.

    Raises:
        ConfigurationError: If the provider cannot be constructed.
    """

    if config.provider == "openai":
        return OpenAIEmbeddingProvider(config.openai, api_key=api_key)
    if config.provider == "sentence_transformers":
        if not SentenceTransformerEmbeddingProvider.is_available():
            msg = "sentence-transformers is not installed; install the 'local' extra"
            raise ConfigurationError(msg)
        return SentenceTransformerEmbeddingProvider(config.local_model, batch_size=config.batch_size)
    if config.provider == "hashing":
        LOGGER.warning("Using hashing embeddings; only identical names will embed close together")
        return HashingEmbeddingProvider(config.hashing_dimensions)
    msg = f"Unsupported embedding provider: {config.provider}"
    raise ConfigurationError(msg)
