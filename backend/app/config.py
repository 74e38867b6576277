"""Configuration loader for the menu insights backend."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from typing_extensions import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = REPO_ROOT / ".env"

# (environment variable, config section, field, parser)
_ENV_OVERRIDES: Tuple[Tuple[str, str, str, Callable[[str], Any]], ...] = (
    ("MENU_MAX_CLUSTERS", "clustering", "max_clusters", int),
    ("MENU_MERGE_SIMILARITY_THRESHOLD", "clustering", "merge_similarity_threshold", float),
    ("MENU_RANDOM_SEED", "clustering", "random_seed", int),
    ("MENU_EMBEDDING_PROVIDER", "embedding", "provider", str),
    ("MENU_EMBEDDING_MODEL", "embedding", "model", str),
)


class ConfigurationError(RuntimeError):
    """Raised when configuration or credentials cannot be resolved."""


class _FrozenModel(BaseModel):
    """Base model enforcing immutability for config sections."""

    model_config = ConfigDict(frozen=True)


class PipelineConfig(_FrozenModel):
    """Pipeline-level configuration."""

    version: str = Field(..., min_length=1)


class OpenAIConfig(_FrozenModel):
    """Transport settings shared by every OpenAI-backed adapter."""

    model: str = Field(..., min_length=1)
    api_base: str = Field(..., min_length=1)
    timeout_seconds: float = Field(..., gt=0)
    max_retries: int = Field(..., ge=0)
    backoff_initial_seconds: float = Field(..., gt=0)
    backoff_max_seconds: float = Field(..., gt=0)
    retry_statuses: List[int] = Field(default_factory=list)


class EmbeddingConfig(_FrozenModel):
    """Embedding provider selection and transport settings."""

    provider: Literal["openai", "sentence_transformers", "hashing"] = "openai"
    model: str = Field("text-embedding-3-small", min_length=1)
    api_base: str = Field("https://api.openai.com/v1", min_length=1)
    timeout_seconds: float = Field(30.0, gt=0)
    max_retries: int = Field(2, ge=0)
    backoff_initial_seconds: float = Field(1.0, gt=0)
    backoff_max_seconds: float = Field(8.0, gt=0)
    retry_statuses: List[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504])
    local_model: str = Field("sentence-transformers/all-MiniLM-L6-v2", min_length=1)
    hashing_dimensions: int = Field(64, ge=1)
    batch_size: int = Field(64, ge=1)

    @property
    def openai(self) -> OpenAIConfig:
        """Return the OpenAI transport settings for the embeddings endpoint.

        Returns:
            OpenAIConfig: Immutable settings for the OpenAI adapter.
        """

        return OpenAIConfig(
            model=self.model,
            api_base=self.api_base,
            timeout_seconds=self.timeout_seconds,
            max_retries=self.max_retries,
            backoff_initial_seconds=self.backoff_initial_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
            retry_statuses=list(self.retry_statuses),
        )


class ClusteringConfig(_FrozenModel):
    """Tunables for cluster-count search, partitioning and the merge pass."""

    max_clusters: int = Field(50, ge=1)
    merge_similarity_threshold: float = Field(0.88, ge=0.0, le=1.0)
    key_guard_margin: float = Field(0.03, ge=0.0, le=1.0)
    cluster_count_penalty: float = Field(0.01, ge=0.0)
    max_iterations: int = Field(100, ge=1)
    random_seed: int = Field(42, ge=0)
    search_workers: int = Field(1, ge=1)
    silhouette_sample_size: Optional[int] = Field(default=None, ge=2)


class ExtractionConfig(_FrozenModel):
    """Settings for the review item and sentiment extractor."""

    model: str = Field("gpt-4.1-mini", min_length=1)
    api_base: str = Field("https://api.openai.com/v1", min_length=1)
    timeout_seconds: float = Field(60.0, gt=0)
    max_retries: int = Field(2, ge=0)
    backoff_initial_seconds: float = Field(1.0, gt=0)
    backoff_max_seconds: float = Field(8.0, gt=0)
    retry_statuses: List[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504])
    temperature: float = Field(0.0, ge=0.0, le=2.0)
    prompt_version: str = Field("reviews-v1", min_length=1)
    max_review_chars: int = Field(4000, ge=1)

    @property
    def openai(self) -> OpenAIConfig:
        """Return the OpenAI transport settings for chat completions.

        Returns:
            OpenAIConfig: Immutable settings for the OpenAI adapter.
        """

        return OpenAIConfig(
            model=self.model,
            api_base=self.api_base,
            timeout_seconds=self.timeout_seconds,
            max_retries=self.max_retries,
            backoff_initial_seconds=self.backoff_initial_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
            retry_statuses=list(self.retry_statuses),
        )


class StorageConfig(_FrozenModel):
    """Processed review persistence settings."""

    data_dir: str = Field("data/reviews", min_length=1)


class APIConfig(_FrozenModel):
    """HTTP layer settings."""

    allowed_origins: List[str] = Field(default_factory=list)
    extraction_workers: int = Field(4, ge=1)


class AppConfig(_FrozenModel):
    """Top-level application configuration composed from config.yaml."""

    pipeline: PipelineConfig
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @model_validator(mode="after")
    def _validate_backoff(self) -> "AppConfig":
        for name, section in (("embedding", self.embedding), ("extraction", self.extraction)):
            if section.backoff_initial_seconds > section.backoff_max_seconds:
                msg = f"{name}.backoff_initial_seconds cannot exceed {name}.backoff_max_seconds"
                raise ValueError(msg)
        return self

    @staticmethod
    def default_path() -> Path:
        """Return the default location of the configuration file.

        Returns:
            Path: Absolute path to config.yaml at the repository root.
        """
        return REPO_ROOT / "config.yaml"


def _determine_env_file_path() -> Optional[Path]:
    """Return the path to the environment file if one should be loaded."""

    override = os.getenv("MENU_INSIGHTS_ENV_FILE")
    if override:
        candidate = Path(override).expanduser()
        if candidate.exists():
            return candidate
        LOGGER.warning("Configured environment file override does not exist: %s", candidate)
        return None
    if DEFAULT_ENV_FILE.exists():
        return DEFAULT_ENV_FILE
    return None


def _strip_inline_comment(value: str) -> str:
    """Remove inline comments from an environment value when unquoted."""

    comment_index = value.find("#")
    if comment_index == -1:
        return value
    return value[:comment_index].rstrip()


def _load_env_file(path: Path) -> None:
    """Populate ``os.environ`` with values read from a ``.env`` file."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.lower().startswith("export "):
                    line = line[7:].lstrip()
                if "=" not in line:
                    continue
                key, raw_value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                existing_value = os.environ.get(key)
                if existing_value is not None and existing_value.strip() != "":
                    continue
                value = raw_value.strip()
                if not value:
                    os.environ[key] = ""
                    continue
                if value[0] in {'"', "'"} and value[-1] == value[0]:
                    os.environ[key] = value[1:-1]
                    continue
                os.environ[key] = _strip_inline_comment(value)
    except OSError:
        LOGGER.warning("Unable to read environment file at %s", path)


def _apply_environment_overrides(raw_content: Dict[str, Any]) -> Dict[str, Any]:
    """Merge environment-based overrides into the raw configuration mapping.

    Args:
        raw_content: Parsed YAML configuration prior to Pydantic validation.

    Returns:
        Dict[str, Any]: Configuration mapping with environment overrides applied.

    Raises:
        ConfigurationError: If an override cannot be parsed.
    """

    env_file_path = _determine_env_file_path()
    if env_file_path is not None:
        _load_env_file(env_file_path)

    for env_name, section_name, field_name, parser in _ENV_OVERRIDES:
        raw = os.getenv(env_name)
        if raw is None or not raw.strip():
            continue
        try:
            value = parser(raw.strip())
        except ValueError as exc:
            LOGGER.error("Invalid value for %s: %r", env_name, raw)
            raise ConfigurationError(f"Invalid value for {env_name}") from exc
        section = raw_content.setdefault(section_name, {}) or {}
        raw_content[section_name] = section
        section[field_name] = value
        LOGGER.info("%s.%s overridden from environment (%s)", section_name, field_name, env_name)
    return raw_content


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read YAML content from disk.

    Args:
        path: Location of the YAML file.

    Returns:
        Dict[str, Any]: Parsed YAML content.

    Raises:
        ConfigurationError: If the file cannot be read or parsed.
    """
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        LOGGER.error("Configuration file missing at %s", path)
        raise ConfigurationError("Configuration file not found") from exc
    except yaml.YAMLError as exc:
        LOGGER.error("Invalid YAML syntax in %s", path)
        raise ConfigurationError("Invalid YAML syntax") from exc
    if not isinstance(data, dict):
        LOGGER.error("Configuration root must be a mapping: %s", path)
        raise ConfigurationError("Configuration root must be a mapping")
    return data


@lru_cache(maxsize=1)
def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from YAML.

    Args:
        path: Optional override path to the YAML file.

    Returns:
        AppConfig: Parsed configuration object.

    Raises:
        ConfigurationError: If the configuration cannot be loaded or validated.
    """
    config_path = path or AppConfig.default_path()
    raw_content = _read_yaml(config_path)
    raw_content = _apply_environment_overrides(raw_content)
    try:
        return AppConfig(**raw_content)
    except ValidationError as exc:
        LOGGER.error("Invalid configuration values: %s", exc)
        raise ConfigurationError("Configuration validation failed") from exc
