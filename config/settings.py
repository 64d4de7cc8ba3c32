"""Runtime configuration for the Guimera indexer.

Settings are grouped per component and can be built from environment
variables (``Settings.from_env``) with an optional YAML overlay file.
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]
DEFAULT_DATA_DIR = BASE_DIR / "data"

USER_AGENT = "Mozilla/5.0 (compatible; GuimeraBot/1.0; +https://guimera.info)"

DEFAULT_QA_QUERIES = [
    "Guimerà història",
    "Josep Corbella",
    "educació infantil",
    "festes populars",
    "tradicions catalanes",
    "escola",
    "cultura local",
    "patrimoni",
]


class ChunkingSettings(BaseModel):
    """Text splitting parameters (characters)."""
    chunk_size: int = Field(default=1000, gt=0, description="Maximum chunk length")
    chunk_overlap: int = Field(default=200, ge=0, description="Characters shared by adjacent chunks")
    min_chunk_size: int = Field(default=50, ge=1, description="Minimum chunk length kept")

    @model_validator(mode="after")
    def _check_bounds(self) -> 'ChunkingSettings':
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if self.min_chunk_size > self.chunk_size:
            raise ValueError("min_chunk_size cannot exceed chunk_size")
        if 2 * self.min_chunk_size > self.chunk_size + self.chunk_overlap:
            raise ValueError("min_chunk_size cannot exceed half of chunk_size + chunk_overlap")
        return self


class EmbeddingSettings(BaseModel):
    """Embedding backend configuration."""
    provider: str = Field(default="openai", description="openai or sentence-transformers")
    model: str = Field(default="text-embedding-3-large")
    dimensions: int = Field(default=3072, gt=0)
    batch_size: int = Field(default=100, gt=0, le=100)
    api_key: Optional[str] = Field(default=None, repr=False)
    base_url: str = Field(default="https://api.openai.com/v1")
    timeout_seconds: float = Field(default=30.0, gt=0)
    test_mode: bool = False

    @field_validator("provider")
    @classmethod
    def _check_provider(cls, value: str) -> str:
        value = value.lower()
        if value not in ("openai", "sentence-transformers"):
            raise ValueError(f"Unsupported embedding provider: {value}")
        return value


class VectorStoreSettings(BaseModel):
    """Vector store location and default namespace."""
    path: str = Field(default=str(DEFAULT_DATA_DIR / "vectors.db"))
    namespace: str = Field(default="main")
    preview_chars: int = Field(default=1000, gt=0)


class IndexerSettings(BaseModel):
    """Progressive indexer knobs."""
    max_pages: int = Field(default=100, gt=0)
    batch_size: int = Field(default=25, gt=0)
    url_delay: float = Field(default=1.0, ge=0)
    batch_delay: float = Field(default=2.0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=2.0, ge=0)
    max_retry_delay: float = Field(default=30.0, ge=0)
    cost_budget: float = Field(default=50.0, ge=0)
    request_timeout: float = Field(default=30.0, gt=0)
    min_content_length: int = Field(default=100, ge=0)
    follow_links: bool = False
    skip_already_indexed: bool = True
    user_agent: str = USER_AGENT


class QASettings(BaseModel):
    """Quality assurance thresholds."""
    sample_size: int = Field(default=50, gt=0)
    max_sample_size: int = Field(default=200, gt=0)
    similarity_threshold: float = Field(default=0.85, ge=0, le=1)
    quality_score_min: float = Field(default=0.7, ge=0, le=1)
    search_relevance_min: float = Field(default=0.6, ge=0, le=1)
    max_chunk_length: int = Field(default=2000, gt=0)
    min_chunk_length: int = Field(default=50, ge=0)
    search_top_k: int = Field(default=10, gt=0)
    queries: List[str] = Field(default_factory=lambda: list(DEFAULT_QA_QUERIES))


class Settings(BaseModel):
    """Top-level settings container."""
    data_dir: str = Field(default=str(DEFAULT_DATA_DIR))
    sources_dir: Optional[str] = None
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None
    chunking: ChunkingSettings = Field(default_factory=ChunkingSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    vector_store: VectorStoreSettings = Field(default_factory=VectorStoreSettings)
    indexer: IndexerSettings = Field(default_factory=IndexerSettings)
    qa: QASettings = Field(default_factory=QASettings)

    @property
    def state_dir(self) -> Path:
        return Path(self.data_dir) / "tracker"

    @property
    def reports_dir(self) -> Path:
        return Path(self.data_dir) / "reports"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'Settings':
        """Create settings from environment variables.

        ``GUIMERA_CONFIG`` may point at a YAML file whose sections
        (``chunking``, ``embedding``, ...) are applied first; individual
        environment variables then override it.
        """
        env = os.environ if environ is None else environ
        data: Dict[str, Any] = {}

        config_path = env.get("GUIMERA_CONFIG")
        if config_path:
            data = load_yaml_overlay(config_path)

        def section(name: str) -> Dict[str, Any]:
            return data.setdefault(name, {})

        if "GUIMERA_DATA_DIR" in env:
            data["data_dir"] = env["GUIMERA_DATA_DIR"]
        if "GUIMERA_SOURCES_DIR" in env:
            data["sources_dir"] = env["GUIMERA_SOURCES_DIR"]
        if "GUIMERA_LOG_LEVEL" in env:
            data["log_level"] = env["GUIMERA_LOG_LEVEL"]
        if "GUIMERA_LOG_JSON" in env:
            data["log_json"] = _as_bool(env["GUIMERA_LOG_JSON"])
        if "GUIMERA_LOG_FILE" in env:
            data["log_file"] = env["GUIMERA_LOG_FILE"]

        if "OPENAI_API_KEY" in env:
            section("embedding")["api_key"] = env["OPENAI_API_KEY"]
        if "GUIMERA_EMBEDDING_PROVIDER" in env:
            section("embedding")["provider"] = env["GUIMERA_EMBEDDING_PROVIDER"]
        if "GUIMERA_EMBEDDING_MODEL" in env:
            section("embedding")["model"] = env["GUIMERA_EMBEDDING_MODEL"]
        if "GUIMERA_EMBEDDING_DIMENSIONS" in env:
            section("embedding")["dimensions"] = int(env["GUIMERA_EMBEDDING_DIMENSIONS"])
        if "TEST_MODE" in env:
            section("embedding")["test_mode"] = _as_bool(env["TEST_MODE"])

        if "GUIMERA_VECTOR_DB" in env:
            section("vector_store")["path"] = env["GUIMERA_VECTOR_DB"]
        if "GUIMERA_NAMESPACE" in env:
            section("vector_store")["namespace"] = env["GUIMERA_NAMESPACE"]

        if "PHASE1_MAX_PAGES" in env:
            section("indexer")["max_pages"] = int(env["PHASE1_MAX_PAGES"])
        if "PHASE1_BATCH_SIZE" in env:
            section("indexer")["batch_size"] = int(env["PHASE1_BATCH_SIZE"])
        if "PHASE1_BUDGET" in env:
            section("indexer")["cost_budget"] = float(env["PHASE1_BUDGET"])

        if "QA_SAMPLE_SIZE" in env:
            section("qa")["sample_size"] = int(env["QA_SAMPLE_SIZE"])

        settings = cls(**data)
        if "GUIMERA_VECTOR_DB" not in env and "path" not in data.get("vector_store", {}):
            settings.vector_store.path = str(Path(settings.data_dir) / "vectors.db")
        return settings


def _as_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_yaml_overlay(path: str) -> Dict[str, Any]:
    """Load a YAML settings overlay, returning an empty dict on absence."""
    config_file = Path(path)
    if not config_file.exists():
        logger.warning(f"Settings file not found: {config_file}")
        return {}

    with open(config_file, 'r', encoding='utf-8') as f:
        loaded = yaml.safe_load(f) or {}

    if not isinstance(loaded, dict):
        raise ValueError(f"Settings file {config_file} must contain a mapping")

    logger.info(f"Loaded settings overlay from {config_file}")
    return loaded

