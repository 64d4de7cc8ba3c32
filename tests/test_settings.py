"""Tests for runtime configuration."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from config.settings import (
    ChunkingSettings,
    EmbeddingSettings,
    IndexerSettings,
    Settings,
    load_yaml_overlay,
)


class TestSettingsModels:
    """Test suite for settings validation."""

    def test_defaults(self):
        settings = Settings()
        assert settings.chunking.chunk_size == 1000
        assert settings.chunking.chunk_overlap == 200
        assert settings.embedding.model == "text-embedding-3-large"
        assert settings.vector_store.namespace == "main"
        assert settings.indexer.max_attempts == 3
        assert settings.qa.similarity_threshold == 0.85

    def test_overlap_must_be_smaller_than_chunk_size(self):
        with pytest.raises(ValidationError):
            ChunkingSettings(chunk_size=100, chunk_overlap=100)

    def test_unknown_embedding_provider(self):
        with pytest.raises(ValidationError):
            EmbeddingSettings(provider="cohere")

    def test_embedding_batch_size_capped(self):
        with pytest.raises(ValidationError):
            EmbeddingSettings(batch_size=500)

    def test_negative_delays_rejected(self):
        with pytest.raises(ValidationError):
            IndexerSettings(url_delay=-1)

    def test_derived_directories(self, tmp_path):
        settings = Settings(data_dir=str(tmp_path))
        assert settings.state_dir == Path(tmp_path) / "tracker"
        assert settings.reports_dir == Path(tmp_path) / "reports"


class TestFromEnv:
    """Test suite for Settings.from_env."""

    def test_environment_overrides(self, tmp_path):
        """Test that environment variables reach every section."""
        settings = Settings.from_env({
            "GUIMERA_DATA_DIR": str(tmp_path),
            "OPENAI_API_KEY": "sk-test",
            "TEST_MODE": "true",
            "PHASE1_MAX_PAGES": "20",
            "PHASE1_BATCH_SIZE": "5",
            "PHASE1_BUDGET": "1.5",
            "QA_SAMPLE_SIZE": "10",
            "GUIMERA_NAMESPACE": "phase1",
        })

        assert settings.embedding.api_key == "sk-test"
        assert settings.embedding.test_mode is True
        assert settings.indexer.max_pages == 20
        assert settings.indexer.batch_size == 5
        assert settings.indexer.cost_budget == 1.5
        assert settings.qa.sample_size == 10
        assert settings.vector_store.namespace == "phase1"
        assert settings.vector_store.path == str(Path(tmp_path) / "vectors.db")

    def test_explicit_vector_db_path(self, tmp_path):
        db = str(tmp_path / "custom.db")
        settings = Settings.from_env({"GUIMERA_VECTOR_DB": db})
        assert settings.vector_store.path == db

    def test_yaml_overlay_then_environment(self, tmp_path):
        """Test that the YAML file is applied first and env wins."""
        config = tmp_path / "guimera.yaml"
        config.write_text(
            "chunking:\n  chunk_size: 800\n  chunk_overlap: 100\n"
            "indexer:\n  batch_size: 10\n  follow_links: true\n",
            encoding="utf-8",
        )
        settings = Settings.from_env({"GUIMERA_CONFIG": str(config), "PHASE1_BATCH_SIZE": "3"})

        assert settings.chunking.chunk_size == 800
        assert settings.indexer.follow_links is True
        assert settings.indexer.batch_size == 3

    def test_missing_overlay_is_ignored(self, tmp_path):
        assert load_yaml_overlay(str(tmp_path / "absent.yaml")) == {}

    def test_overlay_must_be_mapping(self, tmp_path):
        config = tmp_path / "list.yaml"
        config.write_text("- one\n- two\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_yaml_overlay(str(config))
