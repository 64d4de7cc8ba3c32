"""Configuration for the Guimerà indexer.

Settings come from defaults, an optional YAML file and environment variables.
"""

from .settings import (
    Settings,
    ChunkingSettings,
    EmbeddingSettings,
    VectorStoreSettings,
    IndexerSettings,
    QASettings,
)

__all__ = [
    'Settings',
    'ChunkingSettings',
    'EmbeddingSettings',
    'VectorStoreSettings',
    'IndexerSettings',
    'QASettings',
]
