"""Pipelines package for the Guimerà indexer.

Provides the data model, error taxonomy, chunking and URL frontier.
Extraction, discovery and the progressive indexer live in their own
submodules and are imported from there.
"""

from .models import (
    SessionStatus,
    UrlStatus,
    ErrorCategory,
    SessionStats,
    UrlRecord,
    ErrorRecord,
    IndexingSession,
    ContentChunk,
    UrlOutcome,
)
from .errors import (
    IndexingError,
    FetchError,
    InsufficientContent,
    NoChunksCreated,
    EmbeddingError,
    StoreError,
    BudgetExceeded,
    InvalidTransition,
    SessionNotFound,
    SessionConflict,
    SourceConfigError,
    categorize_error,
)
from .chunker import TextChunker, stable_chunk_id
from .frontier import UrlFrontier, normalize_url

__all__ = [
    # Models
    'SessionStatus',
    'UrlStatus',
    'ErrorCategory',
    'SessionStats',
    'UrlRecord',
    'ErrorRecord',
    'IndexingSession',
    'ContentChunk',
    'UrlOutcome',

    # Errors
    'IndexingError',
    'FetchError',
    'InsufficientContent',
    'NoChunksCreated',
    'EmbeddingError',
    'StoreError',
    'BudgetExceeded',
    'InvalidTransition',
    'SessionNotFound',
    'SessionConflict',
    'SourceConfigError',
    'categorize_error',

    # Chunking and frontier
    'TextChunker',
    'stable_chunk_id',
    'UrlFrontier',
    'normalize_url',
]
