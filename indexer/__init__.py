"""Embedding, cost accounting and vector storage."""

from .costs import CostTracker, calculate_cost, estimate_tokens
from .embeddings import (
    EmbeddingClient,
    EmbeddingResult,
    OpenAIEmbeddingClient,
    SentenceTransformerEmbeddingClient,
    build_embedding_client,
)
from .vector_store import SQLiteVectorStore, VectorRecord, QueryMatch

__all__ = [
    'CostTracker',
    'calculate_cost',
    'estimate_tokens',
    'EmbeddingClient',
    'EmbeddingResult',
    'OpenAIEmbeddingClient',
    'SentenceTransformerEmbeddingClient',
    'build_embedding_client',
    'SQLiteVectorStore',
    'VectorRecord',
    'QueryMatch',
]
