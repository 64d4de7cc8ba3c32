# Guimera Embeddings Module
# Turns chunk text into vectors, remotely (OpenAI) or locally (sentence-transformers)

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import List, Optional

import aiohttp
import numpy as np
from sentence_transformers import SentenceTransformer

from pipelines.errors import EmbeddingError
from .costs import estimate_tokens

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100


@dataclass
class EmbeddingResult:
    """Vectors for a list of texts, in input order."""
    vectors: List[List[float]]
    tokens: int
    model: str


class EmbeddingClient:
    """Base embedding client.

    Subclasses implement ``_embed_batch``; batching, validation and test
    mode live here.
    """

    def __init__(self, model: str, dimensions: int, batch_size: int = MAX_BATCH_SIZE,
                 test_mode: bool = False):
        """
        Initialize embedding client

        Args:
            model: Embedding model name
            dimensions: Dimension of every returned vector
            batch_size: Texts per request (at most 100)
            test_mode: Return zero vectors without calling any service
        """
        if batch_size <= 0 or batch_size > MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.test_mode = test_mode

    async def _embed_batch(self, texts: List[str]) -> EmbeddingResult:
        raise NotImplementedError

    async def embed(self, texts: List[str]) -> EmbeddingResult:
        """Embed texts in batches sent sequentially, preserving order.

        Raises:
            EmbeddingError: on empty input text, service failure or a
                malformed response
        """
        if not texts:
            return EmbeddingResult(vectors=[], tokens=0, model=self.model)

        for i, text in enumerate(texts):
            if not text or not text.strip():
                raise EmbeddingError(f"Empty text at position {i}")

        if self.test_mode:
            tokens = sum(estimate_tokens(t) for t in texts)
            vectors = [[0.0] * self.dimensions for _ in texts]
            return EmbeddingResult(vectors=vectors, tokens=tokens, model=self.model)

        vectors: List[List[float]] = []
        tokens = 0
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            result = await self._embed_batch(batch)

            if len(result.vectors) != len(batch):
                raise EmbeddingError(
                    f"Expected {len(batch)} embeddings, got {len(result.vectors)}"
                )
            for vector in result.vectors:
                if len(vector) != self.dimensions:
                    raise EmbeddingError(
                        f"Expected dimension {self.dimensions}, got {len(vector)}"
                    )

            vectors.extend(result.vectors)
            tokens += result.tokens

        return EmbeddingResult(vectors=vectors, tokens=tokens, model=self.model)

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single search query."""
        result = await self.embed([text])
        return result.vectors[0]

    async def close(self):
        pass


class OpenAIEmbeddingClient(EmbeddingClient):
    """Embeddings through the OpenAI HTTP API."""

    def __init__(self, api_key: Optional[str], model: str = "text-embedding-3-large",
                 dimensions: int = 3072, batch_size: int = MAX_BATCH_SIZE,
                 base_url: str = "https://api.openai.com/v1", timeout: float = 30.0,
                 test_mode: bool = False):
        super().__init__(model, dimensions, batch_size, test_mode)
        if not api_key and not test_mode:
            raise ValueError("OPENAI_API_KEY is required unless test_mode is enabled")
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    'Authorization': f'Bearer {self.api_key}',
                    'Content-Type': 'application/json',
                }
            )
        return self.session

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _embed_batch(self, texts: List[str]) -> EmbeddingResult:
        session = await self._get_session()
        payload = {'model': self.model, 'input': texts, 'dimensions': self.dimensions}

        try:
            async with session.post(f"{self.base_url}/embeddings", json=payload) as response:
                if response.status == 429:
                    raise EmbeddingError("Embedding quota or rate limit exceeded (HTTP 429)")
                if response.status >= 400:
                    body = await response.text()
                    raise EmbeddingError(f"Embedding request failed: HTTP {response.status}: {body[:200]}")
                data = await response.json()
        except asyncio.TimeoutError:
            raise EmbeddingError(f"Embedding request timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise EmbeddingError(f"Embedding request failed: {e}")

        try:
            items = sorted(data['data'], key=lambda item: item.get('index', 0))
            vectors = [item['embedding'] for item in items]
        except (KeyError, TypeError) as e:
            raise EmbeddingError(f"Malformed embedding response: {e}")

        usage = data.get('usage') or {}
        tokens = usage.get('total_tokens') or sum(estimate_tokens(t) for t in texts)
        return EmbeddingResult(vectors=vectors, tokens=tokens, model=self.model)


class SentenceTransformerEmbeddingClient(EmbeddingClient):
    """Local embeddings with a sentence-transformers model."""

    def __init__(self, model: str = "all-MiniLM-L6-v2", dimensions: Optional[int] = None,
                 batch_size: int = MAX_BATCH_SIZE, test_mode: bool = False):
        self.encoder = None
        if not test_mode:
            self._load_model(model)
            dimensions = self.encoder.get_sentence_embedding_dimension()
        super().__init__(model, dimensions or 384, batch_size, test_mode)

    def _load_model(self, model_name: str):
        """Load the sentence transformer model"""
        logger.info(f"Loading embedding model: {model_name}")
        self.encoder = SentenceTransformer(model_name)
        logger.info(f"Model loaded. Embedding dimension: {self.encoder.get_sentence_embedding_dimension()}")

    async def _embed_batch(self, texts: List[str]) -> EmbeddingResult:
        loop = asyncio.get_running_loop()
        encode = partial(self.encoder.encode, texts, convert_to_numpy=True, show_progress_bar=False)
        try:
            embeddings = await loop.run_in_executor(None, encode)
        except Exception as e:
            raise EmbeddingError(f"Local embedding failed: {e}")

        vectors = [np.asarray(e, dtype=np.float32).tolist() for e in embeddings]
        tokens = sum(estimate_tokens(t) for t in texts)
        return EmbeddingResult(vectors=vectors, tokens=tokens, model=self.model)


def build_embedding_client(settings) -> EmbeddingClient:
    """Create the client configured by ``EmbeddingSettings``."""
    if settings.provider == "sentence-transformers":
        return SentenceTransformerEmbeddingClient(
            model=settings.model,
            dimensions=settings.dimensions,
            batch_size=settings.batch_size,
            test_mode=settings.test_mode,
        )
    return OpenAIEmbeddingClient(
        api_key=settings.api_key,
        model=settings.model,
        dimensions=settings.dimensions,
        batch_size=settings.batch_size,
        base_url=settings.base_url,
        timeout=settings.timeout_seconds,
        test_mode=settings.test_mode,
    )
