# conftest.py for the indexing pipeline tests
# Provides a fake embedding client, a fake web and common fixtures

import hashlib
from typing import Dict, List, Union
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from config.settings import IndexerSettings
from indexer.costs import estimate_tokens
from indexer.embeddings import EmbeddingClient, EmbeddingResult
from indexer.vector_store import SQLiteVectorStore
from observability.tracker import IndexingTracker
from pipelines.chunker import TextChunker
from pipelines.errors import FetchError
from pipelines.extractor import ContentExtractor, HTML_CONTENT_TYPES
from pipelines.progressive import ProgressiveIndexer
from sources.loader import SourceConfig

BASE_URL = "https://example.org"

HISTORY_TEXT = (
    "Guimerà és un poble medieval de la comarca de l'Urgell, situat a la vall del riu Corb. "
    "El nucli antic conserva els carrers estrets, els porxos i les restes del castell. "
    "L'església de Santa Maria domina el turó des del segle catorze i encara avui "
    "és el punt de trobada de les festes populars del municipi."
)

FESTES_TEXT = (
    "La Fira Medieval se celebra cada any el primer cap de setmana d'agost. "
    "Durant tres dies els carrers s'omplen de parades d'artesania, espectacles de carrer "
    "i tallers per a infants. Les tradicions catalanes com els castells i les sardanes "
    "acompanyen la festa major, que reuneix veïns i visitants de tota la comarca."
)

SCHOOL_TEXT = (
    "L'escola rural de Guimerà acull alumnes d'educació infantil i primària dels pobles "
    "veïns. El projecte educatiu treballa el patrimoni i la cultura local amb sortides "
    "al castell, entrevistes a la gent gran i un hort escolar on els infants aprenen "
    "els cicles de les estacions."
)


def make_page(title: str, paragraphs: List[str], links: List[str] = (), lang: str = "ca") -> str:
    """Minimal HTML page with navigation links, a main block and a footer."""
    nav = "".join(f'<a href="{href}">{href}</a>' for href in links)
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    return (
        f'<html lang="{lang}"><head><title>{title}</title>'
        f'<meta name="description" content="{title}">'
        f'<meta name="author" content="Ajuntament de Guimerà"></head>'
        f"<body><nav>{nav}</nav><main><h1>{title}</h1>{body}</main>"
        f"<footer>Peu de pàgina i avís legal</footer></body></html>"
    )


def bag_of_words_vector(text: str, dimensions: int) -> List[float]:
    """Deterministic vector: word counts hashed into ``dimensions`` buckets."""
    vector = [0.0] * dimensions
    for word in text.lower().split():
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dimensions
        vector[bucket] += 1.0
    return vector


class FakeEmbeddingClient(EmbeddingClient):
    """Embedding client that never leaves the process.

    Priced as ``text-embedding-3-large`` so sessions accumulate real costs.
    """

    def __init__(self, dimensions: int = 16, batch_size: int = 100):
        super().__init__(model="text-embedding-3-large", dimensions=dimensions,
                         batch_size=batch_size)
        self.batches: List[List[str]] = []

    async def _embed_batch(self, texts: List[str]) -> EmbeddingResult:
        self.batches.append(list(texts))
        vectors = [bag_of_words_vector(t, self.dimensions) for t in texts]
        return EmbeddingResult(vectors=vectors, tokens=sum(estimate_tokens(t) for t in texts),
                               model=self.model)


class FakeWeb:
    """Serves canned pages keyed by URL; unknown URLs answer 404.

    A value that is an exception is raised instead of returned.
    """

    def __init__(self, pages: Dict[str, Union[str, Exception]]):
        self.pages = pages
        self.calls: List[str] = []

    async def fetch(self, url: str, accept: tuple = HTML_CONTENT_TYPES) -> str:
        self.calls.append(url)
        page = self.pages.get(url)
        if page is None:
            raise FetchError(f"HTTP 404 fetching {url}", url=url, status_code=404)
        if isinstance(page, Exception):
            raise page
        return page


def make_extractor(web: FakeWeb) -> ContentExtractor:
    """Real extractor whose network access goes through ``web``."""
    extractor = ContentExtractor(request_timeout=5, min_content_length=100)
    extractor.fetch = AsyncMock(side_effect=web.fetch)
    return extractor


@pytest.fixture
def source():
    """A small main_site source rooted at example.org."""
    return SourceConfig(
        name="example_site",
        domain="example.org",
        base_url=BASE_URL,
        source_type="main_site",
        priority=1,
        exclude=["/wp-admin", "/feed"],
        max_pages=20,
    )


@pytest.fixture
def site_pages():
    """Three-page site: the home page links to two articles."""
    return {
        BASE_URL: make_page("Benvinguts a Guimerà", [HISTORY_TEXT],
                            links=["/historia", "/festes", "/wp-admin/", "mailto:info@example.org"]),
        f"{BASE_URL}/historia": make_page("Història de Guimerà", [HISTORY_TEXT, SCHOOL_TEXT]),
        f"{BASE_URL}/festes": make_page("Festes populars de Guimerà", [FESTES_TEXT]),
    }


@pytest.fixture
def web(site_pages):
    return FakeWeb(site_pages)


@pytest.fixture
def embedder():
    return FakeEmbeddingClient()


@pytest.fixture
def chunker():
    return TextChunker(chunk_size=200, chunk_overlap=40, min_chunk_size=20)


@pytest.fixture
def indexer_settings():
    """Indexer settings without any politeness or retry delays."""
    return IndexerSettings(
        batch_size=2,
        url_delay=0,
        batch_delay=0,
        retry_delay=0,
        max_retry_delay=0,
        max_attempts=3,
        cost_budget=10.0,
    )


@pytest.fixture
def tracker(tmp_path):
    return IndexingTracker(tmp_path / "tracker")


@pytest_asyncio.fixture
async def store(tmp_path):
    """Initialized vector store in a temporary SQLite file."""
    vector_store = SQLiteVectorStore(str(tmp_path / "vectors.db"), preview_chars=1000)
    await vector_store.initialize()
    yield vector_store
    await vector_store.close()


@pytest.fixture
def make_indexer(tracker, chunker, embedder, store, indexer_settings):
    """Factory for indexers that fetch through a FakeWeb."""
    def factory(web: FakeWeb, settings: IndexerSettings = None) -> ProgressiveIndexer:
        return ProgressiveIndexer(
            tracker=tracker,
            extractor=make_extractor(web),
            chunker=chunker,
            embedder=embedder,
            store=store,
            settings=settings or indexer_settings,
        )
    return factory
