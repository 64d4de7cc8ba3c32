import pytest

from config.settings import ChunkingSettings
from indexer.costs import estimate_tokens
from pipelines.chunker import TextChunker, stable_chunk_id, content_hash
from pipelines.errors import NoChunksCreated


def test_chunker_respects_size():
    """Test that every chunk stays within the configured maximum."""
    chunker = TextChunker(chunk_size=1000, chunk_overlap=200)
    chunks = chunker.split("A" * 2500)
    assert len(chunks) >= 3
    assert all(len(c) <= 1000 for c in chunks)


def test_chunker_exact_sizes_without_separators():
    """Test the split of text with no natural break points."""
    chunker = TextChunker(chunk_size=1000, chunk_overlap=200)
    chunks = chunker.split("A" * 2500)
    assert [len(c) for c in chunks] == [800, 1000, 1000, 300]


def test_chunker_with_small_text():
    """Test chunker behavior with text smaller than chunk_size."""
    chunker = TextChunker(chunk_size=1000, chunk_overlap=200, min_chunk_size=5)
    chunks = chunker.split("Short text about Guimerà")
    assert chunks == ["Short text about Guimerà"]


def test_chunker_overlap():
    """Test that each chunk starts with the tail of the previous one."""
    words = " ".join(f"paraula{i}" for i in range(400))
    chunker = TextChunker(chunk_size=300, chunk_overlap=50, min_chunk_size=10)
    chunks = chunker.split(words)

    assert len(chunks) > 1
    for previous, current in zip(chunks, chunks[1:]):
        assert current.startswith(previous[-50:])
        assert len(current) <= 300


def test_chunker_prefers_paragraph_breaks():
    """Test that paragraphs are not cut when they fit."""
    paragraphs = ["Primer paràgraf " * 5, "Segon paràgraf " * 5, "Tercer paràgraf " * 5]
    text = "\n\n".join(p.strip() for p in paragraphs)
    chunker = TextChunker(chunk_size=120, chunk_overlap=0, min_chunk_size=10)
    chunks = chunker.split(text)

    assert len(chunks) == 3
    assert chunks[0].startswith("Primer")
    assert chunks[1].startswith("Segon")
    assert chunks[2].startswith("Tercer")


def test_chunker_empty_text():
    """Test that empty or blank text raises NoChunksCreated."""
    chunker = TextChunker()
    with pytest.raises(NoChunksCreated):
        chunker.split("")
    with pytest.raises(NoChunksCreated):
        chunker.split("   \n\n  ")


def test_chunker_drops_fragments_below_minimum():
    """Test that text shorter than min_chunk_size yields no chunks."""
    chunker = TextChunker(chunk_size=1000, chunk_overlap=200, min_chunk_size=50)
    with pytest.raises(NoChunksCreated):
        chunker.split("Massa curt")


@pytest.mark.parametrize("size,overlap,minimum", [
    (0, 0, 1),
    (100, 100, 10),
    (100, -1, 10),
    (100, 10, 200),
    (200, 10, 110),
])
def test_chunker_rejects_invalid_parameters(size, overlap, minimum):
    """Test constructor validation."""
    with pytest.raises(ValueError):
        TextChunker(chunk_size=size, chunk_overlap=overlap, min_chunk_size=minimum)


def test_build_chunks_metadata():
    """Test that chunks carry page metadata and stable ids."""
    chunker = TextChunker(chunk_size=200, chunk_overlap=40, min_chunk_size=20)
    url = "https://example.org/historia"
    text = "El castell de Guimerà. " * 30
    chunks = chunker.build_chunks(text, url, {"title": "Història", "source": "example_site"})

    assert len(chunks) > 1
    for index, chunk in enumerate(chunks):
        assert chunk.chunk_index == index
        assert chunk.total_chunks == len(chunks)
        assert chunk.metadata["chunk_id"] == stable_chunk_id(url, index)
        assert chunk.metadata["url"] == url
        assert chunk.metadata["title"] == "Història"
        assert chunk.metadata["content_hash"] == content_hash(chunk.text)
        assert chunk.metadata["token_count"] == estimate_tokens(chunk.text)


def test_stable_chunk_id_is_deterministic():
    """Test that ids depend only on URL and position."""
    assert stable_chunk_id("https://example.org/a", 0) == stable_chunk_id("https://example.org/a", 0)
    assert stable_chunk_id("https://example.org/a", 0) != stable_chunk_id("https://example.org/a", 1)
    assert stable_chunk_id("https://example.org/a", 0) != stable_chunk_id("https://example.org/b", 0)


def test_from_settings():
    """Test building a chunker from ChunkingSettings."""
    chunker = TextChunker.from_settings(ChunkingSettings(chunk_size=500, chunk_overlap=50, min_chunk_size=25))
    assert chunker.chunk_size == 500
    assert chunker.chunk_overlap == 50
    assert chunker.segment_size == 450


def _rebuild(chunks, overlap):
    return chunks[0] + "".join(chunk[overlap:] for chunk in chunks[1:])


def test_chunker_keeps_short_middle_paragraph():
    """Test that a paragraph below min_chunk_size is carried, not dropped."""
    text = "A" * 185 + "\n\n" + "b" * 20 + "\n\n" + "C" * 185
    chunker = TextChunker(chunk_size=200, chunk_overlap=10, min_chunk_size=50)
    chunks = chunker.split(text)

    assert all(50 <= len(c) <= 200 for c in chunks)
    for previous, current in zip(chunks, chunks[1:]):
        assert current.startswith(previous[-10:])
    assert any("b" * 20 in c for c in chunks)
    assert _rebuild(chunks, 10) == text


def test_chunker_carries_short_leading_segment():
    """Test that a short first paragraph joins the following text."""
    text = "Hi.\n\n" + "x" * 150
    chunker = TextChunker(chunk_size=100, chunk_overlap=40, min_chunk_size=30)
    chunks = chunker.split(text)

    assert [len(c) for c in chunks] == [65, 100, 70]
    assert chunks[0].startswith("Hi.")
    assert _rebuild(chunks, 40) == text


def test_chunker_rebalances_short_trailing_segment():
    """Test that a trailing fragment is folded into the final chunks."""
    text = "\n\n".join(["a" * 59, "b" * 37, "c" * 59, "d" * 5])
    chunker = TextChunker(chunk_size=100, chunk_overlap=0, min_chunk_size=40)
    chunks = chunker.split(text)

    assert [len(c) for c in chunks] == [61, 65, 40]
    assert chunks[-1].endswith("ddddd")
    assert "".join(chunks) == text


def test_settings_reject_oversized_minimum():
    """Test that ChunkingSettings applies the same minimum bound."""
    with pytest.raises(ValueError):
        ChunkingSettings(chunk_size=200, chunk_overlap=10, min_chunk_size=110)
