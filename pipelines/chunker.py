"""Text chunking for the indexing pipeline.

Splits extracted page text into bounded, overlapping chunks ready for
embedding.
"""

import logging
import hashlib
from typing import List, Dict, Any, Optional

from indexer.costs import estimate_tokens

from .errors import NoChunksCreated
from .models import ContentChunk

logger = logging.getLogger(__name__)

DEFAULT_SEPARATORS = ["\n\n", "\n", ". ", " ", ""]


def stable_chunk_id(url: str, chunk_index: int) -> str:
    """Deterministic id for the ``chunk_index``-th chunk of ``url``."""
    return f"{hashlib.sha256(url.encode('utf-8')).hexdigest()}#{chunk_index}"


def content_hash(text: str) -> str:
    """Generate hash of chunk content for change detection."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


class TextChunker:
    """Recursive character splitter with exact overlap between chunks."""

    def __init__(self,
                 chunk_size: int = 1000,
                 chunk_overlap: int = 200,
                 min_chunk_size: int = 50,
                 separators: Optional[List[str]] = None):
        """Initialize chunker.

        Args:
            chunk_size: Maximum size of each chunk in characters
            chunk_overlap: Number of characters repeated at the start of the next chunk
            min_chunk_size: Minimum size for a chunk to be kept
            separators: Split points tried in order, coarsest first
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")
        if min_chunk_size > chunk_size:
            raise ValueError("min_chunk_size cannot exceed chunk_size")
        if 2 * min_chunk_size > chunk_size + chunk_overlap:
            raise ValueError("min_chunk_size cannot exceed half of chunk_size + chunk_overlap")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.min_chunk_size = min_chunk_size
        self.separators = list(separators) if separators else list(DEFAULT_SEPARATORS)

    @classmethod
    def from_settings(cls, settings) -> 'TextChunker':
        return cls(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            min_chunk_size=settings.min_chunk_size,
        )

    @property
    def segment_size(self) -> int:
        """Fresh characters each chunk may contribute beyond the overlap.

        Leaves room for a short carried segment below ``min_chunk_size``
        so carrying it into the next chunk never exceeds ``chunk_size``.
        """
        return self.chunk_size - max(self.chunk_overlap, self.min_chunk_size - 1)

    def _tail(self, chunks: List[str]) -> str:
        if not chunks or not self.chunk_overlap:
            return ""
        return chunks[-1][-self.chunk_overlap:]

    def _split_recursive(self, text: str, separators: List[str]) -> List[str]:
        """Break ``text`` into pieces no longer than ``segment_size``.

        Separators stay attached to the piece they terminate, so joining
        the pieces gives back the original text.
        """
        limit = self.segment_size
        if len(text) <= limit:
            return [text]

        separator = ""
        remaining: List[str] = []
        for i, candidate in enumerate(separators):
            if candidate == "" or candidate in text:
                separator = candidate
                remaining = separators[i + 1:]
                break

        if separator == "":
            return [text[i:i + limit] for i in range(0, len(text), limit)]

        parts = text.split(separator)
        pieces = [part + separator for part in parts[:-1]] + [parts[-1]]

        result = []
        for piece in pieces:
            if not piece:
                continue
            if len(piece) <= limit:
                result.append(piece)
            else:
                result.extend(self._split_recursive(piece, remaining))
        return result

    def _merge(self, pieces: List[str]) -> List[str]:
        """Greedily pack consecutive pieces into segments of at most ``segment_size``."""
        segments = []
        current = ""
        for piece in pieces:
            if current and len(current) + len(piece) > self.segment_size:
                segments.append(current)
                current = piece
            else:
                current += piece
        if current:
            segments.append(current)
        return segments

    def split(self, text: str) -> List[str]:
        """Split text into chunks.

        Chunk ``i > 0`` starts with the last ``chunk_overlap`` characters of
        chunk ``i - 1``. A segment too short to make a chunk on its own is
        carried into the next one, so no text is lost.

        Raises:
            NoChunksCreated: if the whole text is shorter than ``min_chunk_size``
        """
        text = (text or "").strip()
        if not text:
            raise NoChunksCreated("Cannot chunk empty text")

        segments = self._merge(self._split_recursive(text, self.separators))

        chunks: List[str] = []
        pending = ""
        for segment in segments:
            pending += segment
            tail = self._tail(chunks)
            if len(tail) + len(pending) < self.min_chunk_size:
                continue
            chunks.append(tail + pending)
            pending = ""

        if not chunks:
            raise NoChunksCreated(
                f"No chunk reached the minimum size of {self.min_chunk_size} characters"
            )
        if pending:
            self._absorb_remainder(chunks, pending)

        return chunks

    def _absorb_remainder(self, chunks: List[str], remainder: str) -> None:
        """Fold a short trailing remainder into the last chunk.

        When it does not fit, the fresh text of the last chunk plus the
        remainder is re-split so the final chunk reaches ``min_chunk_size``.
        """
        last = chunks.pop()
        previous_tail = self._tail(chunks)
        fresh = last[len(previous_tail):] + remainder
        if len(previous_tail) + len(fresh) <= self.chunk_size:
            chunks.append(previous_tail + fresh)
            return

        overflow = len(previous_tail) + len(fresh) - self.chunk_size
        cut = len(fresh) - max(overflow, self.min_chunk_size - self.chunk_overlap)
        chunks.append(previous_tail + fresh[:cut])
        chunks.append(self._tail(chunks) + fresh[cut:])

    def build_chunks(self, text: str, url: str,
                     metadata: Optional[Dict[str, Any]] = None) -> List[ContentChunk]:
        """Chunk a page's text into ``ContentChunk`` objects.

        Args:
            text: Extracted page text
            url: Page URL, used for stable chunk ids
            metadata: Page-level metadata copied onto every chunk

        Returns:
            List of ContentChunk objects
        """
        pieces = self.split(text)
        total = len(pieces)
        base_metadata = dict(metadata or {})

        chunks = []
        for index, piece in enumerate(pieces):
            chunk_metadata = {
                **base_metadata,
                'url': url,
                'chunk_id': stable_chunk_id(url, index),
                'chunk_index': index,
                'total_chunks': total,
                'content_hash': content_hash(piece),
                'token_count': estimate_tokens(piece),
            }
            chunks.append(ContentChunk(
                url=url,
                chunk_index=index,
                total_chunks=total,
                text=piece,
                metadata=chunk_metadata,
            ))

        logger.debug(f"Created {total} chunks for {url}")
        return chunks
