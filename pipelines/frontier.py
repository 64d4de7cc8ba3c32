"""URL frontier: deduplicated, ordered queue of pages to process."""

import logging
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional
from urllib.parse import urldefrag, urlparse

from .errors import InvalidTransition
from .models import UrlRecord, UrlStatus, utcnow

logger = logging.getLogger(__name__)

BINARY_EXTENSIONS = (
    '.jpg', '.jpeg', '.png', '.gif', '.webp', '.svg', '.pdf', '.zip',
    '.mp3', '.mp4', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
)


def normalize_url(url: str) -> str:
    """Strip the fragment and surrounding whitespace."""
    url, _fragment = urldefrag(url.strip())
    return url


def is_binary_url(url: str) -> bool:
    return urlparse(url).path.lower().endswith(BINARY_EXTENSIONS)


class UrlFrontier:
    """Holds every URL of one session and the order in which to process them.

    Records are never removed; status moves forward only, except
    ``processing -> queued`` when a retry is scheduled.
    """

    def __init__(self, max_pages: int = 100):
        self.max_pages = max_pages
        self._records: Dict[str, UrlRecord] = {}
        self._queue: Deque[str] = deque()

    @classmethod
    def from_records(cls, records: Iterable[UrlRecord], max_pages: int = 100) -> 'UrlFrontier':
        """Rebuild a frontier from persisted records, keeping their order."""
        frontier = cls(max_pages=max_pages)
        for record in records:
            frontier._records[record.url] = record
            if record.status == UrlStatus.QUEUED:
                frontier._queue.append(record.url)
        return frontier

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, url: str) -> bool:
        return normalize_url(url) in self._records

    @property
    def is_full(self) -> bool:
        return len(self._records) >= self.max_pages

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def in_progress(self) -> List[str]:
        return [r.url for r in self._records.values() if r.status == UrlStatus.PROCESSING]

    def discover(self, urls: Iterable[str], source: str = "seed") -> int:
        """Add new URLs in order and queue them.

        Returns:
            Number of URLs actually added
        """
        added = 0
        for raw in urls:
            if self.is_full:
                break
            if not raw:
                continue
            url = normalize_url(raw)
            parsed = urlparse(url)
            if parsed.scheme not in ('http', 'https') or not parsed.netloc:
                continue
            if is_binary_url(url) or url in self._records:
                continue

            record = UrlRecord(url=url, discovery_source=source)
            self._records[url] = record
            self._transition(record, UrlStatus.QUEUED)
            self._queue.append(url)
            added += 1

        if added:
            logger.debug(f"Discovered {added} new URLs from {source}")
        return added

    def dequeue(self) -> Optional[UrlRecord]:
        """Next queued URL in discovery order, moved to processing."""
        while self._queue:
            url = self._queue.popleft()
            record = self._records[url]
            if record.status != UrlStatus.QUEUED:
                continue
            self._transition(record, UrlStatus.PROCESSING)
            record.attempts += 1
            return record
        return None

    def requeue(self, url: str, error: Optional[str] = None) -> UrlRecord:
        """Put a URL back for another attempt, ahead of everything else."""
        record = self._require(url)
        self._transition(record, UrlStatus.QUEUED)
        record.last_error = error
        self._queue.appendleft(record.url)
        return record

    def mark_done(self, url: str, status: UrlStatus, error: Optional[str] = None) -> UrlRecord:
        """Move a URL to a terminal status."""
        if not status.is_terminal:
            raise InvalidTransition(f"{status.value} is not a terminal status")
        record = self._require(url)
        self._transition(record, status)
        if error is not None:
            record.last_error = error
        return record

    def skip(self, url: str, reason: Optional[str] = None) -> UrlRecord:
        """Skip a queued URL without processing it (already indexed, cancelled)."""
        record = self._require(url)
        self._transition(record, UrlStatus.SKIPPED)
        record.last_error = reason
        return record

    def get(self, url: str) -> Optional[UrlRecord]:
        return self._records.get(normalize_url(url))

    def records(self) -> List[UrlRecord]:
        return list(self._records.values())

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in UrlStatus}
        for record in self._records.values():
            counts[record.status.value] += 1
        return counts

    def _require(self, url: str) -> UrlRecord:
        record = self.get(url)
        if record is None:
            raise KeyError(f"Unknown URL: {url}")
        return record

    @staticmethod
    def _transition(record: UrlRecord, status: UrlStatus) -> None:
        if not record.can_transition(status):
            raise InvalidTransition(
                f"{record.url}: {record.status.value} -> {status.value} is not allowed"
            )
        record.status = status
        record.updated_at = utcnow()
