"""Unit tests for the URL frontier.

Tests cover:
- Discovery filtering, normalization and deduplication
- Queue order, retries and the max_pages cap
- Status transitions
"""

import pytest

from pipelines.errors import InvalidTransition
from pipelines.frontier import UrlFrontier, normalize_url, is_binary_url
from pipelines.models import UrlRecord, UrlStatus


class TestDiscovery:
    """Test suite for UrlFrontier.discover."""

    def test_discover_adds_and_queues(self):
        """Test that new URLs are queued in discovery order."""
        frontier = UrlFrontier(max_pages=10)
        added = frontier.discover(["https://example.org/a", "https://example.org/b"])

        assert added == 2
        assert frontier.queue_depth == 2
        assert frontier.get("https://example.org/a").status == UrlStatus.QUEUED
        assert frontier.get("https://example.org/a").discovery_source == "seed"

    def test_discover_deduplicates_after_normalization(self):
        """Test that fragments do not create distinct URLs."""
        frontier = UrlFrontier()
        added = frontier.discover([
            "https://example.org/a",
            "https://example.org/a#section",
            " https://example.org/a ",
        ])
        assert added == 1
        assert len(frontier) == 1

    def test_discover_skips_invalid_and_binary(self):
        """Test that non-http and binary URLs are ignored."""
        frontier = UrlFrontier()
        added = frontier.discover([
            "mailto:info@example.org",
            "ftp://example.org/file",
            "",
            "https://example.org/foto.JPG",
            "https://example.org/doc.pdf",
            "https://example.org/page",
        ])
        assert added == 1
        assert "https://example.org/page" in frontier

    def test_discover_respects_max_pages(self):
        """Test that discovery stops at max_pages records."""
        frontier = UrlFrontier(max_pages=3)
        added = frontier.discover([f"https://example.org/{i}" for i in range(10)])

        assert added == 3
        assert frontier.is_full
        assert frontier.discover(["https://example.org/extra"]) == 0

    def test_rediscovery_keeps_existing_record(self):
        """Test that a processed URL is not queued again."""
        frontier = UrlFrontier()
        frontier.discover(["https://example.org/a"])
        record = frontier.dequeue()
        frontier.mark_done(record.url, UrlStatus.INDEXED)

        assert frontier.discover(["https://example.org/a"], source="page") == 0
        assert frontier.get("https://example.org/a").status == UrlStatus.INDEXED


class TestQueue:
    """Test suite for dequeue, requeue and terminal transitions."""

    def test_dequeue_moves_to_processing(self):
        """Test that dequeue counts an attempt."""
        frontier = UrlFrontier()
        frontier.discover(["https://example.org/a", "https://example.org/b"])

        record = frontier.dequeue()
        assert record.url == "https://example.org/a"
        assert record.status == UrlStatus.PROCESSING
        assert record.attempts == 1
        assert frontier.in_progress == ["https://example.org/a"]
        assert frontier.queue_depth == 1

    def test_dequeue_empty_returns_none(self):
        """Test dequeue on an empty frontier."""
        assert UrlFrontier().dequeue() is None

    def test_requeue_goes_to_front(self):
        """Test that a retried URL is processed next."""
        frontier = UrlFrontier()
        frontier.discover(["https://example.org/a", "https://example.org/b"])

        record = frontier.dequeue()
        frontier.requeue(record.url, error="HTTP 503")

        again = frontier.dequeue()
        assert again.url == "https://example.org/a"
        assert again.attempts == 2
        assert again.last_error == "HTTP 503"

    def test_mark_done_requires_terminal_status(self):
        """Test that mark_done rejects non-terminal statuses."""
        frontier = UrlFrontier()
        frontier.discover(["https://example.org/a"])
        frontier.dequeue()

        with pytest.raises(InvalidTransition):
            frontier.mark_done("https://example.org/a", UrlStatus.PROCESSING)

    def test_terminal_status_is_final(self):
        """Test that an indexed URL cannot move again."""
        frontier = UrlFrontier()
        frontier.discover(["https://example.org/a"])
        frontier.dequeue()
        frontier.mark_done("https://example.org/a", UrlStatus.INDEXED)

        with pytest.raises(InvalidTransition):
            frontier.mark_done("https://example.org/a", UrlStatus.FAILED)
        with pytest.raises(InvalidTransition):
            frontier.requeue("https://example.org/a")

    def test_cannot_finish_a_url_that_was_never_processed(self):
        """Test that queued URLs must pass through processing first."""
        frontier = UrlFrontier()
        frontier.discover(["https://example.org/a"])
        with pytest.raises(InvalidTransition):
            frontier.mark_done("https://example.org/a", UrlStatus.INDEXED)

    def test_skip_queued_url(self):
        """Test that a skipped URL leaves the queue."""
        frontier = UrlFrontier()
        frontier.discover(["https://example.org/a", "https://example.org/b"])
        frontier.skip("https://example.org/a", reason="already indexed")

        assert frontier.dequeue().url == "https://example.org/b"
        assert frontier.get("https://example.org/a").last_error == "already indexed"

    def test_unknown_url_raises_key_error(self):
        """Test operations on URLs the frontier never saw."""
        with pytest.raises(KeyError):
            UrlFrontier().requeue("https://example.org/missing")

    def test_counts_cover_every_status(self):
        """Test that counts include zero entries for unused statuses."""
        frontier = UrlFrontier()
        frontier.discover(["https://example.org/a", "https://example.org/b"])
        frontier.dequeue()

        counts = frontier.counts()
        assert set(counts) == {s.value for s in UrlStatus}
        assert counts["queued"] == 1
        assert counts["processing"] == 1
        assert counts["indexed"] == 0


class TestHelpers:
    """Test suite for module helpers and rebuilding from records."""

    def test_normalize_url(self):
        assert normalize_url(" https://example.org/a#top ") == "https://example.org/a"

    def test_is_binary_url(self):
        assert is_binary_url("https://example.org/a/b.PNG")
        assert not is_binary_url("https://example.org/pdf-guide")

    def test_from_records_requeues_only_queued(self):
        """Test that a rebuilt frontier keeps order and terminal records."""
        records = [
            UrlRecord(url="https://example.org/a", status=UrlStatus.INDEXED, attempts=1),
            UrlRecord(url="https://example.org/b", status=UrlStatus.QUEUED),
            UrlRecord(url="https://example.org/c", status=UrlStatus.QUEUED),
        ]
        frontier = UrlFrontier.from_records(records, max_pages=5)

        assert len(frontier) == 3
        assert frontier.queue_depth == 2
        assert frontier.dequeue().url == "https://example.org/b"
