"""End-to-end tests for the progressive indexer.

Every test drives real extraction, chunking, embedding and storage; only
the network is replaced by a FakeWeb.

Tests cover:
- A full session over a small site
- Budget pauses, retries and permanent failures
- Idempotent re-runs and skipping of already indexed pages
- Cancellation and unexpected crashes
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import BASE_URL, FESTES_TEXT, HISTORY_TEXT, SCHOOL_TEXT, FakeWeb, make_page
from indexer.costs import CostTracker
from pipelines.errors import EmbeddingError, FetchError, StoreError
from pipelines.models import SessionStatus, UrlStatus
from pipelines.progressive import _parse_args
from quality import scoring


def _pages(count):
    texts = [HISTORY_TEXT, FESTES_TEXT, SCHOOL_TEXT]
    return {
        f"{BASE_URL}/pagina-{i}": make_page(f"Pàgina número {i} de Guimerà", [texts[i % 3]])
        for i in range(count)
    }


class TestFullSession:
    """Test suite for a normal indexing run."""

    @pytest.mark.asyncio
    async def test_indexes_discovered_site(self, make_indexer, web, source, store, tracker):
        """Test that every discovered page ends up chunked in the store."""
        indexer = make_indexer(web)
        session = await indexer.run(source)

        assert session.status == SessionStatus.COMPLETED
        assert session.stats.pages_discovered == 3
        assert session.stats.pages_indexed == 3
        assert session.stats.pages_failed == 0
        assert session.stats.chunks_created > 3
        assert await store.count("main") == session.stats.chunks_created
        assert tracker.queue_status(session.session_id)["queue_depth"] == 0

        counts = tracker.queue_status(session.session_id)["counts"]
        assert counts["indexed"] == 3
        assert counts["processing"] == 0

    @pytest.mark.asyncio
    async def test_stored_chunks_have_complete_metadata(self, make_indexer, web, source, store):
        """Test that stored metadata passes the QA metadata checks."""
        session = await make_indexer(web).run(source)
        records = await store.sample("main", 100)

        assert records
        for record in records:
            metadata = record.metadata
            assert scoring.validate_metadata(metadata) == []
            assert metadata["session_id"] == session.session_id
            assert metadata["source"] == "example_site"
            assert metadata["language"] == "ca"
            assert metadata["content"]
            assert record.id == metadata["chunk_id"]

    @pytest.mark.asyncio
    async def test_costs_are_accounted(self, make_indexer, web, source, tracker):
        """Test that session cost matches per-page costs and the cost tracker."""
        indexer = make_indexer(web)
        indexer.cost_tracker = CostTracker()
        session = await indexer.run(source)

        page_costs = sum(r.cost for r in tracker.url_records(session.session_id))
        assert session.total_cost > 0
        assert session.total_cost == pytest.approx(page_costs)
        assert indexer.cost_tracker.session_cost(session.session_id) == pytest.approx(session.total_cost)
        assert session.stats.api_calls == 3

    @pytest.mark.asyncio
    async def test_session_config_records_settings(self, make_indexer, web, source):
        indexer = make_indexer(web)
        session = indexer.start_session(source, max_pages=7, cost_budget=0.5)

        assert session.config["max_pages"] == 7
        assert session.config["batch_size"] == 2
        assert session.config["embedding_model"] == "text-embedding-3-large"
        assert session.cost_budget == 0.5

    @pytest.mark.asyncio
    async def test_max_pages_caps_discovery(self, make_indexer, source, store):
        pages = _pages(6)
        indexer = make_indexer(FakeWeb(pages))
        session = await indexer.run(source, max_pages=4, seed_urls=list(pages))

        assert session.stats.pages_discovered == 4
        assert session.stats.pages_indexed == 4

    @pytest.mark.asyncio
    async def test_follow_links(self, make_indexer, web, source, indexer_settings):
        """Test that links of indexed pages are queued when enabled."""
        settings = indexer_settings.model_copy(update={"follow_links": True})
        session = await make_indexer(web, settings).run(source, seed_urls=[BASE_URL])

        assert session.stats.pages_discovered == 3
        assert session.stats.pages_indexed == 3

    @pytest.mark.asyncio
    async def test_links_not_followed_by_default(self, make_indexer, web, source):
        session = await make_indexer(web).run(source, seed_urls=[BASE_URL])
        assert session.stats.pages_discovered == 1


class TestBudget:
    """Test suite for cost budget enforcement."""

    @pytest.mark.asyncio
    async def test_budget_pauses_after_current_batch(self, make_indexer, source, tracker):
        """Test that exceeding the budget stops at the end of the batch."""
        pages = _pages(5)
        indexer = make_indexer(FakeWeb(pages))
        session = await indexer.run(source, cost_budget=0.000001, seed_urls=list(pages))

        assert session.status == SessionStatus.PAUSED
        assert session.stop_reason.startswith("Cost budget exceeded")
        assert session.stats.pages_processed == 2
        assert tracker.queue_status(session.session_id)["queue_depth"] == 3
        assert tracker.errors_by_category(session.session_id) == {"budget_exceeded": 1}

    @pytest.mark.asyncio
    async def test_within_budget_completes(self, make_indexer, source):
        pages = _pages(3)
        session = await make_indexer(FakeWeb(pages)).run(source, cost_budget=1.0, seed_urls=list(pages))
        assert session.status == SessionStatus.COMPLETED


class TestFailures:
    """Test suite for retries, skips and permanent failures."""

    @pytest.mark.asyncio
    async def test_retryable_failure_stops_at_max_attempts(self, make_indexer, source, tracker):
        """Test that a URL answering 503 is fetched exactly max_attempts times."""
        url = f"{BASE_URL}/inestable"
        web = FakeWeb({url: FetchError(f"HTTP 503 fetching {url}", url=url, status_code=503)})
        session = await make_indexer(web).run(source, seed_urls=[url])

        assert web.calls.count(url) == 3
        record = tracker.get_state(session.session_id).frontier.get(url)
        assert record.status == UrlStatus.FAILED
        assert record.attempts == 3
        assert session.stats.pages_failed == 1
        assert session.stats.errors_encountered == 3
        assert session.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_then_success(self, make_indexer, source, site_pages, tracker):
        """Test that a transient failure is retried and then indexed."""
        url = f"{BASE_URL}/festes"
        indexer = make_indexer(FakeWeb({}))
        indexer.extractor.fetch = AsyncMock(side_effect=[
            FetchError(f"HTTP 502 fetching {url}", url=url, status_code=502),
            site_pages[url],
        ])
        session = await indexer.run(source, seed_urls=[url])

        record = tracker.get_state(session.session_id).frontier.get(url)
        assert record.status == UrlStatus.INDEXED
        assert record.attempts == 2
        assert session.stats.pages_indexed == 1
        assert session.stats.pages_processed == 1

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, make_indexer, source, tracker):
        url = f"{BASE_URL}/desapareguda"
        web = FakeWeb({})
        session = await make_indexer(web).run(source, seed_urls=[url])

        assert web.calls == [url]
        assert session.stats.pages_failed == 1
        assert tracker.errors_by_category(session.session_id) == {"not_found": 1}

    @pytest.mark.asyncio
    async def test_thin_page_is_skipped(self, make_indexer, source, tracker, store):
        """Test that insufficient content is a skip, not a failure."""
        url = f"{BASE_URL}/buida"
        web = FakeWeb({url: "<html><head><title>Buida</title></head><body><main>Res.</main></body></html>"})
        session = await make_indexer(web).run(source, seed_urls=[url])

        assert session.stats.pages_skipped == 1
        assert session.stats.pages_failed == 0
        assert tracker.errors_by_category(session.session_id) == {"insufficient_content": 1}
        assert await store.count("main") == 0

    @pytest.mark.asyncio
    async def test_thin_page_among_good_ones(self, make_indexer, source, tracker):
        """Test a five page site where one page has almost no body text."""
        pages = _pages(4)
        thin = f"{BASE_URL}/avis"
        pages[thin] = make_page("Avís", ["Tancat per vacances."])
        session = await make_indexer(FakeWeb(pages)).run(source, seed_urls=list(pages))

        assert session.stats.pages_indexed == 4
        assert session.stats.pages_skipped == 1
        assert tracker.get_state(session.session_id).frontier.get(thin).status == UrlStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_persistent_embedding_failure(self, make_indexer, source, tracker):
        """Test that a page whose embedding always fails is failed after max_attempts."""
        pages = _pages(3)
        failing = f"{BASE_URL}/pagina-1"
        indexer = make_indexer(FakeWeb(pages))
        embed = indexer.embedder.embed

        async def flaky_embed(texts):
            if any("Fira Medieval" in t for t in texts):
                raise EmbeddingError("quota exceeded")
            return await embed(texts)

        indexer.embedder.embed = AsyncMock(side_effect=flaky_embed)
        session = await indexer.run(source, seed_urls=list(pages))

        frontier = tracker.get_state(session.session_id).frontier
        assert frontier.get(failing).status == UrlStatus.FAILED
        assert frontier.get(failing).attempts == 3
        assert frontier.get(f"{BASE_URL}/pagina-0").status == UrlStatus.INDEXED
        assert frontier.get(f"{BASE_URL}/pagina-2").status == UrlStatus.INDEXED

        errors = tracker.errors(session.session_id)
        assert [e.attempt for e in errors] == [1, 2, 3]
        assert {e.error_type for e in errors} == {"EmbeddingError"}
        assert {e.category.value for e in errors} == {"embedding_failure"}

    @pytest.mark.asyncio
    async def test_persistent_store_failure(self, make_indexer, source, tracker, store):
        """Test that a page whose chunks cannot be stored is failed after max_attempts."""
        pages = _pages(3)
        failing = f"{BASE_URL}/pagina-2"
        indexer = make_indexer(FakeWeb(pages))
        replace_url = store.replace_url

        async def flaky_replace(namespace, url, records):
            if url == failing:
                raise StoreError("database is locked")
            return await replace_url(namespace, url, records)

        indexer.store.replace_url = AsyncMock(side_effect=flaky_replace)
        session = await indexer.run(source, seed_urls=list(pages))

        frontier = tracker.get_state(session.session_id).frontier
        assert frontier.get(failing).status == UrlStatus.FAILED
        assert frontier.get(failing).attempts == 3
        assert session.stats.pages_indexed == 2
        assert not await store.has_url("main", failing)

        errors = tracker.errors(session.session_id)
        assert [e.attempt for e in errors] == [1, 2, 3]
        assert {e.error_type for e in errors} == {"StoreError"}
        assert {e.category.value for e in errors} == {"store_failure"}

    @pytest.mark.asyncio
    async def test_failed_reindex_keeps_stored_chunks(self, make_indexer, web, source, store,
                                                      indexer_settings):
        """Test that a re-index that cannot be stored leaves the old chunks in place."""
        festes = f"{BASE_URL}/festes"
        await make_indexer(web).run(source, seed_urls=[festes])
        stored = await store.count("main")
        assert stored > 0

        settings = indexer_settings.model_copy(update={"skip_already_indexed": False})
        indexer = make_indexer(web, settings)
        indexer.store.replace_url = AsyncMock(side_effect=StoreError("disk I/O error"))
        session = await indexer.run(source, seed_urls=[festes])

        frontier = indexer.tracker.get_state(session.session_id).frontier
        assert frontier.get(festes).status == UrlStatus.FAILED
        assert await store.count("main") == stored
        assert await store.has_url("main", festes)

    @pytest.mark.asyncio
    async def test_unexpected_crash_fails_session(self, make_indexer, source, tracker):
        """Test that an error outside URL processing ends the session failed."""
        web = FakeWeb({BASE_URL: RuntimeError("disk full")})
        session = await make_indexer(web).run(source)

        assert session.status == SessionStatus.FAILED
        assert session.stop_reason == "disk full"
        assert tracker.errors_by_category(session.session_id) == {"unknown": 1}

    def test_retry_delay_backoff(self, make_indexer, web, indexer_settings):
        settings = indexer_settings.model_copy(update={"retry_delay": 2.0, "max_retry_delay": 30.0})
        indexer = make_indexer(web, settings)

        assert [indexer.retry_delay(a) for a in (1, 2, 3, 4, 5)] == [2.0, 4.0, 8.0, 16.0, 30.0]


class TestReruns:
    """Test suite for re-running sessions over the same pages."""

    @pytest.mark.asyncio
    async def test_already_indexed_pages_are_skipped(self, make_indexer, web, source, store):
        """Test that a second run does not fetch or re-embed stored pages."""
        seeds = [BASE_URL, f"{BASE_URL}/historia", f"{BASE_URL}/festes"]
        first = await make_indexer(web).run(source, seed_urls=seeds)
        stored = await store.count("main")
        calls = len(web.calls)

        second = await make_indexer(web).run(source, seed_urls=seeds)

        assert first.stats.pages_indexed == 3
        assert second.stats.pages_skipped == 3
        assert second.stats.pages_indexed == 0
        assert second.total_cost == 0
        assert len(web.calls) == calls
        assert await store.count("main") == stored

    @pytest.mark.asyncio
    async def test_reindex_is_idempotent(self, make_indexer, web, source, store, indexer_settings):
        """Test that re-indexing replaces chunks instead of duplicating them."""
        seeds = [BASE_URL, f"{BASE_URL}/historia", f"{BASE_URL}/festes"]
        settings = indexer_settings.model_copy(update={"skip_already_indexed": False})

        await make_indexer(web, settings).run(source, seed_urls=seeds)
        stored = await store.count("main")
        second = await make_indexer(web, settings).run(source, seed_urls=seeds)

        assert second.stats.pages_indexed == 3
        assert await store.count("main") == stored


class TestCancellation:
    """Test suite for cooperative and forced cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_request_stops_before_next_url(self, make_indexer, source, tracker):
        """Test that the cancel flag is honoured between URLs."""
        pages = _pages(4)
        web = FakeWeb(pages)
        indexer = make_indexer(web)
        session = indexer.start_session(source)

        async def fetch_then_cancel(url, accept=None):
            tracker.request_cancel(session.session_id)
            return await web.fetch(url)

        indexer.extractor.fetch = AsyncMock(side_effect=fetch_then_cancel)
        result = await indexer.run_session(session.session_id, source, seed_urls=list(pages))

        assert result.status == SessionStatus.CANCELLED
        assert result.stats.pages_indexed == 1
        assert tracker.queue_status(session.session_id)["queue_depth"] == 3

    @pytest.mark.asyncio
    async def test_task_cancellation_marks_session_cancelled(self, make_indexer, source, tracker):
        """Test that cancelling the asyncio task ends the session cancelled."""
        gate = asyncio.Event()

        async def blocked_fetch(url, accept=None):
            await gate.wait()
            return ""

        indexer = make_indexer(FakeWeb({}))
        indexer.extractor.fetch = AsyncMock(side_effect=blocked_fetch)
        session = indexer.start_session(source)

        task = asyncio.create_task(indexer.run_session(session.session_id, source))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert tracker.get_session(session.session_id).status == SessionStatus.CANCELLED


class TestCommandLine:
    """Test suite for the guimera-index argument parser."""

    def test_defaults(self):
        args = _parse_args([])
        assert args.source == "guimera_info"
        assert args.urls is None
        assert not args.test_mode

    def test_repeatable_urls_and_flags(self):
        args = _parse_args(["--source", "vitrall", "--url", "https://a.org", "--url", "https://b.org",
                            "--max-pages", "5", "--budget", "0.5", "--reindex", "--test-mode"])
        assert args.urls == ["https://a.org", "https://b.org"]
        assert args.max_pages == 5
        assert args.budget == 0.5
        assert args.reindex and args.test_mode
