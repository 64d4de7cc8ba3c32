"""Progressive indexer.

Runs one indexing session for a source: discovers seed URLs, then takes
URLs off the frontier in batches and drives each through
extract -> chunk -> embed -> store, recording every step with the tracker.

Usage:
    guimera-index --source guimera_info --max-pages 20 --test-mode
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from datetime import datetime
from typing import List, Optional

from config.settings import IndexerSettings, Settings
from indexer.costs import CostTracker, calculate_cost
from indexer.embeddings import EmbeddingClient, build_embedding_client
from indexer.vector_store import SQLiteVectorStore, VectorRecord
from observability import metrics
from observability.logging import setup_logging_from_settings
from observability.reporter import IndexingReporter
from observability.tracker import IndexingTracker
from sources.loader import SourceConfig, SourceLoader
from .chunker import TextChunker
from .discovery import discover_seed_urls
from .errors import BudgetExceeded, IndexingError, categorize_error
from .extractor import ContentExtractor
from .models import (
    ErrorCategory,
    ErrorRecord,
    IndexingSession,
    SessionStatus,
    UrlOutcome,
    UrlRecord,
    UrlStatus,
)

logger = logging.getLogger(__name__)


class ProgressiveIndexer:
    """Sequential, budget-aware indexing of one source at a time."""

    def __init__(self,
                 tracker: IndexingTracker,
                 extractor: ContentExtractor,
                 chunker: TextChunker,
                 embedder: EmbeddingClient,
                 store: SQLiteVectorStore,
                 settings: Optional[IndexerSettings] = None,
                 namespace: str = "main",
                 cost_tracker: Optional[CostTracker] = None):
        self.tracker = tracker
        self.extractor = extractor
        self.chunker = chunker
        self.embedder = embedder
        self.store = store
        self.settings = settings or IndexerSettings()
        self.namespace = namespace
        self.cost_tracker = cost_tracker

    def retry_delay(self, attempt: int) -> float:
        """Backoff before the retry that follows failed attempt ``attempt``."""
        delay = self.settings.retry_delay * (2 ** (attempt - 1))
        return min(delay, self.settings.max_retry_delay)

    def start_session(self, source: SourceConfig, max_pages: Optional[int] = None,
                      cost_budget: Optional[float] = None) -> IndexingSession:
        """Register a new running session without processing anything yet."""
        max_pages = max_pages or source.max_pages or self.settings.max_pages
        budget = self.settings.cost_budget if cost_budget is None else cost_budget
        config = {
            "max_pages": max_pages,
            "batch_size": self.settings.batch_size,
            "max_attempts": self.settings.max_attempts,
            "follow_links": self.settings.follow_links,
            "skip_already_indexed": self.settings.skip_already_indexed,
            "namespace": self.namespace,
            "embedding_model": self.embedder.model,
            "test_mode": self.embedder.test_mode,
        }
        return self.tracker.start_session(source.name, config=config, cost_budget=budget)

    async def run(self, source: SourceConfig, max_pages: Optional[int] = None,
                  cost_budget: Optional[float] = None,
                  seed_urls: Optional[List[str]] = None) -> IndexingSession:
        """Start a session and run it to the end."""
        session = self.start_session(source, max_pages=max_pages, cost_budget=cost_budget)
        return await self.run_session(session.session_id, source, seed_urls=seed_urls)

    async def run_session(self, session_id: str, source: SourceConfig,
                          seed_urls: Optional[List[str]] = None) -> IndexingSession:
        """Process an already started session until done, paused, cancelled or failed.

        Unexpected errors end the session ``failed`` and are not re-raised;
        task cancellation ends it ``cancelled`` and is re-raised.
        """
        session = self.tracker.get_session(session_id)
        max_pages = session.config.get("max_pages", self.settings.max_pages)

        try:
            if seed_urls is None:
                seed_urls = await discover_seed_urls(self.extractor, source, limit=max_pages)
            self.tracker.discover_urls(session_id, seed_urls, source="seed")
            logger.info(f"Session {session_id}: {len(seed_urls)} seed URLs for {source.name}")

            status, reason = await self._process_queue(session, source)
            return self.tracker.end_session(session_id, status, reason)

        except asyncio.CancelledError:
            self.tracker.end_session(session_id, SessionStatus.CANCELLED, "task cancelled")
            raise
        except Exception as e:
            logger.exception(f"Session {session_id} crashed: {e}")
            self.tracker.record_error(ErrorRecord(
                session_id=session_id,
                category=ErrorCategory.UNKNOWN,
                message=str(e),
                error_type=type(e).__name__,
            ))
            return self.tracker.end_session(session_id, SessionStatus.FAILED, str(e))
        finally:
            await self.extractor.close()

    async def _process_queue(self, session: IndexingSession, source: SourceConfig):
        """Batch loop. Returns the final session status and stop reason."""
        session_id = session.session_id
        batch_number = 0

        while True:
            batch_number += 1
            processed = 0

            while processed < self.settings.batch_size:
                if self.tracker.is_cancel_requested(session_id):
                    logger.info(f"Session {session_id} cancelled after {session.stats.pages_processed} pages")
                    return SessionStatus.CANCELLED, "cancel requested"

                record = self.tracker.next_url(session_id)
                if record is None:
                    break

                outcome = await self.process_url(session_id, record, source)
                await self._apply_outcome(session_id, source, outcome)
                processed += 1

                if self.settings.url_delay:
                    await asyncio.sleep(self.settings.url_delay)

            logger.info(f"Session {session_id}: batch {batch_number} done ({processed} URLs, "
                        f"${session.total_cost:.4f} spent)")

            if session.cost_budget is not None and session.total_cost > session.cost_budget:
                error = BudgetExceeded(session.total_cost, session.cost_budget)
                self.tracker.record_error(ErrorRecord(
                    session_id=session_id,
                    category=error.category,
                    message=error.message,
                    error_type=type(error).__name__,
                ))
                return SessionStatus.PAUSED, error.message

            if self.tracker.queue_status(session_id)["queue_depth"] == 0:
                return SessionStatus.COMPLETED, None

            if self.settings.batch_delay:
                await asyncio.sleep(self.settings.batch_delay)

    async def process_url(self, session_id: str, record: UrlRecord,
                          source: SourceConfig) -> UrlOutcome:
        """One attempt at a URL. Never raises; failures come back in the outcome.

        The outcome status is ``QUEUED`` when the failure is retryable and
        attempts remain.
        """
        url = record.url
        start = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - start) * 1000

        try:
            if (self.settings.skip_already_indexed and record.attempts == 1
                    and await self.store.has_url(self.namespace, url)):
                return UrlOutcome(url=url, status=UrlStatus.SKIPPED, attempts=record.attempts,
                                  processing_ms=elapsed_ms())

            content = await self.extractor.extract(url, source)

            metadata = content.to_metadata(source)
            metadata.update({
                "session_id": session_id,
                "indexed_at": datetime.utcnow().isoformat() + "Z",
            })
            chunks = self.chunker.build_chunks(content.text, url, metadata)

            embed_start = time.perf_counter()
            result = await self.embedder.embed([c.text for c in chunks])
            metrics.record_embedding(result.model, result.tokens, time.perf_counter() - embed_start)

            cost = calculate_cost(result.model, result.tokens)
            self.tracker.add_cost(session_id, cost, tokens=result.tokens)
            if self.cost_tracker is not None:
                self.cost_tracker.track_embedding(result.model, result.tokens, session_id=session_id)

            vectors = [
                VectorRecord(id=chunk.metadata["chunk_id"], vector=vector,
                             metadata={**chunk.metadata, "content": chunk.text})
                for chunk, vector in zip(chunks, result.vectors)
            ]
            await self.store.replace_url(self.namespace, url, vectors)

            logger.debug(f"Indexed {url}: {len(chunks)} chunks, {result.tokens} tokens")
            return UrlOutcome(
                url=url,
                status=UrlStatus.INDEXED,
                attempts=record.attempts,
                chunks=len(chunks),
                tokens=result.tokens,
                cost=cost,
                processing_ms=elapsed_ms(),
                title=content.title,
                content_length=content.content_length,
                links=content.links,
            )

        except IndexingError as e:
            if e.category == ErrorCategory.INSUFFICIENT_CONTENT:
                status = UrlStatus.SKIPPED
            elif e.retryable and record.attempts < self.settings.max_attempts:
                status = UrlStatus.QUEUED
            else:
                status = UrlStatus.FAILED
            return UrlOutcome(url=url, status=status, attempts=record.attempts,
                              processing_ms=elapsed_ms(), error=e)
        except Exception as e:
            logger.exception(f"Unexpected error processing {url}")
            return UrlOutcome(url=url, status=UrlStatus.FAILED, attempts=record.attempts,
                              processing_ms=elapsed_ms(), error=e)

    async def _apply_outcome(self, session_id: str, source: SourceConfig, outcome: UrlOutcome) -> None:
        error_message = str(outcome.error) if outcome.error else None
        if outcome.status == UrlStatus.SKIPPED and outcome.error is None:
            error_message = "already indexed"

        if outcome.error is not None:
            self.tracker.record_error(ErrorRecord(
                session_id=session_id,
                url=outcome.url,
                category=categorize_error(outcome.error),
                message=str(outcome.error),
                error_type=type(outcome.error).__name__,
                attempt=outcome.attempts,
            ))

        self.tracker.record_url(
            session_id, outcome.url, outcome.status,
            error=error_message,
            chunks=outcome.chunks,
            tokens=outcome.tokens,
            cost=outcome.cost,
            processing_ms=outcome.processing_ms,
            title=outcome.title,
            content_length=outcome.content_length,
        )

        if outcome.status == UrlStatus.QUEUED:
            delay = self.retry_delay(outcome.attempts)
            logger.info(f"Retrying {outcome.url} in {delay:.1f}s "
                        f"(attempt {outcome.attempts}/{self.settings.max_attempts})")
            if delay:
                await asyncio.sleep(delay)
            return

        metrics.record_page(source.name, outcome.status.value, outcome.processing_ms / 1000,
                            chunks=outcome.chunks, cost=outcome.cost)

        if outcome.ok and self.settings.follow_links and outcome.links:
            self.tracker.discover_urls(session_id, outcome.links, source="page")


def build_indexer(settings: Settings, tracker: IndexingTracker,
                  store: SQLiteVectorStore,
                  embedder: Optional[EmbeddingClient] = None,
                  indexer_settings: Optional[IndexerSettings] = None,
                  cost_tracker: Optional[CostTracker] = None) -> ProgressiveIndexer:
    """Wire a ProgressiveIndexer from settings."""
    indexer_settings = indexer_settings or settings.indexer
    extractor = ContentExtractor(
        request_timeout=indexer_settings.request_timeout,
        user_agent=indexer_settings.user_agent,
        min_content_length=indexer_settings.min_content_length,
    )
    return ProgressiveIndexer(
        tracker=tracker,
        extractor=extractor,
        chunker=TextChunker.from_settings(settings.chunking),
        embedder=embedder or build_embedding_client(settings.embedding),
        store=store,
        settings=indexer_settings,
        namespace=settings.vector_store.namespace,
        cost_tracker=cost_tracker,
    )


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one progressive indexing session")
    parser.add_argument("--source", default="guimera_info", help="Source key (sources/<key>.yaml)")
    parser.add_argument("--max-pages", type=int, help="Maximum URLs to discover")
    parser.add_argument("--budget", type=float, help="Cost budget in USD")
    parser.add_argument("--batch-size", type=int, help="URLs per batch")
    parser.add_argument("--url", action="append", dest="urls", help="Seed URL (repeatable); skips discovery")
    parser.add_argument("--follow-links", action="store_true", help="Queue in-source links of indexed pages")
    parser.add_argument("--reindex", action="store_true", help="Process URLs already in the index")
    parser.add_argument("--test-mode", action="store_true", help="Zero vectors, no embedding API calls")
    parser.add_argument("--report", action="store_true", help="Export JSON/CSV/HTML reports at the end")
    return parser.parse_args(argv)


async def _run_cli(args: argparse.Namespace, settings: Settings) -> IndexingSession:
    source = SourceLoader(settings.sources_dir).load_source_config(args.source)
    if source is None:
        raise SystemExit(f"Unknown source: {args.source}")

    overrides = {}
    if args.batch_size:
        overrides["batch_size"] = args.batch_size
    if args.follow_links:
        overrides["follow_links"] = True
    if args.reindex:
        overrides["skip_already_indexed"] = False
    indexer_settings = settings.indexer.model_copy(update=overrides)

    if args.test_mode:
        settings.embedding.test_mode = True

    tracker = IndexingTracker(settings.state_dir)
    store = SQLiteVectorStore(settings.vector_store.path, settings.vector_store.preview_chars)
    await store.initialize()
    embedder = build_embedding_client(settings.embedding)

    try:
        indexer = build_indexer(settings, tracker, store, embedder=embedder,
                                indexer_settings=indexer_settings)
        session = await indexer.run(source, max_pages=args.max_pages,
                                    cost_budget=args.budget, seed_urls=args.urls)
    finally:
        await embedder.close()
        await store.close()

    reporter = IndexingReporter(tracker, settings.reports_dir)
    summary = reporter.progress_report(session.session_id)
    if args.report:
        summary["exports"] = reporter.export_all(session.session_id)
    print(json.dumps(summary, ensure_ascii=False, indent=2, default=str))
    return session


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    settings = Settings.from_env()
    setup_logging_from_settings(settings)

    session = asyncio.run(_run_cli(args, settings))
    return 0 if session.status in (SessionStatus.COMPLETED, SessionStatus.PAUSED) else 1


if __name__ == "__main__":
    sys.exit(main())
