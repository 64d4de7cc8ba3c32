"""Quality assurance validator for the vector index.

Samples stored chunks and runs four independent checks: content quality,
near-duplicate detection, metadata validation and search relevance
against a fixed query panel. The validator only reads from the store.

Usage:
    guimera-qa --sample-size 50
"""

import argparse
import asyncio
import json
import logging
import sys
from collections import Counter
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from config.settings import QASettings, Settings
from indexer.embeddings import EmbeddingClient, build_embedding_client
from indexer.vector_store import SQLiteVectorStore, VectorRecord
from observability import metrics
from observability.logging import setup_logging_from_settings
from pipelines.errors import IndexingError
from . import scoring
from .report import QAReportWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QAReport:
    """One point-in-time audit of the index.

    Frozen, so fields cannot be reassigned; the nested lists and dicts are
    plain containers. ``to_dict`` returns a deep copy for callers that
    need to change the data.
    """

    generated_at: str
    sample_size: int
    content_quality: List[Dict[str, Any]]
    duplicates: List[Dict[str, Any]]
    metadata_issues: List[Dict[str, Any]]
    search_results: List[Dict[str, Any]]
    summary: Dict[str, Any]
    recommendations: List[Dict[str, str]]

    @property
    def overall_status(self) -> str:
        return self.summary['overview']['overall_status']

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class QualityAssuranceValidator:
    """Runs quality checks over a sample of one namespace of the vector store."""

    def __init__(self,
                 store: SQLiteVectorStore,
                 embedder: EmbeddingClient,
                 settings: Optional[QASettings] = None,
                 namespace: str = "main",
                 reports_dir: Optional[Path] = None):
        self.store = store
        self.embedder = embedder
        self.settings = settings or QASettings()
        self.namespace = namespace
        self.reports_dir = Path(reports_dir) if reports_dir else None

    async def run_complete_qa(self, sample_size: Optional[int] = None,
                              skip_duplication: bool = False,
                              save: bool = True) -> QAReport:
        """Run every check and return the consolidated report.

        Args:
            sample_size: Chunks to sample, capped at ``max_sample_size``
            skip_duplication: Skip the pairwise duplicate scan
            save: Write JSON and HTML reports when a reports dir is set

        Returns:
            QAReport with per-check results, summary and recommendations
        """
        requested = sample_size or self.settings.sample_size
        sample_size = min(requested, self.settings.max_sample_size)
        if requested > sample_size:
            logger.info(f"Sample size {requested} capped at {sample_size}")

        logger.info(f"Starting quality assurance on namespace '{self.namespace}' (sample {sample_size})")

        records = await self.store.sample(self.namespace, sample_size)
        if not records:
            logger.warning(f"No chunks found in namespace '{self.namespace}'")

        content_quality = self.verify_content_quality(records)
        duplicates = [] if skip_duplication else self.analyze_duplication(content_quality)
        metadata_issues = self.validate_metadata(records)
        search_results = await self.test_search_quality()

        summary, recommendations = self.summarize(content_quality, duplicates,
                                                  metadata_issues, search_results)

        report = QAReport(
            generated_at=datetime.utcnow().isoformat() + "Z",
            sample_size=len(records),
            content_quality=content_quality,
            duplicates=duplicates,
            metadata_issues=metadata_issues,
            search_results=search_results,
            summary=summary,
            recommendations=recommendations,
        )

        metrics.record_qa_run(report.overall_status)
        logger.info(f"Quality assurance finished: {report.overall_status} "
                    f"({len(records)} chunks, {len(duplicates)} duplicate pairs)")

        if save and self.reports_dir is not None:
            QAReportWriter(self.reports_dir).save(report)

        return report

    def verify_content_quality(self, records: List[VectorRecord]) -> List[Dict[str, Any]]:
        results = []
        for record in records:
            chunk = record.metadata
            assessment = scoring.assess_content(chunk, self.settings)
            results.append({
                'id': record.id,
                'url': chunk.get('url'),
                'source': chunk.get('source'),
                'title': chunk.get('title'),
                'chunk_index': chunk.get('chunk_index'),
                'content': chunk.get('content') or '',
                'content_length': len(chunk.get('content') or ''),
                'quality_score': assessment.score,
                'issues': assessment.issues,
                'recommendations': assessment.recommendations,
                'language': chunk.get('language'),
                'has_headings': bool(chunk.get('headings')),
                'indexed_at': chunk.get('indexed_at'),
            })

        if results:
            avg = sum(r['quality_score'] for r in results) / len(results)
            low = sum(1 for r in results if r['quality_score'] < self.settings.quality_score_min)
            logger.info(f"Content quality: average {avg:.2f}, {low}/{len(results)} below threshold")
        return results

    def analyze_duplication(self, content_quality: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        duplicates = scoring.find_duplicates(content_quality, self.settings.similarity_threshold)
        same_page = sum(1 for d in duplicates if d['type'] == 'same-page')
        logger.info(f"Duplicates: {len(duplicates)} pairs ({same_page} same-page, "
                    f"{len(duplicates) - same_page} cross-page)")
        return duplicates

    def validate_metadata(self, records: List[VectorRecord]) -> List[Dict[str, Any]]:
        issues = []
        for record in records:
            found = scoring.validate_metadata(record.metadata)
            if found:
                issues.append({'id': record.id, 'url': record.metadata.get('url'), 'issues': found})
        logger.info(f"Metadata issues: {len(issues)}/{len(records)} chunks")
        return issues

    async def test_search_quality(self) -> List[Dict[str, Any]]:
        """Run the query panel; a failing query is recorded and the rest continue."""
        results = []
        for query in self.settings.queries:
            try:
                results.append(await self.test_search_query(query))
            except IndexingError as e:
                logger.error(f"Search test failed for '{query}': {e}")
                results.append({
                    'query': query,
                    'success': False,
                    'error': str(e),
                    'avg_relevance': 0.0,
                    'results': [],
                })
        return results

    async def test_search_query(self, query: str) -> Dict[str, Any]:
        vector = await self.embedder.embed_query(query)
        matches = await self.store.query(self.namespace, vector, top_k=self.settings.search_top_k)

        scored = []
        for match in matches:
            content = match.metadata.get('content') or ''
            scored.append({
                'id': match.id,
                'score': round(match.score, 4),
                'relevance_score': scoring.relevance_score(query, match.metadata),
                'url': match.metadata.get('url'),
                'title': match.metadata.get('title'),
                'content': content[:200] + ('...' if len(content) > 200 else ''),
            })

        avg_relevance = sum(r['relevance_score'] for r in scored) / len(scored) if scored else 0.0
        logger.debug(f"Query '{query}': {len(scored)} results, relevance {avg_relevance:.2f}")
        return {
            'query': query,
            'success': True,
            'avg_relevance': avg_relevance,
            'results': scored[:5],
        }

    def summarize(self, content_quality, duplicates, metadata_issues, search_results):
        """Summary block and recommendations for a finished run."""
        total = len(content_quality)
        avg_quality = sum(r['quality_score'] for r in content_quality) / total if total else 0.0
        low_quality = sum(1 for r in content_quality if r['quality_score'] < self.settings.quality_score_min)

        issue_counts = Counter(issue for r in content_quality for issue in r['issues'])

        dup_rate = scoring.duplicate_rate(len(duplicates), total)
        same_page = sum(1 for d in duplicates if d['type'] == 'same-page')

        successful = [r for r in search_results if r['success']]
        avg_relevance = (sum(r['avg_relevance'] for r in successful) / len(successful)
                         if successful else 0.0)

        status = scoring.overall_status(avg_quality, dup_rate, avg_relevance)
        recommendations = scoring.build_recommendations({
            'avg_quality': avg_quality,
            'low_quality_count': low_quality,
            'total_chunks': total,
            'duplicate_rate': dup_rate,
            'same_page_duplicates': same_page,
            'avg_relevance': avg_relevance,
            'failed_queries': len(search_results) - len(successful),
            'metadata_issue_count': len(metadata_issues),
        }, self.settings)

        summary = {
            'overview': {
                'total_chunks_analyzed': total,
                'analysis_date': datetime.utcnow().isoformat() + "Z",
                'overall_status': status,
            },
            'content_quality': {
                'average_score': round(avg_quality, 4),
                'low_quality_count': low_quality,
                'common_issues': [
                    {'issue': issue, 'count': count}
                    for issue, count in issue_counts.most_common(5)
                ],
            },
            'deduplication': {
                'duplicate_pairs': len(duplicates),
                'duplicate_rate': round(dup_rate, 2),
                'same_page_duplicates': same_page,
                'cross_page_duplicates': len(duplicates) - same_page,
            },
            'metadata': {
                'issue_count': len(metadata_issues),
                'issue_rate': round(len(metadata_issues) / total * 100, 2) if total else 0.0,
            },
            'search_quality': {
                'success_rate': (round(len(successful) / len(search_results) * 100, 2)
                                 if search_results else 0.0),
                'average_relevance': round(avg_relevance, 4),
                'queries_tested': len(search_results),
            },
            'thresholds': self.settings.model_dump(exclude={'queries'}),
        }
        return summary, recommendations


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate the quality of the vector index")
    parser.add_argument("--sample-size", type=int, help="Chunks to sample")
    parser.add_argument("--namespace", help="Vector store namespace")
    parser.add_argument("--skip-duplication", action="store_true", help="Skip duplicate detection")
    parser.add_argument("--test-mode", action="store_true", help="Zero vectors, no embedding API calls")
    parser.add_argument("--no-save", action="store_true", help="Do not write report files")
    return parser.parse_args(argv)


async def _run_cli(args: argparse.Namespace, settings: Settings) -> QAReport:
    if args.test_mode:
        settings.embedding.test_mode = True

    store = SQLiteVectorStore(settings.vector_store.path, settings.vector_store.preview_chars)
    await store.initialize()
    embedder = build_embedding_client(settings.embedding)
    try:
        validator = QualityAssuranceValidator(
            store, embedder, settings.qa,
            namespace=args.namespace or settings.vector_store.namespace,
            reports_dir=settings.reports_dir,
        )
        return await validator.run_complete_qa(
            sample_size=args.sample_size,
            skip_duplication=args.skip_duplication,
            save=not args.no_save,
        )
    finally:
        await embedder.close()
        await store.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    settings = Settings.from_env()
    setup_logging_from_settings(settings)

    report = asyncio.run(_run_cli(args, settings))
    print(json.dumps({'summary': report.summary, 'recommendations': report.recommendations},
                     ensure_ascii=False, indent=2))
    return 0 if report.overall_status != scoring.STATUS_NEEDS_IMPROVEMENT else 1


if __name__ == "__main__":
    sys.exit(main())
