"""Scoring rules for index quality checks.

Pure functions over chunk metadata as stored in the vector store
(``content``, ``title``, ``headings``, ``language``, ``url``, ...).
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from config.settings import QASettings

LANGUAGE_CODE_RE = re.compile(r'^[a-z]{2}(-[A-Za-z]{2})?$')
SENTENCE_SPLIT_RE = re.compile(r'[.!?]+')

PRIORITY_ORDER = {'High': 0, 'Medium': 1, 'Low': 2}

STATUS_EXCELLENT = "Excellent"
STATUS_GOOD = "Good"
STATUS_ACCEPTABLE = "Acceptable"
STATUS_NEEDS_IMPROVEMENT = "Needs Improvement"

# (status, min quality, max duplicate rate (exclusive), min relevance)
STATUS_THRESHOLDS = [
    (STATUS_EXCELLENT, 0.8, 5.0, 0.7),
    (STATUS_GOOD, 0.7, 10.0, 0.6),
    (STATUS_ACCEPTABLE, 0.6, 20.0, 0.5),
]


@dataclass
class ContentAssessment:
    score: float
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


def assess_content(metadata: Dict[str, Any], settings: Optional[QASettings] = None) -> ContentAssessment:
    """Score one chunk's text and page metadata between 0 and 1.

    Starts at 1.0 and deducts per problem found:

    - text shorter than ``min_chunk_length`` (0.3) or longer than
      ``max_chunk_length`` (0.2)
    - unique-word ratio under 0.3 (0.3)
    - under 40% meaningful words, i.e. longer than 3 chars and not a number (0.2)
    - average sentence length under 10 chars (0.1)
    - missing or short title, no headings, unknown language (0.1 each)
    """
    settings = settings or QASettings()
    issues: List[str] = []
    recommendations: List[str] = []
    score = 1.0

    content = metadata.get('content') or ''

    if len(content) < settings.min_chunk_length:
        issues.append('Content too short')
        recommendations.append('Consider increasing minimum content length threshold')
        score -= 0.3

    if len(content) > settings.max_chunk_length:
        issues.append('Content too long')
        recommendations.append('Consider reducing chunk size or improving splitting')
        score -= 0.2

    words = content.split()
    if words:
        if len(set(words)) / len(words) < 0.3:
            issues.append('Highly repetitive content')
            score -= 0.3

        meaningful = [w for w in words if len(w) > 3 and not w.isdigit()]
        if len(meaningful) / len(words) < 0.4:
            issues.append('Low meaningful content ratio')
            score -= 0.2

        sentences = SENTENCE_SPLIT_RE.split(content)
        if len(content) / len(sentences) < 10:
            issues.append('Very short sentences, possibly fragmented content')
            score -= 0.1

    title = metadata.get('title') or ''
    if len(title) < 10:
        issues.append('Missing or poor title')
        score -= 0.1

    if not metadata.get('headings'):
        issues.append('No structural headings found')
        recommendations.append('Improve content extraction to capture headings')
        score -= 0.1

    language = metadata.get('language')
    if not language or language == 'unknown':
        issues.append('Language not detected')
        score -= 0.1

    return ContentAssessment(score=max(0.0, round(score, 4)), issues=issues,
                             recommendations=recommendations)


def jaccard_similarity(text1: Optional[str], text2: Optional[str]) -> float:
    """Word-set Jaccard similarity of two texts, case-insensitive."""
    words1 = set((text1 or '').lower().split())
    words2 = set((text2 or '').lower().split())
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


def find_duplicates(entries: List[Dict[str, Any]], threshold: float) -> List[Dict[str, Any]]:
    """Pairs of chunks whose text similarity reaches ``threshold``.

    ``entries`` need ``id``, ``url``, ``title``, ``source`` and ``content``.
    Once a chunk is matched as the second member of a pair it is not
    compared again. Quadratic in the number of entries.
    """
    duplicates = []
    matched = set()

    for i, first in enumerate(entries):
        if i in matched:
            continue
        for j in range(i + 1, len(entries)):
            if j in matched:
                continue
            second = entries[j]
            similarity = jaccard_similarity(first.get('content'), second.get('content'))
            if similarity >= threshold:
                duplicates.append({
                    'chunk1': {'id': first.get('id'), 'url': first.get('url'), 'title': first.get('title')},
                    'chunk2': {'id': second.get('id'), 'url': second.get('url'), 'title': second.get('title')},
                    'similarity': round(similarity, 4),
                    'type': 'same-page' if first.get('url') == second.get('url') else 'cross-page',
                    'source1': first.get('source'),
                    'source2': second.get('source'),
                })
                matched.add(j)

    return duplicates


def duplicate_rate(pair_count: int, sample_count: int) -> float:
    """Duplicate pairs per possible disjoint pair, as a percentage."""
    if sample_count == 0:
        return 0.0
    return pair_count / (sample_count / 2) * 100


def _is_iso_timestamp(value: str) -> bool:
    try:
        datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (TypeError, ValueError, AttributeError):
        return False
    return True


def validate_metadata(metadata: Dict[str, Any]) -> List[str]:
    """Problems with one chunk's stored metadata; empty when it is sound."""
    issues = []

    url = metadata.get('url')
    if not url:
        issues.append('Missing URL')
    if not metadata.get('source'):
        issues.append('Missing source')
    if not metadata.get('title'):
        issues.append('Missing title')

    chunk_index = metadata.get('chunk_index')
    if not isinstance(chunk_index, int) or isinstance(chunk_index, bool):
        issues.append('Invalid chunk_index type')

    indexed_at = metadata.get('indexed_at')
    if indexed_at and not _is_iso_timestamp(indexed_at):
        issues.append('Invalid timestamp format')

    if url:
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            issues.append('Invalid URL format')

    language = metadata.get('language')
    if language and not LANGUAGE_CODE_RE.match(language):
        issues.append('Invalid language code format')

    return issues


def relevance_score(query: str, metadata: Dict[str, Any]) -> float:
    """Keyword overlap of a query with a result's title and content.

    Each query term found in the title counts 0.7, otherwise 0.5 if found
    in the content; the total is divided by the number of terms.
    """
    terms = query.lower().split()
    if not terms:
        return 0.0

    title = (metadata.get('title') or '').lower()
    content = (metadata.get('content') or '').lower()

    score = 0.0
    for term in terms:
        if term in title:
            score += 0.7
        elif term in content:
            score += 0.5

    return min(1.0, score / len(terms))


def overall_status(avg_quality: float, dup_rate: float, avg_relevance: float) -> str:
    for status, min_quality, max_dup, min_relevance in STATUS_THRESHOLDS:
        if avg_quality >= min_quality and dup_rate < max_dup and avg_relevance >= min_relevance:
            return status
    return STATUS_NEEDS_IMPROVEMENT


def build_recommendations(stats: Dict[str, Any], settings: Optional[QASettings] = None) -> List[Dict[str, str]]:
    """Prioritised advice from summary statistics, High first.

    ``stats`` keys: avg_quality, low_quality_count, total_chunks,
    duplicate_rate, same_page_duplicates, avg_relevance,
    failed_queries, metadata_issue_count.
    """
    settings = settings or QASettings()
    recommendations = []

    def add(category: str, priority: str, issue: str, recommendation: str) -> None:
        recommendations.append({
            'category': category,
            'priority': priority,
            'issue': issue,
            'recommendation': recommendation,
        })

    if stats['total_chunks'] == 0:
        add('Coverage', 'High', 'The index has no chunks to sample',
            'Run an indexing session before validating quality')
        return recommendations

    if stats['avg_quality'] < 0.8:
        add('Content Quality', 'High',
            f"Average quality score ({stats['avg_quality']:.2f}) is below optimal threshold",
            'Review and improve content extraction logic, consider adjusting chunk size parameters')

    if stats['low_quality_count'] > stats['total_chunks'] * 0.1:
        add('Content Quality', 'Medium',
            f"{stats['low_quality_count']} chunks have quality scores below {settings.quality_score_min}",
            'Implement pre-processing filters to exclude low-quality content')

    if stats['duplicate_rate'] > 10:
        add('Deduplication', 'High',
            f"High duplicate rate ({stats['duplicate_rate']:.1f}%)",
            'Implement deduplication during indexing process to reduce storage costs and improve search quality')
    elif stats['same_page_duplicates'] > 0:
        add('Deduplication', 'Low',
            f"{stats['same_page_duplicates']} near-identical chunk pairs within the same page",
            'Review chunk overlap and boilerplate removal for the affected pages')

    if stats['avg_relevance'] < settings.search_relevance_min:
        add('Search Quality', 'High',
            f"Low search relevance score ({stats['avg_relevance']:.2f})",
            'Review embedding model choice and consider implementing hybrid search with keyword matching')

    if stats['failed_queries']:
        add('Search Quality', 'Low',
            f"{stats['failed_queries']} test queries failed to run",
            'Check embedding service credentials and vector store availability')

    if stats['metadata_issue_count'] > 0:
        add('Metadata', 'Medium',
            f"{stats['metadata_issue_count']} chunks have metadata issues",
            'Improve metadata validation and extraction during indexing')

    recommendations.sort(key=lambda r: PRIORITY_ORDER[r['priority']])
    return recommendations
