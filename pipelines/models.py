"""Shared data model for the indexing pipeline.

Sessions, URL records, chunks and error records are plain dataclasses with
``to_dict``/``from_dict`` helpers so the tracker can persist them as JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.utcnow()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace('Z', '+00:00')).replace(tzinfo=None)


class SessionStatus(str, Enum):
    """Lifecycle of an indexing session."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self is SessionStatus.RUNNING


class UrlStatus(str, Enum):
    """Lifecycle of a single URL within a session."""
    DISCOVERED = "discovered"
    QUEUED = "queued"
    PROCESSING = "processing"
    INDEXED = "indexed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (UrlStatus.INDEXED, UrlStatus.FAILED, UrlStatus.SKIPPED)


# Forward-only, except processing -> queued on retry.
ALLOWED_TRANSITIONS: Dict[UrlStatus, set] = {
    UrlStatus.DISCOVERED: {UrlStatus.QUEUED, UrlStatus.SKIPPED},
    UrlStatus.QUEUED: {UrlStatus.PROCESSING, UrlStatus.SKIPPED},
    UrlStatus.PROCESSING: {UrlStatus.INDEXED, UrlStatus.FAILED, UrlStatus.SKIPPED, UrlStatus.QUEUED},
    UrlStatus.INDEXED: set(),
    UrlStatus.FAILED: set(),
    UrlStatus.SKIPPED: set(),
}


class ErrorCategory(str, Enum):
    """Failure categories used in error records and reports."""
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    ROBOTS_BLOCKED = "robots_blocked"
    NETWORK = "network"
    PARSING = "parsing"
    INSUFFICIENT_CONTENT = "insufficient_content"
    NO_CHUNKS = "no_chunks"
    EMBEDDING_FAILURE = "embedding_failure"
    STORE_FAILURE = "store_failure"
    BUDGET_EXCEEDED = "budget_exceeded"
    UNKNOWN = "unknown"


@dataclass
class SessionStats:
    """Aggregate counters for one session."""
    pages_discovered: int = 0
    pages_processed: int = 0
    pages_indexed: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0
    chunks_created: int = 0
    tokens_processed: int = 0
    errors_encountered: int = 0
    api_calls: int = 0
    total_processing_ms: float = 0.0

    @property
    def avg_processing_ms(self) -> float:
        if not self.pages_processed:
            return 0.0
        return self.total_processing_ms / self.pages_processed

    @property
    def success_rate(self) -> float:
        """Indexed pages as a percentage of processed pages."""
        if not self.pages_processed:
            return 0.0
        return self.pages_indexed / self.pages_processed * 100

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['avg_processing_ms'] = round(self.avg_processing_ms, 2)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionStats':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class UrlRecord:
    """One page within a session. Never deleted, kept for audit."""
    url: str
    discovery_source: str = "seed"
    status: UrlStatus = UrlStatus.DISCOVERED
    attempts: int = 0
    last_error: Optional[str] = None
    processing_ms: float = 0.0
    chunk_count: int = 0
    token_count: int = 0
    cost: float = 0.0
    title: str = ""
    content_length: int = 0
    discovered_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def can_transition(self, new_status: UrlStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        data['discovered_at'] = _iso(self.discovered_at)
        data['updated_at'] = _iso(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UrlRecord':
        data = dict(data)
        data['status'] = UrlStatus(data.get('status', UrlStatus.DISCOVERED.value))
        data['discovered_at'] = _parse_dt(data.get('discovered_at')) or utcnow()
        data['updated_at'] = _parse_dt(data.get('updated_at')) or utcnow()
        return cls(**data)


@dataclass
class ErrorRecord:
    """One failure occurrence. Append-only."""
    session_id: str
    category: ErrorCategory
    message: str
    url: Optional[str] = None
    error_type: str = "IndexingError"
    attempt: int = 1
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "url": self.url,
            "category": self.category.value,
            "error_type": self.error_type,
            "message": self.message,
            "attempt": self.attempt,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ErrorRecord':
        return cls(
            session_id=data['session_id'],
            category=ErrorCategory(data.get('category', ErrorCategory.UNKNOWN.value)),
            message=data.get('message', ''),
            url=data.get('url'),
            error_type=data.get('error_type', 'IndexingError'),
            attempt=data.get('attempt', 1),
            timestamp=_parse_dt(data.get('timestamp')) or utcnow(),
        )


@dataclass
class IndexingSession:
    """One indexing run against a source."""
    session_id: str
    source_key: str
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    status: SessionStatus = SessionStatus.RUNNING
    config: Dict[str, Any] = field(default_factory=dict)
    stats: SessionStats = field(default_factory=SessionStats)
    total_cost: float = 0.0
    embedding_tokens: int = 0
    cost_budget: Optional[float] = None
    stop_reason: Optional[str] = None
    cancel_requested: bool = False

    @property
    def duration_seconds(self) -> float:
        end = self.ended_at or utcnow()
        return max(0.0, (end - self.started_at).total_seconds())

    @property
    def budget_remaining(self) -> Optional[float]:
        if self.cost_budget is None:
            return None
        return self.cost_budget - self.total_cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "source_key": self.source_key,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "status": self.status.value,
            "config": self.config,
            "stats": self.stats.to_dict(),
            "total_cost": self.total_cost,
            "embedding_tokens": self.embedding_tokens,
            "cost_budget": self.cost_budget,
            "stop_reason": self.stop_reason,
            "cancel_requested": self.cancel_requested,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IndexingSession':
        return cls(
            session_id=data['session_id'],
            source_key=data['source_key'],
            started_at=_parse_dt(data.get('started_at')) or utcnow(),
            ended_at=_parse_dt(data.get('ended_at')),
            status=SessionStatus(data.get('status', SessionStatus.RUNNING.value)),
            config=data.get('config') or {},
            stats=SessionStats.from_dict(data.get('stats') or {}),
            total_cost=data.get('total_cost', 0.0),
            embedding_tokens=data.get('embedding_tokens', 0),
            cost_budget=data.get('cost_budget'),
            stop_reason=data.get('stop_reason'),
            cancel_requested=data.get('cancel_requested', False),
        )


@dataclass
class ContentChunk:
    """A bounded slice of a page's text, ready for embedding."""
    url: str
    chunk_index: int
    total_chunks: int
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    vector: Optional[List[float]] = None


@dataclass
class UrlOutcome:
    """Typed result of processing one URL, returned instead of raising."""
    url: str
    status: UrlStatus
    attempts: int = 0
    chunks: int = 0
    tokens: int = 0
    cost: float = 0.0
    processing_ms: float = 0.0
    title: str = ""
    content_length: int = 0
    error: Optional[Exception] = None
    links: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == UrlStatus.INDEXED
