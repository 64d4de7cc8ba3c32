"""Indexing session and event tracker.

The tracker is the single owner of session state: the session record, its
URL frontier and its error log. Session records are persisted in
``state_dir/indexing-state.json``; each session's URLs and errors go to
``state_dir/sessions/<id>.json``, rewritten only for the session that
changed and at most every ``flush_interval`` seconds while it runs. Every
event is appended to a daily JSONL log next to them.
"""

import json
import os
import threading
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pipelines.errors import InvalidTransition, SessionNotFound
from pipelines.frontier import UrlFrontier
from pipelines.models import (
    ErrorRecord,
    IndexingSession,
    SessionStatus,
    UrlRecord,
    UrlStatus,
    utcnow,
)
from . import metrics
from .logging import get_structured_logger

logger = get_structured_logger(__name__)

STATE_FILE = "indexing-state.json"
SESSIONS_DIR = "sessions"


@dataclass
class SessionState:
    session: IndexingSession
    frontier: UrlFrontier
    errors: List[ErrorRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "urls": [r.to_dict() for r in self.frontier.records()],
            "errors": [e.to_dict() for e in self.errors],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionState':
        session = IndexingSession.from_dict(data["session"])
        max_pages = session.config.get("max_pages", 100)
        frontier = UrlFrontier.from_records(
            (UrlRecord.from_dict(r) for r in data.get("urls", [])), max_pages=max_pages
        )
        errors = [ErrorRecord.from_dict(e) for e in data.get("errors", [])]
        return cls(session=session, frontier=frontier, errors=errors)


class IndexingTracker:
    """Records sessions, URL progress, errors and costs.

    Args:
        state_dir: Directory for the state files and event logs; ``None``
            keeps everything in memory
        flush_interval: Minimum seconds between snapshots of a running
            session; lifecycle changes are always written at once
    """

    def __init__(self, state_dir: Optional[Path] = None, flush_interval: float = 5.0):
        self.state_dir = Path(state_dir) if state_dir else None
        self.flush_interval = flush_interval
        self._sessions: Dict[str, SessionState] = {}
        self._current: Optional[str] = None
        self._lock = threading.RLock()
        self._dirty: set = set()
        self._last_flush: Dict[str, float] = {}

        if self.state_dir:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ====== sessions ======

    def start_session(self, source_key: str, config: Optional[Dict[str, Any]] = None,
                      cost_budget: Optional[float] = None) -> IndexingSession:
        config = dict(config or {})
        with self._lock:
            session = IndexingSession(
                session_id=str(uuid.uuid4()),
                source_key=source_key,
                config=config,
                cost_budget=cost_budget,
            )
            frontier = UrlFrontier(max_pages=config.get("max_pages", 100))
            self._sessions[session.session_id] = SessionState(session=session, frontier=frontier)
            self._current = session.session_id
            self._persist(session.session_id, force=True)

        metrics.sessions_active.inc()
        self._log_event("session_started", session.session_id, source=source_key, config=config)
        logger.info("Indexing session started", session_id=session.session_id, source=source_key)
        return session

    def end_session(self, session_id: str, status: SessionStatus = SessionStatus.COMPLETED,
                    reason: Optional[str] = None) -> IndexingSession:
        with self._lock:
            state = self._require(session_id)
            session = state.session
            was_active = session.status.is_active
            session.status = status
            session.ended_at = utcnow()
            if reason:
                session.stop_reason = reason
            if self._current == session_id:
                self._current = None
            self._persist(session_id, force=True)

        if was_active:
            metrics.sessions_active.dec()
        self._log_event("session_ended", session_id, status=status.value,
                        reason=reason, stats=session.stats.to_dict())
        logger.info("Indexing session ended", session_id=session_id,
                    status=status.value, indexed=session.stats.pages_indexed,
                    cost=round(session.total_cost, 4))
        return session

    def request_cancel(self, session_id: str) -> IndexingSession:
        with self._lock:
            state = self._require(session_id)
            state.session.cancel_requested = True
            self._persist(session_id, force=True)
        self._log_event("cancel_requested", session_id)
        return state.session

    def is_cancel_requested(self, session_id: str) -> bool:
        with self._lock:
            return self._require(session_id).session.cancel_requested

    def add_cost(self, session_id: str, cost: float, tokens: int = 0, api_calls: int = 1) -> float:
        """Add embedding spend to a session and return its running total."""
        with self._lock:
            session = self._require(session_id).session
            session.total_cost += cost
            session.embedding_tokens += tokens
            session.stats.api_calls += api_calls
            return session.total_cost

    # ====== URLs ======

    def discover_urls(self, session_id: str, urls: List[str], source: str = "seed") -> int:
        with self._lock:
            state = self._require(session_id)
            added = state.frontier.discover(urls, source=source)
            state.session.stats.pages_discovered += added
            self._persist(session_id)

        self._log_event("urls_discovered", session_id, source=source, count=added)
        return added

    def next_url(self, session_id: str) -> Optional[UrlRecord]:
        """Dequeue the next URL of a session, moving it to processing."""
        with self._lock:
            record = self._require(session_id).frontier.dequeue()
        if record is not None:
            self._log_event("processing_started", session_id, url=record.url, attempt=record.attempts)
        return record

    def record_url(self, session_id: str, url: str, status: UrlStatus,
                   error: Optional[str] = None, chunks: int = 0, tokens: int = 0,
                   cost: float = 0.0, processing_ms: float = 0.0, title: str = "",
                   content_length: int = 0) -> UrlRecord:
        """Move a URL to ``status`` and fold its outcome into the session stats.

        ``QUEUED`` requeues the URL for another attempt; terminal statuses
        finish it.

        Raises:
            InvalidTransition: if the URL cannot move to ``status``
        """
        with self._lock:
            state = self._require(session_id)
            frontier = state.frontier
            stats = state.session.stats

            if status == UrlStatus.QUEUED:
                record = frontier.requeue(url, error)
            elif status.is_terminal:
                record = frontier.mark_done(url, status, error)
            else:
                raise InvalidTransition(f"Cannot record {url} as {status.value}")

            record.processing_ms += processing_ms
            if status == UrlStatus.INDEXED:
                record.chunk_count = chunks
                record.token_count = tokens
                record.cost = cost
                record.title = title
                record.content_length = content_length
                stats.pages_processed += 1
                stats.pages_indexed += 1
                stats.chunks_created += chunks
                stats.tokens_processed += tokens
                stats.total_processing_ms += record.processing_ms
            elif status == UrlStatus.FAILED:
                stats.pages_processed += 1
                stats.pages_failed += 1
                stats.total_processing_ms += record.processing_ms
            elif status == UrlStatus.SKIPPED:
                record.content_length = content_length or record.content_length
                stats.pages_skipped += 1

            self._persist(session_id)

        self._log_event(f"url_{status.value}", session_id, url=url, error=error,
                        chunks=chunks, tokens=tokens, cost=cost)
        return record

    def record_error(self, record: ErrorRecord) -> None:
        with self._lock:
            state = self._require(record.session_id)
            state.errors.append(record)
            state.session.stats.errors_encountered += 1
            self._persist(record.session_id)

        metrics.record_error(record.category.value)
        self._log_event("error", record.session_id, **{
            k: v for k, v in record.to_dict().items() if k != "session_id"
        })
        logger.warning(f"{record.error_type}: {record.message}", session_id=record.session_id,
                       url=record.url, category=record.category.value, attempt=record.attempt)

    # ====== reads ======

    def get_session(self, session_id: str) -> IndexingSession:
        with self._lock:
            return self._require(session_id).session

    def get_state(self, session_id: str) -> SessionState:
        """Detached copy of a session's state, safe to read while it runs."""
        with self._lock:
            return SessionState.from_dict(self._require(session_id).to_dict())

    def list_sessions(self, source_key: Optional[str] = None) -> List[IndexingSession]:
        with self._lock:
            sessions = [s.session for s in self._sessions.values()]
        if source_key:
            sessions = [s for s in sessions if s.source_key == source_key]
        return sorted(sessions, key=lambda s: s.started_at)

    @property
    def current_session_id(self) -> Optional[str]:
        return self._current

    def active_session_for(self, source_key: str) -> Optional[IndexingSession]:
        for session in self.list_sessions(source_key):
            if session.status.is_active:
                return session
        return None

    def queue_status(self, session_id: str) -> Dict[str, Any]:
        with self._lock:
            state = self._require(session_id)
            frontier = state.frontier
            return {
                "session_id": session_id,
                "status": state.session.status.value,
                "queue_depth": frontier.queue_depth,
                "in_progress": frontier.in_progress,
                "counts": frontier.counts(),
                "cancel_requested": state.session.cancel_requested,
            }

    def recent_errors(self, session_id: str, limit: int = 5) -> List[ErrorRecord]:
        with self._lock:
            return list(self._require(session_id).errors[-limit:])

    def errors(self, session_id: str) -> List[ErrorRecord]:
        with self._lock:
            return list(self._require(session_id).errors)

    def url_records(self, session_id: str) -> List[UrlRecord]:
        with self._lock:
            return self._require(session_id).frontier.records()

    def errors_by_category(self, session_id: str) -> Dict[str, int]:
        return dict(Counter(e.category.value for e in self.errors(session_id)))

    def cost_status(self, session_id: str) -> Dict[str, Any]:
        session = self.get_session(session_id)
        return {
            "total_cost": round(session.total_cost, 6),
            "cost_budget": session.cost_budget,
            "budget_remaining": (round(session.budget_remaining, 6)
                                 if session.budget_remaining is not None else None),
            "embedding_tokens": session.embedding_tokens,
            "api_calls": session.stats.api_calls,
            "cost_per_page": (round(session.total_cost / session.stats.pages_indexed, 6)
                              if session.stats.pages_indexed else 0.0),
        }

    def source_stats(self) -> Dict[str, Dict[str, Any]]:
        """Cumulative totals per source over every known session."""
        stats: Dict[str, Dict[str, Any]] = {}
        for session in self.list_sessions():
            entry = stats.setdefault(session.source_key, {
                "sessions": 0, "pages_indexed": 0, "pages_failed": 0,
                "chunks": 0, "total_cost": 0.0, "last_update": None,
            })
            entry["sessions"] += 1
            entry["pages_indexed"] += session.stats.pages_indexed
            entry["pages_failed"] += session.stats.pages_failed
            entry["chunks"] += session.stats.chunks_created
            entry["total_cost"] += session.total_cost
            entry["last_update"] = (session.ended_at or session.started_at).isoformat()
        return stats

    # ====== persistence ======

    def _require(self, session_id: str) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise SessionNotFound(session_id)
        return state

    @property
    def state_file(self) -> Optional[Path]:
        return self.state_dir / STATE_FILE if self.state_dir else None

    def session_file(self, session_id: str) -> Optional[Path]:
        return self.state_dir / SESSIONS_DIR / f"{session_id}.json" if self.state_dir else None

    def flush(self) -> None:
        """Write every session with unsaved changes."""
        if not self.state_dir:
            return
        with self._lock:
            for session_id in list(self._dirty):
                self._write_session(session_id)
            self._write_index()

    def _persist(self, session_id: str, force: bool = False) -> None:
        if not self.state_dir:
            return
        self._dirty.add(session_id)
        last = self._last_flush.get(session_id)
        if force or last is None or time.monotonic() - last >= self.flush_interval:
            self._write_session(session_id)
            self._write_index()

    def _write_session(self, session_id: str) -> None:
        self._write_json(self.session_file(session_id), self._sessions[session_id].to_dict())
        self._dirty.discard(session_id)
        self._last_flush[session_id] = time.monotonic()

    def _write_index(self) -> None:
        self._write_json(self.state_file, {
            "current_session": self._current,
            "saved_at": datetime.utcnow().isoformat(),
            "sessions": {sid: state.session.to_dict() for sid, state in self._sessions.items()},
        })

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
        os.replace(tmp_path, path)

    def _load_state(self) -> None:
        if not self.state_file.exists():
            return
        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read tracker state {self.state_file}: {e}")
            return

        interrupted = []
        for session_id, raw_session in (data.get("sessions") or {}).items():
            state = self._load_session(session_id, raw_session)
            if state.session.status.is_active:
                state.session.status = SessionStatus.FAILED
                state.session.ended_at = state.session.ended_at or utcnow()
                state.session.stop_reason = "interrupted"
                interrupted.append(session_id)
            self._sessions[session_id] = state

        for session_id in interrupted:
            self._write_session(session_id)
        if interrupted:
            logger.warning(f"Marked {len(interrupted)} interrupted sessions as failed",
                           sessions=interrupted)
            self._write_index()
        logger.info(f"Loaded {len(self._sessions)} sessions from {self.state_dir}")

    def _load_session(self, session_id: str, raw_session: Dict[str, Any]) -> SessionState:
        """Session record from the index plus its URLs and errors, when saved."""
        raw: Dict[str, Any] = {}
        path = self.session_file(session_id)
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Could not read session snapshot {path}: {e}")
        return SessionState.from_dict({**raw, "session": raw_session})

    def _log_event(self, event: str, session_id: str, **data) -> None:
        if not self.state_dir:
            return
        now = datetime.utcnow()
        entry = {"timestamp": now.isoformat(), "event": event, "session_id": session_id, **data}
        log_file = self.state_dir / f"events-{now.strftime('%Y-%m-%d')}.jsonl"
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
