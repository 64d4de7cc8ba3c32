"""Read-only report views over the indexing tracker, plus file exports."""

import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from statistics import median
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from pipelines.models import SessionStatus, UrlStatus
from .tracker import IndexingTracker

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"


def truncate(text: Optional[str], max_length: int = 60) -> str:
    if not text:
        return ""
    return text if len(text) <= max_length else text[:max_length] + "..."


def format_duration(ms: float) -> str:
    """Human readable duration: ``1h 5m``, ``3m 12s`` or ``42s``."""
    seconds = int(ms // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    if hours:
        return f"{hours}h {minutes % 60}m"
    if minutes:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class IndexingReporter:
    """Builds progress, detailed and global reports from tracker state."""

    def __init__(self, tracker: IndexingTracker, reports_dir: Optional[Path] = None):
        self.tracker = tracker
        self.reports_dir = Path(reports_dir) if reports_dir else None
        self._env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(['html', 'xml']),
        )
        self._env.filters['truncate_text'] = truncate
        self._env.filters['duration'] = format_duration

    def progress_report(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Progress of one session; the global report when there is none."""
        session_id = session_id or self.tracker.current_session_id
        if session_id is None:
            return self.global_report()

        session = self.tracker.get_session(session_id)
        stats = session.stats
        counts = self.tracker.queue_status(session_id)["counts"]
        errors_by_category = self.tracker.errors_by_category(session_id)
        duration = session.duration_seconds
        recent_errors = self.tracker.recent_errors(session_id, limit=5)

        return {
            "session": {
                "id": session.session_id,
                "source": session.source_key,
                "status": session.status.value,
                "duration_seconds": round(duration),
                "started_at": session.started_at.isoformat(),
                "ended_at": session.ended_at.isoformat() if session.ended_at else None,
                "stop_reason": session.stop_reason,
            },
            "discovery": {
                "total_discovered": stats.pages_discovered,
                "in_queue": counts[UrlStatus.QUEUED.value],
                "processing": counts[UrlStatus.PROCESSING.value],
                "processed": stats.pages_processed,
            },
            "processing": {
                "successful": stats.pages_indexed,
                "failed": stats.pages_failed,
                "skipped": stats.pages_skipped,
                "success_rate": round(stats.success_rate, 2),
            },
            "content": {
                "total_chunks": stats.chunks_created,
                "total_tokens": stats.tokens_processed,
                "avg_chunks_per_page": (round(stats.chunks_created / stats.pages_indexed, 2)
                                        if stats.pages_indexed else 0),
            },
            "performance": {
                "pages_per_minute": (round(stats.pages_processed / (duration / 60), 2)
                                     if duration > 0 else 0),
                "avg_processing_ms": round(stats.avg_processing_ms, 1),
                "error_rate": (round(stats.errors_encountered / stats.pages_processed * 100, 2)
                               if stats.pages_processed else 0),
            },
            "costs": self.tracker.cost_status(session_id),
            "issues": {
                "errors": sum(errors_by_category.values()),
                "recent_errors": [e.to_dict() for e in recent_errors],
                "errors_by_category": errors_by_category,
            },
        }

    def detailed_report(self, session_id: str) -> Dict[str, Any]:
        """Progress report plus per-URL, per-error and performance breakdowns."""
        report = self.progress_report(session_id)
        records = self.tracker.url_records(session_id)
        errors = self.tracker.errors(session_id)

        by_status: Dict[str, List[Dict[str, Any]]] = {s.value: [] for s in UrlStatus}
        for record in records:
            by_status[record.status.value].append(record.to_dict())

        errors_by_url: Dict[str, List[Dict[str, Any]]] = {}
        for error in errors:
            errors_by_url.setdefault(error.url or "", []).append(error.to_dict())

        indexed = [r for r in records if r.status == UrlStatus.INDEXED]
        chunk_counts = sorted(r.chunk_count for r in indexed)

        report.update({
            "urls": {status: items[:100] for status, items in by_status.items()},
            "error_analysis": {
                "by_category": self.tracker.errors_by_category(session_id),
                "by_url": errors_by_url,
                "timeline": [
                    {
                        "timestamp": e.timestamp.isoformat(),
                        "url": e.url,
                        "category": e.category.value,
                        "message": truncate(e.message, 100),
                    }
                    for e in errors[-20:]
                ],
            },
            "quality_metrics": {
                "avg_content_length": (round(sum(r.content_length for r in indexed) / len(indexed))
                                       if indexed else 0),
                "content_distribution": {
                    "min": chunk_counts[0] if chunk_counts else 0,
                    "max": chunk_counts[-1] if chunk_counts else 0,
                    "median": median(chunk_counts) if chunk_counts else 0,
                    "avg": round(sum(chunk_counts) / len(chunk_counts), 2) if chunk_counts else 0,
                },
            },
            "performance_analysis": {
                "slowest_pages": [
                    {"url": r.url, "processing_ms": round(r.processing_ms, 1)}
                    for r in sorted(records, key=lambda r: r.processing_ms, reverse=True)[:10]
                ],
                "costliest_pages": [
                    {"url": r.url, "cost": round(r.cost, 6), "tokens": r.token_count}
                    for r in sorted(indexed, key=lambda r: r.cost, reverse=True)[:10]
                ],
                "retried_pages": [
                    {"url": r.url, "attempts": r.attempts} for r in records if r.attempts > 1
                ],
            },
        })
        return report

    def global_report(self) -> Dict[str, Any]:
        sessions = self.tracker.list_sessions()
        completed = [s for s in sessions if s.status == SessionStatus.COMPLETED]
        return {
            "overview": {
                "total_sessions": len(sessions),
                "completed_sessions": len(completed),
                "active_sessions": sum(1 for s in sessions if s.status.is_active),
                "total_pages_indexed": sum(s.stats.pages_indexed for s in sessions),
                "total_chunks_created": sum(s.stats.chunks_created for s in sessions),
                "total_cost": round(sum(s.total_cost for s in sessions), 6),
            },
            "by_source": self.tracker.source_stats(),
            "sessions": [self._session_row(s) for s in sessions],
        }

    @staticmethod
    def _session_row(session) -> Dict[str, Any]:
        return {
            "session_id": session.session_id,
            "source": session.source_key,
            "status": session.status.value,
            "duration": format_duration(session.duration_seconds * 1000),
            "discovered": session.stats.pages_discovered,
            "indexed": session.stats.pages_indexed,
            "failed": session.stats.pages_failed,
            "skipped": session.stats.pages_skipped,
            "chunks": session.stats.chunks_created,
            "cost": round(session.total_cost, 4),
            "success_rate": round(session.stats.success_rate, 2),
        }

    # ====== exports ======

    def _output_dir(self) -> Path:
        if self.reports_dir is None:
            raise ValueError("No reports directory configured")
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        return self.reports_dir

    @staticmethod
    def _stamp() -> str:
        return datetime.utcnow().strftime('%Y-%m-%d')

    def export_json(self, session_id: Optional[str] = None) -> Path:
        report = self.detailed_report(session_id) if session_id else self.global_report()
        report["generated_at"] = datetime.utcnow().isoformat()
        name = f"report-{session_id}.json" if session_id else f"full-report-{self._stamp()}.json"
        path = self._output_dir() / name
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, ensure_ascii=False, indent=2, default=str)
        logger.info(f"Exported JSON report to {path}")
        return path

    def export_csv(self) -> Dict[str, Path]:
        """Write urls, errors and sessions tables across all sessions."""
        out_dir = self._output_dir()
        stamp = self._stamp()

        urls, errors = [], []
        for session in self.tracker.list_sessions():
            for record in self.tracker.url_records(session.session_id):
                urls.append({"session_id": session.session_id, **record.to_dict()})
            errors.extend(e.to_dict() for e in self.tracker.errors(session.session_id))
        sessions = self.global_report()["sessions"]

        paths = {}
        for name, rows in (("urls", urls), ("errors", errors), ("sessions", sessions)):
            path = out_dir / f"{name}-{stamp}.csv"
            self._write_csv(path, rows)
            paths[name] = path
        logger.info(f"Exported CSV reports to {out_dir}")
        return paths

    @staticmethod
    def _write_csv(path: Path, rows: List[Dict[str, Any]]) -> None:
        with open(path, "w", encoding="utf-8", newline="") as f:
            if not rows:
                return
            writer = csv.DictWriter(f, fieldnames=list(rows[0].keys()), extrasaction="ignore")
            writer.writeheader()
            writer.writerows(rows)

    def render_html(self, session_id: Optional[str] = None) -> str:
        template = self._env.get_template("indexing_report.html")
        return template.render(
            generated_at=datetime.utcnow().isoformat(timespec="seconds"),
            global_report=self.global_report(),
            session_report=self.detailed_report(session_id) if session_id else None,
        )

    def export_html(self, session_id: Optional[str] = None) -> Path:
        name = f"report-{session_id}.html" if session_id else f"report-{self._stamp()}.html"
        path = self._output_dir() / name
        path.write_text(self.render_html(session_id), encoding="utf-8")
        logger.info(f"Exported HTML report to {path}")
        return path

    def export_all(self, session_id: Optional[str] = None) -> Dict[str, str]:
        paths = {f"csv_{k}": str(v) for k, v in self.export_csv().items()}
        paths["json"] = str(self.export_json(session_id))
        paths["html"] = str(self.export_html(session_id))
        return paths
