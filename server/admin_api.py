"""Admin HTTP API for indexing sessions, reports, QA and costs.

Usage:
    guimera-admin --host 127.0.0.1 --port 8001
"""

import argparse
import logging
import math
from typing import Any, Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field, model_validator

from config.settings import Settings
from indexer.costs import CostTracker, estimate, pricing_info
from indexer.embeddings import EmbeddingClient, build_embedding_client
from indexer.vector_store import SQLiteVectorStore
from observability.logging import setup_logging_from_settings
from observability.metrics import setup_prometheus_metrics, render_metrics, get_metrics_summary
from observability.reporter import IndexingReporter
from observability.tracker import IndexingTracker
from pipelines.errors import IndexingError, SessionConflict, SessionNotFound, SourceConfigError
from pipelines.progressive import ProgressiveIndexer, build_indexer
from quality.validator import QualityAssuranceValidator
from sources.loader import SourceLoader
from .jobs import IndexingJobManager

logger = logging.getLogger(__name__)

# Rough throughput of the sequential indexer, politeness delays included.
PAGES_PER_MINUTE = 4


class IndexingRequest(BaseModel):
    source: str = "guimera_info"
    max_pages: int = Field(default=100, gt=0, le=5000)
    cost_budget: Optional[float] = Field(default=None, ge=0)
    test_mode: bool = False


class IndexingResponse(BaseModel):
    session_id: str
    estimated_duration: str
    status: str = "running"


class QARequest(BaseModel):
    sample_size: int = Field(default=50, gt=0)
    skip_duplication: bool = False


class ExportRequest(BaseModel):
    session_id: Optional[str] = None


class CostEstimateRequest(BaseModel):
    model: str = "text-embedding-3-large"
    tokens: Optional[int] = Field(default=None, ge=0)
    text: Optional[str] = None

    @model_validator(mode='after')
    def _tokens_or_text(self) -> 'CostEstimateRequest':
        if self.tokens is None and not self.text:
            raise ValueError("Either tokens or text must be provided")
        return self


class BudgetUpdateRequest(BaseModel):
    daily_limit: Optional[float] = Field(default=None, gt=0)
    monthly_limit: Optional[float] = Field(default=None, gt=0)


def estimated_duration(max_pages: int) -> str:
    return f"{math.ceil(max_pages / PAGES_PER_MINUTE)} minutes"


def create_app(settings: Optional[Settings] = None,
               tracker: Optional[IndexingTracker] = None,
               store: Optional[SQLiteVectorStore] = None,
               embedder: Optional[EmbeddingClient] = None,
               source_loader: Optional[SourceLoader] = None,
               cost_tracker: Optional[CostTracker] = None,
               indexer_factory: Optional[Callable[[Dict[str, Any]], ProgressiveIndexer]] = None) -> FastAPI:
    """Build the admin app. Every collaborator can be injected; defaults come from settings."""
    settings = settings or Settings.from_env()
    tracker = tracker or IndexingTracker(settings.state_dir)
    store = store or SQLiteVectorStore(settings.vector_store.path, settings.vector_store.preview_chars)
    source_loader = source_loader or SourceLoader(settings.sources_dir)
    cost_tracker = cost_tracker or CostTracker()
    reporter = IndexingReporter(tracker, settings.reports_dir)

    # Keyed by test_mode; an injected client serves both.
    embedders: Dict[bool, EmbeddingClient] = {}
    if embedder is not None:
        embedders[False] = embedders[True] = embedder

    def get_embedder(test_mode: bool = False) -> EmbeddingClient:
        """Shared embedding client, built on first use."""
        test_mode = test_mode or settings.embedding.test_mode
        if test_mode not in embedders:
            config = settings.embedding.model_copy(update={"test_mode": test_mode})
            embedders[test_mode] = build_embedding_client(config)
        return embedders[test_mode]

    def default_indexer_factory(parameters: Dict[str, Any]) -> ProgressiveIndexer:
        return build_indexer(settings, tracker, store,
                             embedder=get_embedder(parameters.get("test_mode", False)),
                             cost_tracker=cost_tracker)

    job_manager = IndexingJobManager(tracker, indexer_factory or default_indexer_factory)

    app = FastAPI(title="Guimerà Indexing Admin API", version="1.0.0")
    app.state.settings = settings
    app.state.tracker = tracker
    app.state.store = store
    app.state.job_manager = job_manager
    app.state.cost_tracker = cost_tracker
    setup_prometheus_metrics(app)

    @app.on_event("startup")
    async def startup_event():
        await store.initialize()
        logger.info(f"Admin API ready (vector store {settings.vector_store.path})")

    @app.on_event("shutdown")
    async def shutdown_event():
        await job_manager.shutdown()
        tracker.flush()
        for client in {id(c): c for c in embedders.values()}.values():
            await client.close()
        await store.close()
        logger.info("Admin API shutdown complete")

    @app.get("/health")
    def health():
        active = sum(1 for s in tracker.list_sessions() if s.status.is_active)
        return {"status": "ok", "active_sessions": active}

    @app.get("/metrics")
    def metrics():
        return Response(content=render_metrics(), media_type=CONTENT_TYPE_LATEST)

    # ====== indexing ======

    @app.post("/admin/indexing/sessions", response_model=IndexingResponse, status_code=202)
    async def start_indexing(req: IndexingRequest):
        try:
            source = source_loader.load_source_config(req.source)
        except SourceConfigError as e:
            raise HTTPException(status_code=422, detail=str(e))
        if source is None:
            raise HTTPException(status_code=404, detail=f"Unknown source: {req.source}")

        try:
            session = await job_manager.start_indexing(
                source, max_pages=req.max_pages, cost_budget=req.cost_budget,
                test_mode=req.test_mode,
            )
        except SessionConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=503, detail=f"Embedding service not configured: {e}")

        return IndexingResponse(session_id=session.session_id,
                                estimated_duration=estimated_duration(req.max_pages))

    @app.get("/admin/indexing/status")
    def indexing_status(session_id: Optional[str] = None):
        session_id = session_id or tracker.current_session_id
        if session_id is None:
            return {"status": "idle", "overview": reporter.global_report()["overview"]}
        try:
            queue = tracker.queue_status(session_id)
            progress = reporter.progress_report(session_id)
        except SessionNotFound:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        return {
            **queue,
            "costs": progress["costs"],
            "recent_errors": progress["issues"]["recent_errors"],
            "progress": progress,
        }

    @app.get("/admin/indexing/sessions")
    def list_sessions(source: Optional[str] = None):
        return {"sessions": [s.to_dict() for s in tracker.list_sessions(source)],
                "jobs": [j.to_dict() for j in job_manager.list_jobs()]}

    @app.get("/admin/indexing/sessions/{session_id}/report")
    def session_report(session_id: str, detailed: bool = False):
        try:
            if detailed:
                return reporter.detailed_report(session_id)
            return reporter.progress_report(session_id)
        except SessionNotFound:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")

    @app.post("/admin/indexing/sessions/{session_id}/cancel")
    async def cancel_session(session_id: str, force: bool = False):
        try:
            session = await job_manager.cancel(session_id, force=force)
        except SessionNotFound:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        return {"session_id": session_id, "status": session.status.value, "cancel_requested": True}

    @app.get("/admin/indexing/report")
    def global_report():
        return reporter.global_report()

    @app.post("/admin/indexing/report/export")
    def export_report(req: ExportRequest):
        try:
            paths = reporter.export_all(req.session_id)
        except SessionNotFound:
            raise HTTPException(status_code=404, detail=f"Session not found: {req.session_id}")
        return {"exported": paths}

    # ====== quality ======

    @app.post("/admin/qa")
    async def run_qa(req: QARequest):
        try:
            validator = QualityAssuranceValidator(
                store, get_embedder(), settings.qa,
                namespace=settings.vector_store.namespace,
                reports_dir=settings.reports_dir,
            )
            report = await validator.run_complete_qa(sample_size=req.sample_size,
                                                     skip_duplication=req.skip_duplication)
        except ValueError as e:
            raise HTTPException(status_code=503, detail=f"Embedding service not configured: {e}")
        except IndexingError as e:
            logger.error(f"QA run failed: {e}")
            raise HTTPException(status_code=503, detail=f"QA run failed: {e}")
        return report.to_dict()

    # ====== costs ======

    @app.get("/admin/costs/budget")
    def cost_budget():
        return {"budget": cost_tracker.budget_status(), "alerts": cost_tracker.check_budget_alerts()}

    @app.post("/admin/costs/budget")
    def update_cost_budget(req: BudgetUpdateRequest):
        cost_tracker.update_budget_limits(daily=req.daily_limit, monthly=req.monthly_limit)
        return {"budget": cost_tracker.budget_status()}

    @app.get("/admin/costs/analytics")
    def cost_analytics(days: int = 30):
        return cost_tracker.analytics(days)

    @app.get("/admin/costs/pricing")
    def cost_pricing():
        return {"pricing": pricing_info()}

    @app.post("/admin/costs/estimate")
    def cost_estimate(req: CostEstimateRequest):
        return estimate(req.model, tokens=req.tokens, text=req.text)

    # ====== sources ======

    @app.get("/admin/sources")
    def list_sources():
        try:
            sources = source_loader.load_all_sources()
        except SourceConfigError as e:
            raise HTTPException(status_code=500, detail=str(e))
        result: List[Dict[str, Any]] = []
        for source in sources.values():
            active = tracker.active_session_for(source.name)
            result.append({
                **source.to_dict(),
                "active_session": active.session_id if active else None,
            })
        return {"sources": result, "metrics": get_metrics_summary()}

    return app


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the indexing admin API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8001)
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    setup_logging_from_settings(settings)
    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
