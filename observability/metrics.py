"""Prometheus metrics for the indexer and its admin API."""

import logging
import re
import time
from typing import Dict, Any

import psutil
from fastapi import FastAPI, Request
from prometheus_client import Counter, Histogram, Gauge, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Custom registry so tests and embedded apps don't collide with the default one
guimera_registry = CollectorRegistry()

pages_total = Counter(
    'guimera_pages_total',
    'Pages processed by final status',
    ['source', 'status'],
    registry=guimera_registry
)

page_duration = Histogram(
    'guimera_page_processing_seconds',
    'Time spent processing one page, retries included',
    ['source'],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=guimera_registry
)

chunks_total = Counter(
    'guimera_chunks_total',
    'Chunks written to the vector store',
    ['source'],
    registry=guimera_registry
)

embedding_tokens_total = Counter(
    'guimera_embedding_tokens_total',
    'Tokens sent to the embedding service',
    ['model'],
    registry=guimera_registry
)

embedding_duration = Histogram(
    'guimera_embedding_duration_seconds',
    'Embedding request duration in seconds',
    ['model'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=guimera_registry
)

cost_usd_total = Counter(
    'guimera_cost_usd_total',
    'Estimated embedding spend in USD',
    ['source'],
    registry=guimera_registry
)

errors_total = Counter(
    'guimera_errors_total',
    'Pipeline errors by category',
    ['category', 'component'],
    registry=guimera_registry
)

sessions_active = Gauge(
    'guimera_sessions_active',
    'Indexing sessions currently running',
    registry=guimera_registry
)

qa_runs_total = Counter(
    'guimera_qa_runs_total',
    'Quality assurance runs by overall status',
    ['status'],
    registry=guimera_registry
)

request_count = Counter(
    'guimera_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=guimera_registry
)

request_duration = Histogram(
    'guimera_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=guimera_registry
)

process_memory = Gauge(
    'guimera_process_memory_bytes',
    'Resident memory of the indexer process',
    registry=guimera_registry
)


class PrometheusMiddleware:
    """ASGI middleware counting HTTP requests and their latency."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        method = request.method
        endpoint = normalize_endpoint(request.url.path)
        start_time = time.time()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            errors_total.labels(category=type(e).__name__, component="http").inc()
            raise
        finally:
            request_count.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)


def normalize_endpoint(path: str) -> str:
    """Replace ids in a path to keep label cardinality low."""
    path = re.sub(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '/{session_id}', path)
    path = re.sub(r'/\d+', '/{id}', path)
    return path


def setup_prometheus_metrics(app: FastAPI) -> None:
    """Attach the request middleware to the admin app."""
    app.add_middleware(PrometheusMiddleware)
    logger.info("Prometheus metrics configured")


def render_metrics() -> bytes:
    """Current metrics in the Prometheus text format."""
    try:
        process_memory.set(psutil.Process().memory_info().rss)
    except psutil.Error as e:
        logger.debug(f"Could not read process memory: {e}")
    return generate_latest(guimera_registry)


def record_page(source: str, status: str, duration: float, chunks: int = 0, cost: float = 0.0) -> None:
    pages_total.labels(source=source, status=status).inc()
    page_duration.labels(source=source).observe(duration)
    if chunks:
        chunks_total.labels(source=source).inc(chunks)
    if cost:
        cost_usd_total.labels(source=source).inc(cost)


def record_embedding(model: str, tokens: int, duration: float) -> None:
    embedding_tokens_total.labels(model=model).inc(tokens)
    embedding_duration.labels(model=model).observe(duration)


def record_error(category: str, component: str = "indexer") -> None:
    errors_total.labels(category=category, component=component).inc()


def record_qa_run(status: str) -> None:
    qa_runs_total.labels(status=status).inc()


def get_metrics_summary() -> Dict[str, Any]:
    """Plain-dict view of the main counters, for status endpoints."""
    def total(metric) -> float:
        return sum(
            sample.value
            for family in metric.collect()
            for sample in family.samples
            if sample.name.endswith('_total')
        )

    return {
        "pages_total": total(pages_total),
        "chunks_total": total(chunks_total),
        "embedding_tokens_total": total(embedding_tokens_total),
        "errors_total": total(errors_total),
        "qa_runs_total": total(qa_runs_total),
    }
