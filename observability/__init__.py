"""Observability package: logging, metrics, session tracking and reports."""

from .logging import setup_logging, setup_logging_from_settings, get_structured_logger
from .metrics import (
    setup_prometheus_metrics,
    render_metrics,
    get_metrics_summary,
    PrometheusMiddleware,
    guimera_registry,
)
from .tracker import IndexingTracker, SessionState
from .reporter import IndexingReporter

__all__ = [
    'setup_logging',
    'setup_logging_from_settings',
    'get_structured_logger',
    'setup_prometheus_metrics',
    'render_metrics',
    'get_metrics_summary',
    'PrometheusMiddleware',
    'guimera_registry',
    'IndexingTracker',
    'SessionState',
    'IndexingReporter',
]
