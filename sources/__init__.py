"""Sources package for the Guimera indexer.

Provides source configuration loading and management.
"""

from .loader import (
    SourceConfig,
    SourceLoader,
    load_source_config,
    load_all_sources,
    get_enabled_sources,
)

__all__ = [
    'SourceConfig',
    'SourceLoader',
    'load_source_config',
    'load_all_sources',
    'get_enabled_sources',
]
