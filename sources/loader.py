"""Source configuration loader for the Guimera indexer.

Loads and validates source configurations from YAML files.
"""

import yaml
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field
from urllib.parse import urlparse
import logging

from pipelines.errors import SourceConfigError

logger = logging.getLogger(__name__)

SOURCE_TYPES = (
    'main_site',
    'blog_network',
    'educational_blog',
    'blogspot',
    'wordpress_subdirectory',
    'wordpress_hosted',
)

# Main content candidates per source type. They are matched as one CSS
# selector group, so the first match in document order wins.
CONTENT_SELECTORS: Dict[str, List[str]] = {
    'main_site': ['main', 'article', '.content', '.post-content', '.entry-content'],
    'wordpress_subdirectory': ['main', 'article', '.content', '.post-content', '.entry-content'],
    'blogspot': ['.post-body', '.entry-content', 'article'],
    'wordpress_hosted': ['.entry-content', '.post-content', 'article'],
    'educational_blog': ['.contingut', '.content', 'main', 'article'],
}
DEFAULT_CONTENT_SELECTORS = ['main', 'article', '.content']


@dataclass
class SourceConfig:
    """Configuration for a content source."""
    name: str
    domain: str
    base_url: str
    source_type: str = 'main_site'
    priority: int = 2
    description: str = ''
    language: str = 'ca'
    content_selectors: List[str] = field(default_factory=list)
    sitemaps: List[str] = field(default_factory=list)
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    max_pages: Optional[int] = None
    enabled: bool = True

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.name:
            raise SourceConfigError("Source name cannot be empty")

        parsed = urlparse(self.base_url or '')
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise SourceConfigError(f"Invalid base_url for {self.name}: {self.base_url!r}")

        if not self.domain:
            raise SourceConfigError(f"Source {self.name} must declare a domain")

        if self.source_type not in SOURCE_TYPES:
            raise SourceConfigError(f"Invalid source_type for {self.name}: {self.source_type}")

        if self.priority not in (1, 2, 3):
            raise SourceConfigError(f"Invalid priority for {self.name}: {self.priority}")

        if self.max_pages is not None and self.max_pages <= 0:
            raise SourceConfigError("max_pages must be positive")

        if not self.content_selectors:
            self.content_selectors = list(
                CONTENT_SELECTORS.get(self.source_type, DEFAULT_CONTENT_SELECTORS)
            )

    def allows(self, url: str) -> bool:
        """Whether ``url`` belongs to this source and passes include/exclude."""
        parsed = urlparse(url)
        host = parsed.netloc.lower()
        if host.startswith('www.'):
            host = host[4:]
        domain = self.domain.lower()
        if host != domain and not host.endswith('.' + domain):
            return False

        # Sources living under a path only own that path
        base_path = urlparse(self.base_url).path
        if base_path and base_path != '/' and not parsed.path.startswith(base_path.rstrip('/')):
            return False

        if self.include and not any(pattern in url for pattern in self.include):
            return False
        if self.exclude and any(pattern in url for pattern in self.exclude):
            return False
        return True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceConfig':
        """Create SourceConfig from dictionary."""
        try:
            return cls(
                name=data['name'],
                domain=data['domain'],
                base_url=data['base_url'],
                source_type=data.get('source_type', 'main_site'),
                priority=int(data.get('priority', 2)),
                description=data.get('description', ''),
                language=data.get('language', 'ca'),
                content_selectors=list(data.get('content_selectors') or []),
                sitemaps=list(data.get('sitemaps') or []),
                include=list(data.get('include') or []),
                exclude=list(data.get('exclude') or []),
                max_pages=data.get('max_pages'),
                enabled=data.get('enabled', True),
            )
        except KeyError as e:
            raise SourceConfigError(f"Missing required field {e} in source configuration")
        except (TypeError, ValueError) as e:
            if isinstance(e, SourceConfigError):
                raise
            raise SourceConfigError(f"Invalid source configuration: {e}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = {
            'name': self.name,
            'domain': self.domain,
            'base_url': self.base_url,
            'source_type': self.source_type,
            'priority': self.priority,
            'language': self.language,
            'content_selectors': self.content_selectors,
            'enabled': self.enabled,
        }

        if self.description:
            result['description'] = self.description
        if self.sitemaps:
            result['sitemaps'] = self.sitemaps
        if self.include:
            result['include'] = self.include
        if self.exclude:
            result['exclude'] = self.exclude
        if self.max_pages is not None:
            result['max_pages'] = self.max_pages

        return result


class SourceLoader:
    """Loads source configurations from YAML files."""

    def __init__(self, sources_dir: Optional[Path] = None):
        """Initialize source loader.

        Args:
            sources_dir: Directory containing source YAML files.
                        Defaults to the directory of this module.
        """
        if sources_dir is None:
            sources_dir = Path(__file__).parent

        self.sources_dir = Path(sources_dir)
        self._cache: Dict[str, SourceConfig] = {}
        self._last_modified: Dict[str, float] = {}

    def load_source_config(self, source_name: str) -> Optional[SourceConfig]:
        """Load configuration for a specific source.

        Args:
            source_name: Name of the source (without .yaml extension)

        Returns:
            SourceConfig if found, None when no such file exists

        Raises:
            SourceConfigError: if the file exists but is invalid
        """
        yaml_file = self.sources_dir / f"{source_name}.yaml"

        if not yaml_file.exists():
            logger.warning(f"Source configuration not found: {yaml_file}")
            return None

        current_mtime = yaml_file.stat().st_mtime
        if (source_name in self._cache and
                self._last_modified.get(source_name, 0) >= current_mtime):
            return self._cache[source_name]

        try:
            with open(yaml_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise SourceConfigError(f"Failed to parse YAML file {yaml_file}: {e}")

        if not isinstance(data, dict):
            raise SourceConfigError(f"Empty or invalid YAML file: {yaml_file}")

        # Ensure name matches filename
        if data.get('name') != source_name:
            if 'name' in data:
                logger.warning(f"Source name mismatch in {yaml_file}: {data['name']} != {source_name}")
            data['name'] = source_name

        config = SourceConfig.from_dict(data)

        self._cache[source_name] = config
        self._last_modified[source_name] = current_mtime

        logger.debug(f"Loaded source configuration: {source_name}")
        return config

    def load_all_sources(self) -> Dict[str, SourceConfig]:
        """Load all source configurations, ordered by priority then name."""
        sources = {}

        if not self.sources_dir.exists():
            logger.warning(f"Sources directory not found: {self.sources_dir}")
            return sources

        for yaml_file in sorted(self.sources_dir.glob("*.yaml")):
            config = self.load_source_config(yaml_file.stem)
            if config:
                sources[yaml_file.stem] = config

        ordered = dict(sorted(sources.items(), key=lambda item: (item[1].priority, item[0])))
        logger.info(f"Loaded {len(ordered)} source configurations")
        return ordered

    def get_enabled_sources(self) -> Dict[str, SourceConfig]:
        """Get all enabled source configurations."""
        all_sources = self.load_all_sources()
        return {name: config for name, config in all_sources.items() if config.enabled}

    def reload_cache(self):
        """Clear cache to force reload of all configurations."""
        self._cache.clear()
        self._last_modified.clear()
        logger.info("Source configuration cache cleared")


# Global source loader instance
_source_loader = SourceLoader()


def load_source_config(source_name: str) -> Optional[SourceConfig]:
    """Convenience function to load a source configuration."""
    return _source_loader.load_source_config(source_name)


def load_all_sources() -> Dict[str, SourceConfig]:
    """Convenience function to load all source configurations."""
    return _source_loader.load_all_sources()


def get_enabled_sources() -> Dict[str, SourceConfig]:
    return _source_loader.get_enabled_sources()
