"""Seed URL discovery for a source.

Collects the starting URLs of a session: the source's base URL, the
in-source links found on it and any sitemap entries it declares.
"""

import logging
from typing import List

from bs4 import BeautifulSoup

from sources.loader import SourceConfig
from .errors import IndexingError
from .extractor import ContentExtractor
from .frontier import normalize_url, is_binary_url

logger = logging.getLogger(__name__)

SITEMAP_CONTENT_TYPES = ('application/xml', 'text/xml', 'text/html', 'text/plain')


def parse_sitemap(xml: str, source: SourceConfig) -> List[str]:
    """``<loc>`` entries of a sitemap that belong to ``source``."""
    soup = BeautifulSoup(xml, 'html.parser')
    urls = []
    for loc in soup.find_all('loc'):
        url = normalize_url(loc.get_text(strip=True))
        if url and not is_binary_url(url) and source.allows(url):
            urls.append(url)
    return urls


async def discover_seed_urls(extractor: ContentExtractor, source: SourceConfig,
                             limit: int = 100) -> List[str]:
    """Base URL first, then links found on the base page, then sitemap URLs.

    Failures fetching the base page or a sitemap are logged and the
    remaining discovery continues; the base URL is always returned.
    """
    urls = [normalize_url(source.base_url)]

    try:
        html = await extractor.fetch(source.base_url)
        soup = BeautifulSoup(html, 'html.parser')
        urls.extend(extractor.extract_links(soup, source.base_url, source))
    except IndexingError as e:
        logger.warning(f"URL discovery failed for {source.base_url}: {e}")

    for sitemap_url in source.sitemaps:
        try:
            xml = await extractor.fetch(sitemap_url, accept=SITEMAP_CONTENT_TYPES)
        except IndexingError as e:
            logger.warning(f"Could not read sitemap {sitemap_url}: {e}")
            continue
        urls.extend(parse_sitemap(xml, source))

    seen = set()
    unique = []
    for url in urls:
        if url not in seen:
            seen.add(url)
            unique.append(url)

    logger.info(f"Discovered {len(unique)} candidate URLs for {source.name}")
    return unique[:limit]
