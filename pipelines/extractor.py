"""Page fetching and main-content extraction.

Fetches a page over HTTP and reduces it to clean text plus the metadata
the index stores alongside each chunk.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional
from urllib.parse import urljoin

import aiohttp
import trafilatura
from bs4 import BeautifulSoup

from config.settings import USER_AGENT
from sources.loader import SourceConfig, DEFAULT_CONTENT_SELECTORS
from .errors import FetchError, InsufficientContent
from .frontier import normalize_url, is_binary_url
from .models import ErrorCategory

logger = logging.getLogger(__name__)

BOILERPLATE_SELECTORS = [
    'nav', 'footer', 'aside', '.sidebar', '.navigation', '.comments',
    '.related-posts', '.social-share', '.advertisement', '.ads',
    'script', 'style', 'noscript', '.cookie-notice', '.breadcrumb',
]

HTML_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')
DEFAULT_LANGUAGE = 'ca'
MAX_HEADINGS = 5


@dataclass
class ExtractedContent:
    """Clean text and metadata of one page."""
    url: str
    title: str
    text: str
    language: str = DEFAULT_LANGUAGE
    author: Optional[str] = None
    published_date: Optional[str] = None
    description: Optional[str] = None
    headings: List[str] = field(default_factory=list)
    links: List[str] = field(default_factory=list)

    @property
    def content_length(self) -> int:
        return len(self.text)

    def to_metadata(self, source: Optional[SourceConfig] = None) -> Dict[str, Any]:
        """Page-level metadata copied onto every chunk of the page."""
        metadata = asdict(self)
        metadata.pop('text')
        metadata.pop('links')
        if source is not None:
            metadata['source'] = source.name
            metadata['source_domain'] = source.domain
            metadata['source_type'] = source.source_type
            metadata['priority'] = source.priority
        return metadata


def _clean_text(text: str) -> str:
    """Strip each line and collapse runs of blank lines into paragraph breaks."""
    lines = [re.sub(r'[ \t\xa0]+', ' ', line).strip() for line in text.splitlines()]
    cleaned = '\n'.join(lines)
    return re.sub(r'\n{3,}', '\n\n', cleaned).strip()


def _meta_content(soup: BeautifulSoup, *names: str) -> Optional[str]:
    for name in names:
        tag = soup.find('meta', attrs={'name': name}) or soup.find('meta', attrs={'property': name})
        if tag and tag.get('content'):
            return tag['content'].strip()
    return None


def detect_language(soup: BeautifulSoup, default: str = DEFAULT_LANGUAGE) -> str:
    """Primary subtag of ``<html lang>``, lower-cased."""
    html = soup.find('html')
    lang = html.get('lang') if html else None
    if not lang:
        return default
    primary = re.split(r'[-_]', lang.strip())[0].lower()
    return primary or default


class ContentExtractor:
    """Fetches pages and extracts their main content.

    Use as an async context manager so the HTTP session is closed::

        async with ContentExtractor() as extractor:
            content = await extractor.extract(url, source)
    """

    def __init__(self,
                 request_timeout: float = 30.0,
                 user_agent: str = USER_AGENT,
                 min_content_length: int = 100):
        """Initialize extractor.

        Args:
            request_timeout: Total timeout for one request in seconds
            user_agent: User agent sent with every request
            min_content_length: Pages with less text raise InsufficientContent
        """
        self.request_timeout = request_timeout
        self.user_agent = user_agent
        self.min_content_length = min_content_length
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self):
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={'User-Agent': self.user_agent}
            )

    async def close(self):
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def fetch(self, url: str, accept: tuple = HTML_CONTENT_TYPES) -> str:
        """GET ``url`` following redirects and return its body.

        Raises:
            FetchError: on non-2xx status, timeout, connection failure or
                a content type outside ``accept``
        """
        await self._ensure_session()

        try:
            async with self.session.get(url, allow_redirects=True) as response:
                if response.status < 200 or response.status >= 300:
                    raise FetchError(
                        f"HTTP {response.status} fetching {url}",
                        url=url, status_code=response.status
                    )

                content_type = response.headers.get('content-type', '').lower()
                if content_type and not content_type.startswith(accept):
                    raise FetchError(
                        f"Unexpected content type: {content_type}",
                        url=url, status_code=response.status,
                        category=ErrorCategory.PARSING, retryable=False
                    )

                return await response.text()

        except asyncio.TimeoutError:
            raise FetchError(
                f"Timeout fetching {url} after {self.request_timeout}s",
                url=url, category=ErrorCategory.TIMEOUT, retryable=True
            )
        except aiohttp.ClientError as e:
            raise FetchError(
                f"Network error fetching {url}: {e}",
                url=url, category=ErrorCategory.NETWORK, retryable=True
            )

    async def extract(self, url: str, source: SourceConfig) -> ExtractedContent:
        """Fetch ``url`` and extract its content according to ``source``."""
        html = await self.fetch(url)
        return self.parse(html, url, source)

    def parse(self, html: str, url: str, source: Optional[SourceConfig] = None) -> ExtractedContent:
        """Extract content from already fetched HTML.

        Raises:
            InsufficientContent: if the main text is shorter than
                ``min_content_length``
        """
        soup = BeautifulSoup(html, 'html.parser')

        title = soup.title.get_text(strip=True) if soup.title else ''
        default_language = source.language if source else DEFAULT_LANGUAGE
        language = detect_language(soup, default_language)
        author = _meta_content(soup, 'author', 'article:author')
        published_date = _meta_content(soup, 'article:published_time', 'pubdate')
        description = _meta_content(soup, 'description')
        links = self.extract_links(soup, url, source)

        selectors = source.content_selectors if source else DEFAULT_CONTENT_SELECTORS
        main = soup.select_one(', '.join(selectors))
        matched = main is not None
        if main is None:
            main = soup.body or soup

        for element in main.select(', '.join(BOILERPLATE_SELECTORS)):
            element.decompose()

        headings = []
        for heading in main.find_all(['h1', 'h2', 'h3', 'h4', 'h5', 'h6']):
            heading_text = heading.get_text(' ', strip=True)
            if heading_text:
                headings.append(heading_text)
            if len(headings) >= MAX_HEADINGS:
                break

        text = _clean_text(main.get_text('\n'))

        if not matched:
            extracted = trafilatura.extract(html, include_comments=False, include_tables=True)
            if extracted and len(extracted.strip()) >= self.min_content_length:
                logger.debug(f"No content selector matched {url}, using trafilatura output")
                text = _clean_text(extracted)

        if len(text) < self.min_content_length:
            raise InsufficientContent(
                f"Content too short: {len(text)} chars (minimum {self.min_content_length})",
                url=url, length=len(text)
            )

        return ExtractedContent(
            url=url,
            title=title,
            text=text,
            language=language,
            author=author,
            published_date=published_date,
            description=description,
            headings=headings,
            links=links,
        )

    def extract_links(self, soup: BeautifulSoup, base_url: str,
                       source: Optional[SourceConfig]) -> List[str]:
        """In-source links of the page, fragment removed, in document order."""
        seen = set()
        links = []
        for anchor in soup.find_all('a', href=True):
            href = anchor['href'].strip()
            if not href or href.startswith(('mailto:', 'javascript:', 'tel:')):
                continue
            link = normalize_url(urljoin(base_url, href))
            if not link.startswith(('http://', 'https://')) or is_binary_url(link):
                continue
            if source is not None and not source.allows(link):
                continue
            if link not in seen:
                seen.add(link)
                links.append(link)
        return links
