"""
Per-source news fetching.

One fetcher per source kind. ``fetch`` never raises: any failure is logged
and reported in the FetchResult with an empty item list, so one broken source
cannot take down an aggregation cycle.
"""

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import urljoin, urlparse

import feedparser
from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

from src.models.content import HTMLSource, NewsItem, RSSSource, Source, SourceKind
from src.services.errors import ParseError
from src.services.http_client import HttpClient, FEED_ACCEPT, HTML_ACCEPT
from src.utils.date_extraction import parse_published_date, parse_scraped_date


DEFAULT_TITLE = "No title"
MIN_TITLE_LENGTH = 5

_BARE_AMPERSAND = re.compile(r'&(?![a-zA-Z0-9#]+;)')
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')


def clean_feed_xml(content: str) -> str:
    """Escape bare ampersands and strip control characters that break XML parsers."""
    content = _BARE_AMPERSAND.sub('&amp;', content)
    return _CONTROL_CHARS.sub('', content)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FetchResult:
    """Result from fetching one source"""
    source: Source
    items: List[NewsItem] = field(default_factory=list)
    fetch_time: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SourceFetcher(ABC):
    """Base class for fetchers of one source kind."""

    kind: SourceKind

    def __init__(self, http: HttpClient, timeout: Optional[float] = None):
        self.http = http
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    async def fetch(self, source: Source, favicon_ref: Optional[str] = None) -> FetchResult:
        """Fetch one source, isolating every failure into the result."""
        start = time.monotonic()
        try:
            coro = self.fetch_items(source, favicon_ref)
            if self.timeout:
                items = await asyncio.wait_for(coro, timeout=self.timeout)
            else:
                items = await coro
        except asyncio.TimeoutError:
            msg = f"Timed out after {self.timeout}s"
            self.logger.error(f"Error fetching from {source.url}: {msg}")
            return FetchResult(source, [], time.monotonic() - start, error=msg)
        except Exception as e:  # noqa: BLE001
            msg = f"{type(e).__name__}: {e}"
            self.logger.error(f"Error fetching from {source.url}: {msg}")
            return FetchResult(source, [], time.monotonic() - start, error=msg)

        self.logger.info(f"Successfully fetched {len(items)} items from {source.url}")
        return FetchResult(source, items, time.monotonic() - start)

    @abstractmethod
    async def fetch_items(self, source: Source, favicon_ref: Optional[str] = None) -> List[NewsItem]:
        """Fetch and parse items; may raise NetworkError or ParseError."""


class RSSFetcher(SourceFetcher):
    """RSS/Atom feeds parsed with feedparser."""

    kind = SourceKind.RSS

    async def fetch_items(self, source: RSSSource, favicon_ref: Optional[str] = None) -> List[NewsItem]:
        content = await self.http.fetch_text(source.url, accept=FEED_ACCEPT)
        return self.parse_feed(content, source.url, favicon_ref)

    def parse_feed(self, content: str, feed_url: str, favicon_ref: Optional[str] = None) -> List[NewsItem]:
        """
        Parse feed text into items, retrying once on cleaned XML when the
        document is malformed and nothing could be recovered.
        """
        parsed = feedparser.parse(content)
        if parsed.bozo and not parsed.entries:
            self.logger.debug(f"Malformed feed from {feed_url} ({parsed.get('bozo_exception')}), retrying with cleanup")
            parsed = feedparser.parse(clean_feed_xml(content))

        if parsed.bozo and not parsed.entries:
            raise ParseError(f"Could not parse feed {feed_url}: {parsed.get('bozo_exception')}")

        return [self._entry_to_item(entry, feed_url, favicon_ref) for entry in parsed.entries]

    def _entry_to_item(self, entry, feed_url: str, favicon_ref: Optional[str]) -> NewsItem:
        title = (entry.get("title") or "").strip() or DEFAULT_TITLE
        link = (entry.get("link") or "").strip()
        description = entry.get("summary") or entry.get("description") or ""

        raw_date = entry.get("published") or entry.get("updated") or ""
        published_at = parse_published_date(raw_date)
        if published_at is None and raw_date:
            parsed_struct = entry.get("published_parsed") or entry.get("updated_parsed")
            if parsed_struct:
                published_at = datetime(*parsed_struct[:6], tzinfo=timezone.utc)

        return NewsItem(
            title=title,
            link=link,
            source_url=feed_url,
            description=description,
            published_at=published_at,
            raw_pub_date=raw_date,
            favicon_ref=favicon_ref,
        )


class HTMLFetcher(SourceFetcher):
    """
    Server-rendered pages scraped with CSS selectors.

    Pages that build their content with JavaScript yield nothing here; that
    is reported as a warning, not a failure.
    """

    kind = SourceKind.HTML

    def __init__(
        self,
        http: HttpClient,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(http, timeout)
        self.clock = clock

    async def fetch_items(self, source: HTMLSource, favicon_ref: Optional[str] = None) -> List[NewsItem]:
        html = await self.http.fetch_text(source.url, accept=HTML_ACCEPT)
        items = self.parse_page(html, source, favicon_ref)
        if not items:
            self.logger.warning(
                f"No items matched '{source.item_selector}' on {source.url}; "
                f"the page may render its content with JavaScript"
            )
        return items

    def parse_page(self, html: str, source: HTMLSource, favicon_ref: Optional[str] = None) -> List[NewsItem]:
        soup = BeautifulSoup(html or "", "html.parser")
        try:
            elements = soup.select(source.item_selector)
        except SelectorSyntaxError as e:
            raise ParseError(f"Invalid item selector '{source.item_selector}' for {source.url}: {e}")

        fetched_at = self.clock()
        parsed = urlparse(source.url)
        origin = f"{parsed.scheme}://{parsed.netloc}/"

        items: List[NewsItem] = []
        for element in elements:
            try:
                item = self._element_to_item(element, source, origin, fetched_at, favicon_ref)
            except SelectorSyntaxError as e:
                raise ParseError(f"Invalid selector for {source.url}: {e}")
            if item is not None:
                items.append(item)

        self.logger.debug(f"Extracted {len(items)} of {len(elements)} elements from {source.url}")
        return items

    def _element_to_item(self, element, source: HTMLSource, origin: str,
                         fetched_at: datetime, favicon_ref: Optional[str]) -> Optional[NewsItem]:
        if source.title_selector == source.item_selector:
            title = element.get_text(" ", strip=True)
        else:
            title_el = element.select_one(source.title_selector)
            title = title_el.get_text(" ", strip=True) if title_el else ""
        title = " ".join(title.split())

        if len(title) < MIN_TITLE_LENGTH:
            return None

        link_el = element.select_one(source.link_selector)
        if link_el is None and element.has_attr("href"):
            link_el = element
        href = (link_el.get("href") or "").strip() if link_el else ""
        link = urljoin(origin, href) if href else ""

        raw_date = ""
        published_at = None
        if source.date_selector:
            date_el = element.select_one(source.date_selector)
            if date_el is not None:
                raw_date = date_el.get("datetime") or date_el.get_text(" ", strip=True)
                published_at = parse_scraped_date(raw_date, default=fetched_at)
        if published_at is None:
            published_at = fetched_at

        return NewsItem(
            title=title,
            link=link,
            source_url=source.url,
            description="",
            published_at=published_at,
            raw_pub_date=raw_date,
            favicon_ref=favicon_ref,
        )


def create_source_fetchers(
    http: HttpClient,
    timeout: Optional[float] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Dict[SourceKind, SourceFetcher]:
    """One fetcher per source kind, sharing a single HTTP client."""
    return {
        SourceKind.RSS: RSSFetcher(http, timeout),
        SourceKind.HTML: HTMLFetcher(http, timeout, clock=clock),
    }
