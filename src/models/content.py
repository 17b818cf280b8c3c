"""
Content models for the news aggregator.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse


class SourceKind(Enum):
    """Kinds of news sources"""
    RSS = "rss"
    HTML = "html"


# URL fragments that mark a feed when no explicit type is given
RSS_URL_HINTS = (".xml", "/rss", "/feed")


@dataclass(frozen=True)
class RSSSource:
    """An RSS or Atom feed"""
    url: str

    @property
    def kind(self) -> SourceKind:
        return SourceKind.RSS


@dataclass(frozen=True)
class HTMLSource:
    """An HTML page scraped with CSS selectors"""
    url: str
    item_selector: str
    title_selector: Optional[str] = None
    link_selector: str = "a"
    date_selector: Optional[str] = None

    def __post_init__(self):
        # Title defaults to the item element's own text
        if not self.title_selector:
            object.__setattr__(self, "title_selector", self.item_selector)

    @property
    def kind(self) -> SourceKind:
        return SourceKind.HTML


Source = Union[RSSSource, HTMLSource]


class SourceConfigError(ValueError):
    """A source entry could not be turned into a Source"""
    pass


def infer_source_kind(url: str, has_selector: bool = False) -> SourceKind:
    """
    Guess the source kind from URL patterns.

    Feed-looking URLs are always RSS; otherwise a configured item selector
    means HTML scraping, and anything else is tried as a feed.
    """
    url_lower = url.lower()
    if any(hint in url_lower for hint in RSS_URL_HINTS):
        return SourceKind.RSS
    return SourceKind.HTML if has_selector else SourceKind.RSS


def parse_source(entry: Union[str, Dict[str, Any], RSSSource, HTMLSource]) -> Source:
    """
    Resolve a raw source entry into a typed Source.

    Accepts a bare URL string (kind inferred) or a mapping
    ``{url, type, selector, titleSelector, linkSelector, dateSelector}``.
    Already-typed sources pass through unchanged.
    """
    if isinstance(entry, (RSSSource, HTMLSource)):
        return entry

    if isinstance(entry, str):
        url = entry.strip()
        if not url:
            raise SourceConfigError("Empty source URL")
        # Without selectors a bare URL can only be read as a feed
        return RSSSource(url=url)

    if not isinstance(entry, dict):
        raise SourceConfigError(f"Unsupported source entry: {entry!r}")

    url = (entry.get("url") or "").strip()
    if not url:
        raise SourceConfigError(f"Source entry has no url: {entry!r}")

    raw_type = entry.get("type")
    if raw_type:
        try:
            kind = SourceKind(str(raw_type).lower())
        except ValueError:
            raise SourceConfigError(f"Unknown source type '{raw_type}' for {url}")
    else:
        has_selector = bool(entry.get("selector") or entry.get("itemSelector"))
        kind = infer_source_kind(url, has_selector=has_selector)

    if kind is SourceKind.RSS:
        return RSSSource(url=url)

    item_selector = entry.get("selector") or entry.get("itemSelector")
    if not item_selector:
        raise SourceConfigError(f"HTML source {url} requires a selector")

    return HTMLSource(
        url=url,
        item_selector=item_selector,
        title_selector=entry.get("titleSelector"),
        link_selector=entry.get("linkSelector") or "a",
        date_selector=entry.get("dateSelector"),
    )


@dataclass(frozen=True)
class NewsItem:
    """A single headline produced by one fetch cycle."""

    title: str
    link: str
    source_url: str
    description: str = ""
    published_at: Optional[datetime] = None
    raw_pub_date: str = ""
    favicon_ref: Optional[str] = None

    @property
    def pub_date(self) -> str:
        """ISO-8601 when parsed, otherwise whatever the source supplied."""
        if self.published_at is not None:
            return self.published_at.isoformat()
        return self.raw_pub_date

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable form consumed by the display layer."""
        return {
            "title": self.title,
            "link": self.link,
            "pubDate": self.pub_date,
            "description": self.description,
            "source": self.source_url,
            "favicon": self.favicon_ref,
        }


@dataclass
class FaviconEntry:
    """Cached icon record for one source URL"""
    source_url: str
    resolved_icon_url: Optional[str] = None
    cached_file_path: Optional[str] = None
    last_validated_at: datetime = field(default_factory=datetime.now)

    @property
    def content_hash(self) -> str:
        return hashlib.md5(self.source_url.encode("utf-8")).hexdigest()

    @property
    def cache_filename(self) -> str:
        """Deterministic file name: sanitized domain plus URL hash."""
        hostname = urlparse(self.source_url).hostname or "unknown"
        domain = re.sub(r"[^a-zA-Z0-9]", "_", hostname)
        return f"{domain}_{self.content_hash}.icon"
