"""
Favicon discovery for news sources.

Fetches the home page of a source's site and picks the most suitable icon
reference from its markup. Caching is the icon cache's job, not this one's.
"""

import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from src.services.http_client import HttpClient, HTML_ACCEPT


# Feed hosts whose icon lives on a different site host
DOMAIN_REWRITES: Dict[str, str] = {
    "rss.walla.co.il": "https://www.walla.co.il",
}

ICON_RELS = ("icon", "shortcut icon", "apple-touch-icon", "apple-touch-icon-precomposed")


@dataclass
class IconCandidate:
    """An icon reference found in page markup"""
    url: str
    priority: int
    origin: str


def extract_main_domain(source_url: str) -> Optional[str]:
    """
    Site root (``scheme://host``) for a feed or page URL, after applying
    DOMAIN_REWRITES. Returns None for URLs without a scheme or host.
    """
    try:
        parsed = urlparse(source_url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.hostname:
        return None

    hostname = parsed.hostname.lower()
    if hostname in DOMAIN_REWRITES:
        return DOMAIN_REWRITES[hostname]
    return f"{parsed.scheme}://{parsed.hostname}"


def normalize_icon_url(href: str, base_url: str) -> str:
    """Make an icon reference absolute against the site root."""
    href = href.strip()
    if href.startswith("//"):
        return f"{urlparse(base_url).scheme}:{href}"
    if href.startswith("/"):
        return base_url.rstrip("/") + href
    if href.startswith("http://") or href.startswith("https://"):
        return href
    return base_url.rstrip("/") + "/" + href


def get_favicon_priority(url: str) -> int:
    """
    Rank an icon URL for small display (lower number = better).

    Favicon-named files are designed for the purpose; logos, og:images and
    brand artwork are usually oversized.
    """
    url_lower = url.lower()

    if "favicon" in url_lower:
        return 1
    if "shortcut" in url_lower:
        return 2
    if "apple-touch-icon" in url_lower:
        return 3
    if ".ico" in url_lower:
        return 4
    if ".png" in url_lower:
        if "16" in url_lower or "32" in url_lower or "small" in url_lower:
            return 5
        return 6
    if ".svg" in url_lower:
        return 7
    if ".jpg" in url_lower or ".jpeg" in url_lower:
        return 8
    if "og" in url_lower or "logo" in url_lower or "brand" in url_lower:
        return 9
    return 10


class FaviconResolver:
    """
    Resolves the best icon URL for a source by scraping its site root.
    """

    def __init__(self, http: HttpClient):
        self.http = http
        self.logger = logging.getLogger(__name__)

    async def resolve_icon_url(self, source_url: str) -> Optional[str]:
        """
        Find the icon URL for a source.

        Returns:
            Absolute icon URL (``{domain}/favicon.ico`` when the markup has none),
            or None when the source URL has no usable domain

        Raises:
            NetworkError: if the site root cannot be fetched
        """
        main_domain = extract_main_domain(source_url)
        if not main_domain:
            self.logger.warning(f"Cannot extract domain from {source_url}")
            return None

        html = await self.http.fetch_text(main_domain, accept=HTML_ACCEPT)
        return self.parse_html_for_favicon(html, main_domain)

    def parse_html_for_favicon(self, html: str, base_url: str) -> str:
        """Pick the highest-priority icon in ``html``, falling back to ``/favicon.ico``."""
        candidates = self.find_icon_candidates(html, base_url)

        if candidates:
            best = sorted(candidates, key=lambda c: c.priority)[0]
            self.logger.debug(
                f"Found {len(candidates)} icon candidates on {base_url}, using {best.url} ({best.origin})"
            )
            return best.url

        fallback_url = base_url.rstrip("/") + "/favicon.ico"
        self.logger.debug(f"No icon declared on {base_url}, using fallback {fallback_url}")
        return fallback_url

    def find_icon_candidates(self, html: str, base_url: str) -> List[IconCandidate]:
        """
        Collect icon references in rule order: PNG-typed icon links, PNG
        og:images, shortcut icons, other icon links, bare favicon/.ico hrefs,
        favicon og:images, then JSON-LD logos. Duplicates keep their first
        position.
        """
        soup = BeautifulSoup(html or "", "html.parser")
        found: List[IconCandidate] = []
        seen = set()

        def add(href: Optional[str], origin: str) -> None:
            if not href or not href.strip() or href.strip().startswith("data:"):
                return
            url = normalize_icon_url(href, base_url)
            if url in seen:
                return
            seen.add(url)
            found.append(IconCandidate(url=url, priority=get_favicon_priority(url), origin=origin))

        icon_links = []
        other_links = []
        for link in soup.find_all("link", href=True):
            rel = " ".join(link.get("rel") or []).lower()
            if rel in ICON_RELS or rel == "favicon":
                icon_links.append((rel, link))
            else:
                other_links.append(link)

        og_images = [
            meta.get("content", "")
            for meta in soup.find_all("meta")
            if (meta.get("property") or "").lower() == "og:image"
        ]

        for rel, link in icon_links:
            href = link["href"]
            if ".png" in href.lower() or (link.get("type") or "").lower() == "image/png":
                add(href, f"link[{rel}] png")

        for content in og_images:
            if ".png" in content.lower():
                add(content, "og:image png")

        for rel, link in icon_links:
            if rel == "shortcut icon":
                add(link["href"], "link[shortcut icon]")

        for rel, link in icon_links:
            if rel in ("icon", "apple-touch-icon", "favicon"):
                add(link["href"], f"link[{rel}]")

        for link in other_links:
            href_lower = link["href"].lower()
            if "favicon" in href_lower or ".ico" in href_lower:
                add(link["href"], "link href")

        for rel, link in icon_links:
            if rel == "apple-touch-icon-precomposed":
                add(link["href"], "link[apple-touch-icon-precomposed]")

        for content in og_images:
            if "favicon" in content.lower():
                add(content, "og:image favicon")

        for logo in self._json_ld_logos(soup):
            add(logo, "json-ld logo")

        return found

    def _json_ld_logos(self, soup: BeautifulSoup) -> List[str]:
        logos = []
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            try:
                data = json.loads(script.string or "")
            except (ValueError, TypeError):
                continue

            for node in data if isinstance(data, list) else [data]:
                if not isinstance(node, dict):
                    continue
                logo = node.get("logo")
                if isinstance(logo, dict):
                    logo = logo.get("url")
                if isinstance(logo, str) and logo:
                    logos.append(logo)
        return logos
