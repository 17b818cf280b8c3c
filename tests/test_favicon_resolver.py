from unittest.mock import AsyncMock

import pytest

from src.services.errors import NetworkError
from src.services.favicon_resolver import (
    FaviconResolver,
    extract_main_domain,
    get_favicon_priority,
    normalize_icon_url,
)
from src.services.http_client import HttpClient


BASE = "https://example.com"


@pytest.fixture
def http():
    return AsyncMock(spec=HttpClient)


@pytest.fixture
def resolver(http):
    return FaviconResolver(http)


@pytest.mark.parametrize("url,priority", [
    ("https://example.com/favicon.ico", 1),
    ("https://example.com/favicon-32x32.png", 1),
    ("https://example.com/shortcut.gif", 2),
    ("https://example.com/apple-touch-icon.png", 3),
    ("https://example.com/site.ico", 4),
    ("https://example.com/icon-16.png", 5),
    ("https://example.com/icon-small.png", 5),
    ("https://example.com/icon.png", 6),
    ("https://example.com/mark.svg", 7),
    ("https://example.com/mark.jpeg", 8),
    ("https://example.com/brand-logo", 9),
    ("https://example.com/mark.webp", 10),
])
def test_favicon_priority(url, priority):
    assert get_favicon_priority(url) == priority


def test_normalize_icon_url():
    assert normalize_icon_url("//cdn.example.net/i.ico", BASE) == "https://cdn.example.net/i.ico"
    assert normalize_icon_url("/img/i.png", BASE) == "https://example.com/img/i.png"
    assert normalize_icon_url("img/i.png", BASE + "/") == "https://example.com/img/i.png"
    assert normalize_icon_url(" http://other.org/i.png ", BASE) == "http://other.org/i.png"


def test_extract_main_domain():
    assert extract_main_domain("https://www.ynet.co.il/Integration/StoryRss2.xml") == "https://www.ynet.co.il"
    assert extract_main_domain("http://Example.com:8080/rss") == "http://example.com"
    assert extract_main_domain("https://rss.walla.co.il/feed/1?type=main") == "https://www.walla.co.il"
    assert extract_main_domain("not a url") is None
    assert extract_main_domain("") is None


def test_favicon_named_link_beats_plain_png(resolver):
    html = """
    <html><head>
      <link rel="icon" type="image/png" href="/static/site.png">
      <link rel="shortcut icon" href="/favicon.ico">
    </head></html>
    """
    assert resolver.parse_html_for_favicon(html, BASE) == "https://example.com/favicon.ico"


def test_equal_priority_keeps_rule_order(resolver):
    html = """
    <link rel="icon" href="/a.svg">
    <link rel="apple-touch-icon" href="/b.svg">
    """
    assert resolver.parse_html_for_favicon(html, BASE) == "https://example.com/a.svg"


def test_og_image_and_json_ld_candidates(resolver):
    html = """
    <meta property="og:image" content="https://cdn.example.com/share.png">
    <script type="application/ld+json">{"@type": "Organization", "logo": {"url": "/logo.svg"}}</script>
    """
    candidates = resolver.find_icon_candidates(html, BASE)
    urls = [c.url for c in candidates]
    assert urls == ["https://cdn.example.com/share.png", "https://example.com/logo.svg"]
    assert resolver.parse_html_for_favicon(html, BASE) == "https://cdn.example.com/share.png"


def test_duplicates_and_data_urls_are_skipped(resolver):
    html = """
    <link rel="icon" href="data:image/png;base64,AAAA">
    <link rel="icon" href="/favicon.ico">
    <link rel="shortcut icon" href="/favicon.ico">
    """
    candidates = resolver.find_icon_candidates(html, BASE)
    assert [c.url for c in candidates] == ["https://example.com/favicon.ico"]


def test_fallback_when_no_icon_declared(resolver):
    assert resolver.parse_html_for_favicon("<html><head></head></html>", BASE) == "https://example.com/favicon.ico"


def test_malformed_json_ld_is_ignored(resolver):
    html = '<script type="application/ld+json">{not json</script>'
    assert resolver.find_icon_candidates(html, BASE) == []


@pytest.mark.asyncio
async def test_resolve_fetches_site_root(resolver, http):
    http.fetch_text.return_value = '<link rel="icon" href="/favicon.png">'

    icon_url = await resolver.resolve_icon_url("https://example.com/section/rss.xml")

    assert icon_url == "https://example.com/favicon.png"
    assert http.fetch_text.await_args[0][0] == "https://example.com"


@pytest.mark.asyncio
async def test_resolve_applies_domain_rewrite(resolver, http):
    http.fetch_text.return_value = ""

    icon_url = await resolver.resolve_icon_url("https://rss.walla.co.il/feed/22")

    assert http.fetch_text.await_args[0][0] == "https://www.walla.co.il"
    assert icon_url == "https://www.walla.co.il/favicon.ico"


@pytest.mark.asyncio
async def test_resolve_without_domain_returns_none(resolver, http):
    assert await resolver.resolve_icon_url("relative/path") is None
    http.fetch_text.assert_not_called()


@pytest.mark.asyncio
async def test_resolve_propagates_network_errors(resolver, http):
    http.fetch_text.side_effect = NetworkError("HTTP 503", url=BASE, status=503)

    with pytest.raises(NetworkError):
        await resolver.resolve_icon_url("https://example.com/rss")
