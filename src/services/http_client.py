"""
Shared aiohttp transport for feeds, HTML pages and icon downloads.
"""

import asyncio
import logging
import ssl
from typing import Dict, Optional
from urllib.parse import urljoin

import aiohttp
import certifi

from src.services.errors import NetworkError


BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/117.0.0.0 Safari/537.36"
)

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
FEED_ACCEPT = "application/rss+xml,application/atom+xml,application/xml;q=0.9,*/*;q=0.8"
IMAGE_ACCEPT = "image/*,*/*;q=0.8"

REDIRECT_STATUSES = {301, 302, 307, 308}
DEFAULT_MAX_ICON_BYTES = 1024 * 1024  # 1 MiB


class HttpClient:
    """
    Thin aiohttp wrapper with browser-like headers, manual redirect handling,
    per-request timeouts and size-bounded binary downloads.

    Redirects are re-issued by hand so that relative Location headers resolve
    against the requesting URL. Content-Encoding (gzip, deflate, br) is
    decoded by aiohttp.
    """

    def __init__(
        self,
        timeout: float = 30,
        max_redirects: int = 10,
        verify_ssl: bool = False,
        user_agent: str = BROWSER_USER_AGENT,
    ):
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.verify_ssl = verify_ssl
        self.user_agent = user_agent
        self.logger = logging.getLogger(__name__)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            if self.verify_ssl:
                connector = aiohttp.TCPConnector(ssl=ssl.create_default_context(cafile=certifi.where()))
            else:
                # News sites with self-signed or incomplete chains are common
                connector = aiohttp.TCPConnector(ssl=False)
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=connector,
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self, accept: str) -> Dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept": accept,
            "Accept-Language": "en-US,en;q=0.9,he;q=0.8",
            "Accept-Encoding": "gzip, deflate, br",
            "Connection": "keep-alive",
        }

    async def fetch_text(self, url: str, accept: str = HTML_ACCEPT) -> str:
        """
        GET a URL and return the decoded body.

        Raises:
            NetworkError: on timeout, connection failure or a final status other than 200
        """
        body, charset = await self._request(url, accept)
        return body.decode(charset or "utf-8", errors="replace")

    async def fetch_bytes(self, url: str, max_bytes: int = DEFAULT_MAX_ICON_BYTES) -> bytes:
        """
        GET a URL into memory, aborting once more than ``max_bytes`` arrive.

        Raises:
            NetworkError: on failure, oversize payloads or an empty body
        """
        body, _ = await self._request(url, IMAGE_ACCEPT, max_bytes=max_bytes)
        if not body:
            raise NetworkError(f"No data received from {url}", url=url)
        return body

    async def _request(self, url: str, accept: str, max_bytes: Optional[int] = None):
        session = await self._get_session()
        current_url = url

        try:
            for _ in range(self.max_redirects + 1):
                async with session.get(
                    current_url,
                    headers=self._headers(accept),
                    allow_redirects=False,
                ) as resp:
                    if resp.status in REDIRECT_STATUSES:
                        location = resp.headers.get("Location")
                        if location:
                            next_url = urljoin(current_url, location)
                            self.logger.debug(f"Following {resp.status} redirect: {current_url} -> {next_url}")
                            current_url = next_url
                            continue

                    if resp.status != 200:
                        raise NetworkError(f"HTTP {resp.status} for {current_url}", url=current_url, status=resp.status)

                    if max_bytes is None:
                        return await resp.read(), resp.charset

                    chunks = []
                    total = 0
                    async for chunk in resp.content.iter_chunked(16 * 1024):
                        total += len(chunk)
                        if total > max_bytes:
                            raise NetworkError(
                                f"Payload from {current_url} exceeds {max_bytes} bytes, aborted",
                                url=current_url,
                            )
                        chunks.append(chunk)
                    return b"".join(chunks), resp.charset

            raise NetworkError(f"Too many redirects for {url}", url=url)

        except asyncio.TimeoutError as e:
            raise NetworkError(f"Request timeout for {current_url}", url=current_url) from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Request to {current_url} failed: {e}", url=current_url) from e
