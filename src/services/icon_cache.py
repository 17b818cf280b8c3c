"""
Two-level favicon cache: an in-memory map for the process lifetime backed by
an IconStore (directory of validated icon files plus a JSON index) that
survives restarts.

Icons are handed out as inline ``data:`` URLs so the display layer never has
to fetch them again.
"""

import asyncio
import base64
import logging
from datetime import datetime
from typing import Dict, Iterable, Optional

from src.models.content import FaviconEntry
from src.services.errors import NetworkError, ValidationError
from src.services.favicon_resolver import FaviconResolver, extract_main_domain
from src.services.http_client import HttpClient, DEFAULT_MAX_ICON_BYTES
from src.services.icon_store import DiskIconStore, IconStore
from src.utils.image_sniffer import (
    MIME_TYPES,
    ImageFormat,
    extract_embedded_png,
    is_valid_image,
    mime_type_for,
)


DEFAULT_RETENTION_DAYS = 30

# Extensions a browser can show directly from the remote URL
DIRECT_FORMATS = (".png", ".gif", ".svg", ".jpg", ".jpeg")


def to_data_url(data: bytes, url_hint: Optional[str] = None) -> str:
    """Inline representation: base64 payload with a sniffed MIME type."""
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type_for(data, url_hint)};base64,{encoded}"


def is_directly_usable(icon_url: str) -> bool:
    url_lower = icon_url.lower()
    return any(ext in url_lower for ext in DIRECT_FORMATS)


class IconCache:
    """
    Favicon references per source URL, memoized in memory and on disk.

    Construct once per process and share it with every aggregation cycle.
    """

    def __init__(
        self,
        resolver: FaviconResolver,
        http: HttpClient,
        store: Optional[IconStore] = None,
        cache_dir: str = "temp_icons",
        max_icon_bytes: int = DEFAULT_MAX_ICON_BYTES,
    ):
        self.resolver = resolver
        self.http = http
        self.store = store or DiskIconStore(cache_dir)
        self.max_icon_bytes = max_icon_bytes
        self.logger = logging.getLogger(__name__)

        # source URL -> entry (disk-backed or remote-only)
        self._entries: Dict[str, FaviconEntry] = {}
        # source URL -> data URL for converted remote ICO references
        self._converted: Dict[str, str] = {}

        self._initialized = False
        # Created on first initialize() so the cache can be built outside a running loop
        self._init_lock: Optional[asyncio.Lock] = None

    async def initialize(self) -> None:
        """Purge invalid files from the store, then restore the index."""
        if self._initialized:
            return
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._initialized:
                return
            await asyncio.to_thread(self.validate_and_clean_cache)
            await asyncio.to_thread(self.load_cache_index)
            self._initialized = True

    # ------------------------------------------------------------------
    # Startup and persistence
    # ------------------------------------------------------------------

    def validate_and_clean_cache(self) -> int:
        """
        Delete every stored file that fails image validation or cannot be read.

        Files accepted leniently because of an icon-looking source URL are
        validated with the same URL hint, taken from the index.
        """
        index = self.store.load_index()
        hints = {
            info.get("cachedFile"): info.get("iconUrl")
            for info in index.values()
            if isinstance(info, dict)
        }

        cleaned = 0
        for location in self.store.list_locations():
            try:
                data = self.store.read(location)
                valid = is_valid_image(data, hints.get(location))
            except OSError as e:
                self.logger.warning(f"Unreadable cached icon {location}: {e}")
                valid = False

            if valid:
                continue
            try:
                self.store.delete(location)
                cleaned += 1
            except OSError as e:
                self.logger.error(f"Error removing corrupted icon {location}: {e}")

        if cleaned:
            self.logger.info(f"Removed {cleaned} corrupted icons from {self.store.description}")
        return cleaned

    def load_cache_index(self) -> int:
        """Restore disk-backed entries whose files still exist."""
        index = self.store.load_index()
        loaded = 0
        for source_url, info in index.items():
            if not isinstance(info, dict):
                continue
            cached_file = info.get("cachedFile")
            if not cached_file or not self.store.exists(cached_file):
                continue

            timestamp = info.get("timestamp")
            self._entries[source_url] = FaviconEntry(
                source_url=source_url,
                resolved_icon_url=info.get("iconUrl"),
                cached_file_path=cached_file,
                last_validated_at=datetime.fromtimestamp(timestamp / 1000) if timestamp else datetime.now(),
            )
            loaded += 1

        self.logger.info(f"Loaded {loaded} of {len(index)} cached icons from {self.store.description}")
        return loaded

    def _index_snapshot(self) -> Dict[str, dict]:
        index = {}
        for source_url, entry in self._entries.items():
            if entry.cached_file_path and self.store.owns(entry.cached_file_path):
                index[source_url] = {
                    "cachedFile": entry.cached_file_path,
                    "iconUrl": entry.resolved_icon_url,
                    "timestamp": int(entry.last_validated_at.timestamp() * 1000),
                }
        return index

    async def save_cache_index(self) -> None:
        index = self._index_snapshot()
        try:
            await asyncio.to_thread(self.store.save_index, index)
            self.logger.debug(f"Saved cache index with {len(index)} entries")
        except OSError as e:
            self.logger.error(f"Error saving cache index: {e}")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_icon_references(self, source_urls: Iterable[str]) -> Dict[str, Optional[str]]:
        """
        Resolve icons for many sources concurrently and wait for all of them.

        Each source URL is resolved once per batch; results land in the shared
        map before it is returned. Errors outside the per-icon recovery path
        propagate to the caller.
        """
        await self.initialize()

        unique_urls = list(dict.fromkeys(source_urls))
        results: Dict[str, Optional[str]] = {}

        async def resolve_one(url: str) -> None:
            results[url] = await self.get_icon_reference(url)

        await asyncio.gather(*(resolve_one(url) for url in unique_urls))
        return results

    async def get_icon_reference(self, source_url: str) -> Optional[str]:
        """
        Inline (or remote) icon reference for a source, or None.

        Order: memory entry, deterministic file in the store, remote
        reference from an earlier resolution, then a fresh resolution.
        """
        await self.initialize()

        entry = self._entries.get(source_url)

        if entry and entry.cached_file_path:
            data_url = await self._load_inline(entry.cached_file_path, entry.resolved_icon_url)
            if data_url:
                entry.last_validated_at = datetime.now()
                return data_url
            self.logger.info(f"Cached icon for {source_url} is invalid, resolving again")
            del self._entries[source_url]
            await self.save_cache_index()
            entry = None

        if entry is None:
            location = self.store.location_for(FaviconEntry(source_url).cache_filename)
            data_url = await self._load_inline(location, None)
            if data_url:
                self.logger.debug(f"Found cached icon on disk for {source_url}: {location}")
                self._entries[source_url] = FaviconEntry(source_url=source_url, cached_file_path=location)
                await self.save_cache_index()
                return data_url

        if entry and entry.resolved_icon_url:
            return await self.process_favicon_url(entry.resolved_icon_url, source_url)

        return await self._resolve_and_cache(source_url)

    async def _resolve_and_cache(self, source_url: str) -> Optional[str]:
        try:
            icon_url = await self.resolver.resolve_icon_url(source_url)
        except NetworkError as e:
            main_domain = extract_main_domain(source_url)
            if not main_domain:
                return None
            icon_url = main_domain + "/favicon.ico"
            self.logger.warning(f"Could not fetch site HTML for {source_url} ({e}), trying {icon_url}")

        if not icon_url:
            return None

        return await self.download_and_cache_icon(icon_url, source_url)

    async def download_and_cache_icon(self, icon_url: str, source_url: str) -> Optional[str]:
        """
        Download, validate and persist an icon.

        Returns:
            Data URL on success, the original icon URL when the bytes are not a
            valid image or cannot be stored, None when the download fails
        """
        try:
            data = await self.http.fetch_bytes(icon_url, max_bytes=self.max_icon_bytes)
        except NetworkError as e:
            self.logger.warning(f"Icon download failed for {source_url}: {e}")
            return None

        try:
            self._validate(data, icon_url)
        except ValidationError as e:
            self.logger.warning(str(e))
            self._entries[source_url] = FaviconEntry(source_url=source_url, resolved_icon_url=icon_url)
            return icon_url

        entry = FaviconEntry(source_url=source_url, resolved_icon_url=icon_url)
        try:
            entry.cached_file_path = await asyncio.to_thread(self.store.write, entry.cache_filename, data)
        except OSError as e:
            self.logger.error(f"Error saving icon for {source_url}: {e}")
            self._entries[source_url] = FaviconEntry(source_url=source_url, resolved_icon_url=icon_url)
            return icon_url

        self._entries[source_url] = entry
        await self.save_cache_index()
        self.logger.info(f"Cached icon for {source_url} from {icon_url} ({len(data)} bytes)")
        return to_data_url(data, icon_url)

    async def process_favicon_url(self, favicon_url: str, source_url: str) -> Optional[str]:
        """
        Turn a remote icon URL into something the display can use.

        Data and file URLs, and PNG/GIF/SVG/JPEG URLs, are returned unchanged.
        ICO-like URLs are downloaded once and converted: an embedded PNG
        stream becomes an ``image/png`` data URL, anything else is inlined as
        ``image/x-icon``.
        """
        if not favicon_url:
            return None
        if favicon_url.startswith("data:") or favicon_url.startswith("file://"):
            return favicon_url
        if is_directly_usable(favicon_url):
            return favicon_url

        if source_url in self._converted:
            return self._converted[source_url]

        url_lower = favicon_url.lower()
        if ".ico" not in url_lower and "favicon" not in url_lower:
            return favicon_url

        try:
            ico_data = await self.http.fetch_bytes(favicon_url, max_bytes=self.max_icon_bytes)
        except NetworkError as e:
            self.logger.warning(f"Could not download ICO {favicon_url}: {e}")
            self._converted[source_url] = favicon_url
            return favicon_url

        png_data = extract_embedded_png(ico_data)
        if png_data:
            converted = to_data_url(png_data)
        else:
            encoded = base64.b64encode(ico_data).decode("ascii")
            converted = f"data:{MIME_TYPES[ImageFormat.ICO]};base64,{encoded}"

        self._converted[source_url] = converted
        return converted

    @staticmethod
    def _validate(data: bytes, icon_url: str) -> None:
        if not is_valid_image(data, icon_url):
            raise ValidationError(f"Downloaded data from {icon_url} is not a valid image ({len(data)} bytes)")

    async def _load_inline(self, location: str, url_hint: Optional[str]) -> Optional[str]:
        """Read and re-validate a stored icon; invalid files are deleted."""
        try:
            data = await asyncio.to_thread(self.store.read, location)
        except OSError as e:
            self.logger.warning(f"Error reading cached icon {location}: {e}")
            data = None
            await self._delete_quietly(location)

        if not data:
            return None

        if not is_valid_image(data, url_hint):
            self.logger.warning(f"Removing corrupted cached icon {location}")
            await self._delete_quietly(location)
            return None

        return to_data_url(data, url_hint)

    async def _delete_quietly(self, location: str) -> None:
        try:
            await asyncio.to_thread(self.store.delete, location)
        except OSError as e:
            self.logger.error(f"Error removing cached icon {location}: {e}")

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def cleanup_old_cache(self, days: int = DEFAULT_RETENTION_DAYS) -> int:
        """
        Remove cached files older than ``days``.
        Returns number of removed files.
        """
        await self.initialize()
        max_age = days * 24 * 60 * 60

        def sweep() -> int:
            removed = 0
            for location in self.store.list_locations():
                try:
                    if self.store.age_seconds(location) > max_age:
                        self.store.delete(location)
                        removed += 1
                except OSError as e:
                    self.logger.error(f"Error cleaning up {location}: {e}")
            return removed

        removed = await asyncio.to_thread(sweep)

        if removed:
            stale = [
                url for url, entry in self._entries.items()
                if entry.cached_file_path and not self.store.exists(entry.cached_file_path)
            ]
            for url in stale:
                del self._entries[url]
            await self.save_cache_index()
            self.logger.info(f"Cleaned up {removed} cached icons older than {days} days")

        return removed

    async def clear_cache(self) -> dict:
        """
        Wipe memory and disk state entirely.
        Returns statistics about cleared data.
        """
        self.logger.warning("Clearing ALL icon cache data")
        stats = {
            "memory_entries": len(self._entries),
            "converted_entries": len(self._converted),
            "files_removed": 0,
        }
        self._entries.clear()
        self._converted.clear()
        try:
            stats["files_removed"] = await asyncio.to_thread(self.store.clear)
        except OSError as e:
            self.logger.error(f"Error clearing icon store: {e}")
        return stats

    def get_cache_stats(self) -> dict:
        total_files = 0
        total_size = 0
        try:
            for location in self.store.list_locations():
                total_files += 1
                try:
                    total_size += self.store.size(location)
                except OSError:
                    continue
        except OSError as e:
            self.logger.error(f"Error getting cache stats: {e}")

        return {
            "total_files": total_files,
            "total_size": total_size,
            "cache_directory": self.store.description,
            "memory_cache_size": len(self._entries),
            "converted_cache_size": len(self._converted),
        }

    def get_entry(self, source_url: str) -> Optional[FaviconEntry]:
        return self._entries.get(source_url)
