"""
Storage backends for the icon cache.

An IconStore holds opaque icon blobs under deterministic names plus one index
document mapping source URLs to stored blobs. The index is always rewritten
as a whole snapshot, never appended to.
"""

import json
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


INDEX_FILENAME = "cache_index.json"


class IconStore(ABC):
    """Persistent home for cached icon bytes and the cache index."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable location of the store"""

    @abstractmethod
    def location_for(self, filename: str) -> str:
        """Location a blob named ``filename`` is (or would be) stored at."""

    @abstractmethod
    def owns(self, location: str) -> bool:
        """Whether ``location`` points inside this store."""

    @abstractmethod
    def exists(self, location: str) -> bool: ...

    @abstractmethod
    def read(self, location: str) -> Optional[bytes]:
        """Blob contents, or None if nothing is stored there."""

    @abstractmethod
    def write(self, filename: str, data: bytes) -> str:
        """Store ``data`` under ``filename`` and return its location."""

    @abstractmethod
    def delete(self, location: str) -> bool: ...

    @abstractmethod
    def list_locations(self) -> List[str]:
        """Every stored blob, excluding the index."""

    @abstractmethod
    def age_seconds(self, location: str) -> float:
        """Seconds since the blob was last written."""

    @abstractmethod
    def size(self, location: str) -> int: ...

    @abstractmethod
    def load_index(self) -> Dict[str, Any]: ...

    @abstractmethod
    def save_index(self, index: Dict[str, Any]) -> None: ...

    @abstractmethod
    def clear(self) -> int:
        """Remove every blob and the index; return the number of blobs removed."""


class DiskIconStore(IconStore):
    """
    Icons as individual files in one directory, next to a JSON index file.
    """

    def __init__(self, cache_dir: str = "temp_icons"):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.index_path = self.cache_dir / INDEX_FILENAME
        self.logger = logging.getLogger(__name__)

    @property
    def description(self) -> str:
        return str(self.cache_dir)

    def location_for(self, filename: str) -> str:
        return str(self.cache_dir / filename)

    def owns(self, location: str) -> bool:
        try:
            return Path(location).resolve().parent == self.cache_dir.resolve()
        except (OSError, ValueError):
            return False

    def exists(self, location: str) -> bool:
        return Path(location).is_file()

    def read(self, location: str) -> Optional[bytes]:
        path = Path(location)
        if not path.is_file():
            return None
        return path.read_bytes()

    def write(self, filename: str, data: bytes) -> str:
        target = self.cache_dir / filename
        self._atomic_write(target, data)
        return str(target)

    def delete(self, location: str) -> bool:
        try:
            Path(location).unlink()
            return True
        except FileNotFoundError:
            return False

    def list_locations(self) -> List[str]:
        return sorted(
            str(path)
            for path in self.cache_dir.iterdir()
            if path.is_file() and path.name != INDEX_FILENAME and not path.name.endswith(".tmp")
        )

    def age_seconds(self, location: str) -> float:
        return time.time() - Path(location).stat().st_mtime

    def size(self, location: str) -> int:
        return Path(location).stat().st_size

    def load_index(self) -> Dict[str, Any]:
        if not self.index_path.exists():
            return {}
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                index = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.error(f"Error loading cache index {self.index_path}: {e}")
            return {}
        if not isinstance(index, dict):
            self.logger.error(f"Cache index {self.index_path} is not a mapping, ignoring it")
            return {}
        return index

    def save_index(self, index: Dict[str, Any]) -> None:
        payload = json.dumps(index, indent=2, ensure_ascii=False).encode("utf-8")
        self._atomic_write(self.index_path, payload)

    def clear(self) -> int:
        removed = 0
        for path in self.cache_dir.iterdir():
            if not path.is_file():
                continue
            try:
                path.unlink()
            except OSError as e:
                self.logger.error(f"Error removing {path.name}: {e}")
                continue
            if path.name != INDEX_FILENAME:
                removed += 1
        return removed

    def _atomic_write(self, target: Path, data: bytes) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=str(self.cache_dir), suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


class MemoryIconStore(IconStore):
    """Process-local store; nothing survives a restart unless the instance is reused."""

    PREFIX = "memory://"

    def __init__(self):
        self._blobs: Dict[str, Tuple[bytes, float]] = {}
        self._index: Dict[str, Any] = {}

    @property
    def description(self) -> str:
        return self.PREFIX

    def location_for(self, filename: str) -> str:
        return f"{self.PREFIX}{filename}"

    def owns(self, location: str) -> bool:
        return location.startswith(self.PREFIX)

    def exists(self, location: str) -> bool:
        return location in self._blobs

    def read(self, location: str) -> Optional[bytes]:
        blob = self._blobs.get(location)
        return blob[0] if blob else None

    def write(self, filename: str, data: bytes) -> str:
        location = self.location_for(filename)
        self._blobs[location] = (bytes(data), time.time())
        return location

    def delete(self, location: str) -> bool:
        return self._blobs.pop(location, None) is not None

    def list_locations(self) -> List[str]:
        return sorted(self._blobs)

    def age_seconds(self, location: str) -> float:
        return time.time() - self._blobs[location][1]

    def size(self, location: str) -> int:
        return len(self._blobs[location][0])

    def load_index(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self._index))

    def save_index(self, index: Dict[str, Any]) -> None:
        self._index = json.loads(json.dumps(index))

    def clear(self) -> int:
        removed = len(self._blobs)
        self._blobs.clear()
        self._index = {}
        return removed
