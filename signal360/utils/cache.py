"""File-based cache for price series, injected into the collaborators that use it."""

from __future__ import annotations

import hashlib
import json
import time
from pathlib import Path
from typing import Optional

import pandas as pd

from signal360.config import Paths


class DataCache:
    """File-based cache with TTL and a bounded number of entries.

    The oldest entries (by modification time) are evicted once
    ``max_entries`` is exceeded.
    """

    def __init__(
        self,
        category: str = "general",
        ttl_hours: float = 24.0,
        max_entries: int = 256,
        cache_dir: Optional[Path] = None,
    ):
        self.cache_dir = (cache_dir or Paths.DATA_CACHE) / category
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = ttl_hours * 3600
        self.max_entries = max_entries

    def _key_path(self, key: str, ext: str = "json") -> Path:
        hashed = hashlib.md5(key.encode()).hexdigest()
        return self.cache_dir / f"{hashed}.{ext}"

    def _expired(self, path: Path) -> bool:
        return time.time() - path.stat().st_mtime > self.ttl_seconds

    def _evict(self) -> None:
        entries = sorted(self.cache_dir.iterdir(), key=lambda p: p.stat().st_mtime)
        while len(entries) > self.max_entries:
            entries.pop(0).unlink(missing_ok=True)

    def __len__(self) -> int:
        return sum(1 for _ in self.cache_dir.iterdir())

    def get(self, key: str) -> dict | None:
        """Retrieve cached JSON data if not expired."""
        path = self._key_path(key)
        if not path.exists():
            return None
        if self._expired(path):
            path.unlink()
            return None
        with open(path) as f:
            return json.load(f)

    def set(self, key: str, data: dict) -> None:
        """Store JSON data in cache."""
        path = self._key_path(key)
        with open(path, "w") as f:
            json.dump(data, f)
        self._evict()

    def get_df(self, key: str) -> pd.DataFrame | None:
        """Retrieve cached DataFrame (parquet)."""
        path = self._key_path(key, ext="parquet")
        if not path.exists():
            return None
        if self._expired(path):
            path.unlink()
            return None
        return pd.read_parquet(path)

    def set_df(self, key: str, df: pd.DataFrame) -> None:
        """Store DataFrame as parquet."""
        path = self._key_path(key, ext="parquet")
        df.to_parquet(path)
        self._evict()

    def clear(self) -> None:
        for path in self.cache_dir.iterdir():
            path.unlink(missing_ok=True)
