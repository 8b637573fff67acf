import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

logger = logging.getLogger(__name__)

CACHE_DIR = Path("data_cache")


def key_path(prefix: str, key: str, suffix: str = ".csv", cache_dir=None) -> Path:
    h = hashlib.sha256(key.encode()).hexdigest()[:16]
    return Path(cache_dir or CACHE_DIR) / f"{prefix}_{h}{suffix}"


@dataclass
class CacheHealth:
    """Disk-cache health passed to whoever uses the cache.

    After ``max_failures`` consecutive errors the disk layer is skipped until
    ``cooldown`` seconds have passed; the next success resets everything.
    """
    max_failures: int = 3
    cooldown: float = 60.0
    failures: int = 0
    last_error: Optional[str] = None
    _tripped_at: Optional[float] = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def available(self) -> bool:
        with self._lock:
            if self._tripped_at is None:
                return True
            return time.monotonic() - self._tripped_at >= self.cooldown

    def record_success(self):
        with self._lock:
            if self._tripped_at is not None:
                logger.info("disk cache recovered after %d failures", self.failures)
            self.failures = 0
            self.last_error = None
            self._tripped_at = None

    def record_failure(self, exc: Exception):
        with self._lock:
            self.failures += 1
            self.last_error = str(exc)
            if self.failures >= self.max_failures:
                self._tripped_at = time.monotonic()
        logger.warning("disk cache error (%d in a row): %s", self.failures, exc)


def _cache_read(path: Path) -> Optional[pd.DataFrame]:
    if path.exists():
        return pd.read_csv(path, index_col=0, parse_dates=True)
    return None


def _cache_write(df: pd.DataFrame, path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path)


class PriceCache:
    """Read-mostly frame cache shared by concurrent backtests.

    Memory first, then CSV files under ``cache_dir``. ``cache_dir=None``
    keeps everything in memory.
    """

    def __init__(self, cache_dir=CACHE_DIR, health: Optional[CacheHealth] = None):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.health = health or CacheHealth()
        self._mem: Dict[str, pd.DataFrame] = {}
        self._lock = threading.RLock()

    def _path(self, prefix: str, key: str) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        return key_path(prefix, key, cache_dir=self.cache_dir)

    def get(self, prefix: str, key: str) -> Optional[pd.DataFrame]:
        mkey = f"{prefix}|{key}"
        with self._lock:
            if mkey in self._mem:
                return self._mem[mkey].copy()
        path = self._path(prefix, key)
        if path is None or not self.health.available:
            return None
        try:
            df = _cache_read(path)
        except (OSError, ValueError, pd.errors.ParserError) as exc:
            self.health.record_failure(exc)
            return None
        self.health.record_success()
        if df is not None:
            with self._lock:
                self._mem[mkey] = df
            return df.copy()
        return None

    def put(self, prefix: str, key: str, df: pd.DataFrame):
        with self._lock:
            self._mem[f"{prefix}|{key}"] = df.copy()
        path = self._path(prefix, key)
        if path is None or not self.health.available:
            return
        try:
            _cache_write(df, path)
        except OSError as exc:
            self.health.record_failure(exc)
            return
        self.health.record_success()
