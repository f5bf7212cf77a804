"""Local SQLite database backing the key/value store and the offline content caches.

The database is a durability cache: entries are written after the first
successful upstream fetch and are never evicted, except when the user clears
them explicitly.  Any storage failure (missing file permissions, full disk,
corrupted schema) turns the affected operation into a miss or a no-op so the
callers simply behave as if nothing had been cached.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from errors import CacheUnavailable
from notifications import CacheHitEvent, CacheHitNotifier, cache_hits

LOGGER = logging.getLogger(__name__)

# Key names are part of the persisted contract; do not rename.
LAST_READ_KEY = "quran_last_read"
BOOKMARKS_KEY = "quran_bookmarks"
KHITMA_KEY = "khitma_state"
THEME_KEY = "theme"
DAILY_AYAH_KEY = "daily_ayah"
RECITER_KEY = "quran_reciter"

LEGACY_KEYS = (LAST_READ_KEY, BOOKMARKS_KEY, KHITMA_KEY, THEME_KEY, RECITER_KEY)
MIGRATION_MARKER = "_legacy_state_migrated"

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS mushaf_pages (
    page_number INTEGER PRIMARY KEY,
    data TEXT NOT NULL,
    timestamp REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS tafsirs (
    verse_key TEXT NOT NULL,
    tafsir_id INTEGER NOT NULL,
    text TEXT NOT NULL,
    timestamp REAL NOT NULL,
    PRIMARY KEY (verse_key, tafsir_id)
);

CREATE TABLE IF NOT EXISTS verse_info (
    verse_key TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    timestamp REAL NOT NULL
);
"""

TABLES = ("kv_store", "mushaf_pages", "tafsirs", "verse_info")


@dataclass(frozen=True)
class CacheEntry:
    key: Any
    value: Any
    timestamp: float


class LocalDatabase:
    """Thread-safe wrapper around one SQLite connection that degrades to no-ops."""

    def __init__(
        self,
        path: Path,
        notifier: Optional[CacheHitNotifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self.notifier = notifier or cache_hits
        self._clock = clock
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        try:
            self._conn = self._open()
        except CacheUnavailable:
            LOGGER.warning("Local database disabled; content will not be cached", exc_info=True)

    @property
    def available(self) -> bool:
        return self._conn is not None

    def now(self) -> float:
        return self._clock()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        """Run a statement and commit, raising :class:`CacheUnavailable` on any SQLite failure."""
        with self._lock:
            if self._conn is None:
                raise CacheUnavailable(f"Local database {self.path} is unavailable")
            try:
                rows = self._conn.execute(sql, tuple(params)).fetchall()
                self._conn.commit()
            except sqlite3.Error as exc:
                raise CacheUnavailable(f"SQLite error on {self.path}: {exc}") from exc
        return rows

    def clear(self) -> None:
        """Delete every cached entry and stored setting."""
        for table in TABLES:
            try:
                self.execute(f"DELETE FROM {table}")
            except CacheUnavailable:
                LOGGER.warning("Failed to clear table %s", table, exc_info=True)
                return
        LOGGER.info("Cleared local database %s", self.path)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _open(self) -> sqlite3.Connection:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.executescript(SCHEMA)
            conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise CacheUnavailable(f"Cannot open local database {self.path}: {exc}") from exc
        LOGGER.debug("Opened local database %s", self.path)
        return conn


class KeyValueStore:
    """Untyped JSON settings/progress blobs keyed by name."""

    def __init__(self, db: LocalDatabase) -> None:
        self._db = db

    def get(self, key: str, default: Any = None) -> Any:
        try:
            rows = self._db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
        except CacheUnavailable:
            LOGGER.debug("kv get(%s) treated as miss", key, exc_info=True)
            return default
        if not rows:
            return default
        try:
            return json.loads(rows[0]["value"])
        except (TypeError, ValueError):
            LOGGER.warning("Discarding undecodable value stored under %s", key)
            return default

    def set(self, key: str, value: Any) -> bool:
        try:
            encoded = json.dumps(value, ensure_ascii=False)
            self._db.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                (key, encoded),
            )
        except (CacheUnavailable, TypeError, ValueError):
            LOGGER.warning("Failed to store %s", key, exc_info=True)
            return False
        return True

    def delete(self, key: str) -> None:
        try:
            self._db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        except CacheUnavailable:
            LOGGER.warning("Failed to delete %s", key, exc_info=True)


class ResourceCache:
    """Timestamped content table keyed by natural identifiers (last writer wins)."""

    table = ""
    event_type = ""
    key_columns: Tuple[str, ...] = ()
    value_column = "data"

    def __init__(self, db: LocalDatabase) -> None:
        self._db = db

    def get(self, key: Any) -> Optional[CacheEntry]:
        where = " AND ".join(f"{column} = ?" for column in self.key_columns)
        try:
            rows = self._db.execute(
                f"SELECT {self.value_column}, timestamp FROM {self.table} WHERE {where}",
                self._key_params(key),
            )
        except CacheUnavailable:
            LOGGER.debug("%s get(%s) treated as miss", self.table, key, exc_info=True)
            return None
        if not rows:
            return None
        try:
            value = self._decode(rows[0][self.value_column])
        except (TypeError, ValueError):
            LOGGER.warning("Discarding undecodable %s entry %s", self.table, key)
            return None

        LOGGER.debug("Served %s %s from local database", self.event_type, key)
        self._db.notifier.emit(CacheHitEvent(type=self.event_type, id=self._event_id(key)))
        return CacheEntry(key=key, value=value, timestamp=float(rows[0]["timestamp"]))

    def put(self, key: Any, value: Any) -> bool:
        columns = (*self.key_columns, self.value_column, "timestamp")
        placeholders = ", ".join("?" for _ in columns)
        try:
            params = (*self._key_params(key), self._encode(value), self._db.now())
            self._db.execute(
                f"INSERT OR REPLACE INTO {self.table} ({', '.join(columns)}) VALUES ({placeholders})",
                params,
            )
        except (CacheUnavailable, TypeError, ValueError):
            LOGGER.warning("Failed to cache %s entry %s", self.table, key, exc_info=True)
            return False
        return True

    def _key_params(self, key: Any) -> Tuple[Any, ...]:
        return (key,)

    def _event_id(self, key: Any) -> Any:
        return key

    @staticmethod
    def _encode(value: Any) -> str:
        return json.dumps(value, ensure_ascii=False)

    @staticmethod
    def _decode(raw: str) -> Any:
        return json.loads(raw)


class MushafPageCache(ResourceCache):
    table = "mushaf_pages"
    event_type = "page"
    key_columns = ("page_number",)

    def _key_params(self, key: Any) -> Tuple[Any, ...]:
        return (int(key),)


class TafsirCache(ResourceCache):
    """Tafsir text keyed by ``(verse_key, tafsir_id)``."""

    table = "tafsirs"
    event_type = "tafsir"
    key_columns = ("verse_key", "tafsir_id")
    value_column = "text"

    def _key_params(self, key: Any) -> Tuple[Any, ...]:
        verse_key, tafsir_id = key
        return (str(verse_key), int(tafsir_id))

    def _event_id(self, key: Any) -> Any:
        return str(key[0])

    @staticmethod
    def _encode(value: Any) -> str:
        return str(value)

    @staticmethod
    def _decode(raw: str) -> Any:
        return raw


class VerseInfoCache(ResourceCache):
    table = "verse_info"
    event_type = "verse"
    key_columns = ("verse_key",)

    def _key_params(self, key: Any) -> Tuple[Any, ...]:
        return (str(key),)


def migrate_legacy_state(path: Optional[Path], kv: KeyValueStore) -> int:
    """Import settings from an old JSON state file once; return how many keys were copied."""
    if path is None or kv.get(MIGRATION_MARKER):
        return 0
    if not path.exists():
        LOGGER.debug("No legacy state file at %s", path)
        return 0
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload: Dict[str, Any] = json.load(handle)
    except (OSError, ValueError):
        LOGGER.warning("Skipping unreadable legacy state file %s", path, exc_info=True)
        return 0
    if not isinstance(payload, dict):
        return 0

    migrated = 0
    for key in LEGACY_KEYS:
        if key not in payload or kv.get(key) is not None:
            continue
        if kv.set(key, _decode_legacy_value(payload[key])):
            migrated += 1
    kv.set(MIGRATION_MARKER, True)
    LOGGER.info("Migrated %d legacy settings from %s", migrated, path)
    return migrated


def _decode_legacy_value(value: Any) -> Any:
    # The old store held JSON-encoded strings for structured values and raw strings for the theme.
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value
