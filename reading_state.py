"""Reading progress persisted in the key/value store: last read, bookmarks, khitma plan, theme."""
from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from storage import BOOKMARKS_KEY, KHITMA_KEY, LAST_READ_KEY, THEME_KEY, KeyValueStore

LOGGER = logging.getLogger(__name__)

TOTAL_PAGES = 604
TOTAL_VERSES = 6236
PORTIONS_PER_DAY = 5
KHITMA_MODES = ("pages", "verses")
THEMES = ("light", "dark")


def _now_ms() -> int:
    return int(time.time() * 1000)


# -- Last read -----------------------------------------------------------------
def save_last_read(kv: KeyValueStore, surah_number: int, surah_name: str, verse_number: int = 1) -> None:
    kv.set(
        LAST_READ_KEY,
        {
            "surahNumber": surah_number,
            "surahName": surah_name,
            "verseNumber": verse_number,
            "timestamp": _now_ms(),
        },
    )


def get_last_read(kv: KeyValueStore) -> Optional[Dict[str, Any]]:
    value = kv.get(LAST_READ_KEY)
    return value if isinstance(value, dict) else None


# -- Bookmarks -------------------------------------------------------------------
def get_bookmarks(kv: KeyValueStore) -> List[Dict[str, Any]]:
    value = kv.get(BOOKMARKS_KEY, [])
    return list(value) if isinstance(value, list) else []


def is_bookmarked(kv: KeyValueStore, surah_number: int) -> bool:
    return any(item.get("number") == surah_number for item in get_bookmarks(kv))


def toggle_bookmark(kv: KeyValueStore, surah: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Add *surah* to the front of the bookmark list, or remove it if already present."""
    bookmarks = get_bookmarks(kv)
    number = surah.get("number")
    if any(item.get("number") == number for item in bookmarks):
        updated = [item for item in bookmarks if item.get("number") != number]
        LOGGER.debug("Removed bookmark for surah %s", number)
    else:
        record = {
            "number": number,
            "name": surah.get("name"),
            "englishName": surah.get("englishName") or surah.get("transliteration"),
            "verses": surah.get("verses") or surah.get("numberOfAyahs"),
            "timestamp": _now_ms(),
        }
        updated = [record, *bookmarks]
        LOGGER.debug("Added bookmark for surah %s", number)
    kv.set(BOOKMARKS_KEY, updated)
    return updated


# -- Khitma plan ----------------------------------------------------------------
@dataclass
class KhitmaPlan:
    """A plan to complete the whole text in *days*, split into five portions per day."""

    days: int = 30
    mode: str = "pages"
    is_started: bool = False
    progress: int = 0

    @property
    def total_units(self) -> int:
        return TOTAL_PAGES if self.mode == "pages" else TOTAL_VERSES

    @property
    def daily(self) -> int:
        return math.ceil(self.total_units / self.days)

    @property
    def per_prayer(self) -> int:
        return math.ceil(self.daily / PORTIONS_PER_DAY)

    @property
    def total_portions(self) -> int:
        return self.days * PORTIONS_PER_DAY

    @property
    def progress_percentage(self) -> int:
        return min(100, round(self.progress / self.total_portions * 100))

    @property
    def remaining_days(self) -> int:
        return max(0, self.days - self.progress // PORTIONS_PER_DAY)

    def completion_date(self, today: Optional[date] = None) -> date:
        today = today or date.today()
        return today + timedelta(days=self.days - self.progress // PORTIONS_PER_DAY)

    def set_days(self, days: int) -> None:
        if days > 0:
            self.days = days

    def start(self) -> None:
        self.is_started = True
        self.progress = 0

    def reset(self) -> None:
        self.is_started = False
        self.progress = 0

    def finish_portion(self) -> None:
        if self.progress < self.total_portions:
            self.progress += 1


def load_khitma(kv: KeyValueStore) -> KhitmaPlan:
    raw = kv.get(KHITMA_KEY)
    if not isinstance(raw, dict):
        return KhitmaPlan()
    try:
        days = int(raw.get("days", 30))
        progress = int(raw.get("progress", 0))
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring malformed khitma state %s", raw)
        return KhitmaPlan()
    mode = raw.get("mode") if raw.get("mode") in KHITMA_MODES else "pages"
    return KhitmaPlan(
        days=days if days > 0 else 30,
        mode=mode,
        is_started=bool(raw.get("isStarted", False)),
        progress=max(0, progress),
    )


def save_khitma(kv: KeyValueStore, plan: KhitmaPlan) -> None:
    state = asdict(plan)
    kv.set(
        KHITMA_KEY,
        {
            "days": state["days"],
            "mode": state["mode"],
            "isStarted": state["is_started"],
            "progress": state["progress"],
        },
    )


# -- Theme ----------------------------------------------------------------------
def get_theme(kv: KeyValueStore) -> str:
    value = kv.get(THEME_KEY)
    return value if value in THEMES else "light"


def set_theme(kv: KeyValueStore, theme: str) -> None:
    if theme not in THEMES:
        raise ValueError(f"Unknown theme {theme!r}")
    kv.set(THEME_KEY, theme)
