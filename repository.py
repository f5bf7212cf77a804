"""Read-through access to Qur'an content: local database first, upstream on a miss."""
from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

import pytz
from tzlocal import get_localzone_name

from content import PAGE_FIELDS, QuranContentClient, parse_verse_key
from errors import UpstreamFetchError
from storage import DAILY_AYAH_KEY, KeyValueStore, MushafPageCache, TafsirCache, VerseInfoCache

LOGGER = logging.getLogger(__name__)

TOTAL_PAGES = 604
TOTAL_SURAHS = 114
HTML_TAG = re.compile(r"<[^>]+>")
SURAH_FIELDS = ("text_uthmani", "chapter_id", "juz_number", "page_number")
RACKCDN_HOST = re.compile(r"\.r\d+\.cf\d+\.rackcdn\.com")
VERSE_INFO_FIELDS = ("text_uthmani", "chapter_id", "juz_number", "hizb_number", "page_number")


def current_date(timezone_name: Optional[str] = None) -> date:
    """Today's date in *timezone_name*, the system zone, or UTC as a last resort."""
    try:
        zone = pytz.timezone(timezone_name or get_localzone_name())
    except Exception:
        LOGGER.warning("Unknown timezone %r; falling back to UTC", timezone_name)
        zone = pytz.UTC
    return datetime.now(zone).date()


def fix_image_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return url
    url = RACKCDN_HOST.sub(".ssl.cf1.rackcdn.com", url)
    return f"https:{url}" if url.startswith("//") else url


def normalize_page_verses(verses: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    processed = []
    for verse in verses:
        chapter_id = verse.get("chapter_id")
        if not chapter_id:
            continue
        processed.append(
            {
                **verse,
                "verse_key": verse.get("verse_key"),
                "numberInSurah": verse.get("verse_number"),
                "text": verse.get("text_uthmani"),
                "image_url": fix_image_url(verse.get("image_url")),
                "image_width": verse.get("image_width"),
                "code_v2": verse.get("code_v2"),
                "juz": verse.get("juz_number"),
                "words": [
                    {**word, "char_type": word.get("char_type_name")}
                    for word in (verse.get("words") or [])
                ],
                "surah": {"number": int(chapter_id)},
            }
        )
    return processed


def _map_chapter(chapter: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "number": chapter.get("id"),
        "name": chapter.get("name_arabic"),
        "transliteration": chapter.get("name_simple"),
        "translation": (chapter.get("translated_name") or {}).get("name"),
        "verses": chapter.get("verses_count"),
        "revelation": chapter.get("revelation_place"),
    }


class ContentRepository:
    """Combines the upstream client with the offline caches."""

    def __init__(
        self,
        client: QuranContentClient,
        pages: MushafPageCache,
        tafsirs: TafsirCache,
        verses: VerseInfoCache,
        kv: KeyValueStore,
        timezone: Optional[str] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self._client = client
        self._pages = pages
        self._tafsirs = tafsirs
        self._verses = verses
        self._kv = kv
        self._today = today or (lambda: current_date(timezone))
        self._surahs: Optional[List[Dict[str, Any]]] = None
        self._surah_verses: Dict[int, List[Dict[str, Any]]] = {}

    def get_all_surahs(self) -> List[Dict[str, Any]]:
        if self._surahs is not None:
            return self._surahs
        try:
            surahs = [_map_chapter(chapter) for chapter in self._client.find_all_chapters()]
        except UpstreamFetchError:
            LOGGER.warning("Chapter listing failed; using public fallback listing", exc_info=True)
            surahs = self._client.legacy_surahs()
        if surahs:
            self._surahs = surahs
        return surahs

    def get_surah_name(self, surah_number: int) -> str:
        for surah in self.get_all_surahs():
            if surah.get("number") == surah_number:
                return str(surah.get("name") or "")
        return ""

    def get_surah(self, surah_number: int) -> List[Dict[str, Any]]:
        """All verses of a surah, memoised for the lifetime of the repository."""
        number = int(surah_number)
        if not 1 <= number <= TOTAL_SURAHS:
            raise ValueError(f"Surah number must be between 1 and {TOTAL_SURAHS}, got {surah_number}")
        if number in self._surah_verses:
            return self._surah_verses[number]
        verses = self._client.find_verses_by_chapter(number, fields=SURAH_FIELDS)
        if verses:
            self._surah_verses[number] = verses
        return verses

    def search(self, query: str) -> List[Dict[str, Any]]:
        payload = self._client.search(query)
        results = (payload.get("search") or {}).get("results") or payload.get("results") or []
        return [
            {
                "verse_key": result.get("verse_key"),
                "text": HTML_TAG.sub("", str(result.get("text") or "")),
            }
            for result in results
            if isinstance(result, dict)
        ]

    def get_mushaf_page(self, page_number: int) -> List[Dict[str, Any]]:
        if not 1 <= int(page_number) <= TOTAL_PAGES:
            raise ValueError(f"Page number must be between 1 and {TOTAL_PAGES}, got {page_number}")
        entry = self._pages.get(page_number)
        if entry is not None:
            return entry.value

        verses = self._client.find_verses_by_page(int(page_number), fields=PAGE_FIELDS, words=True)
        processed = normalize_page_verses(verses)
        if processed:
            self._pages.put(page_number, processed)
        return processed

    def get_tafsir(self, verse_key: str, tafsir_id: int) -> str:
        parse_verse_key(verse_key)
        entry = self._tafsirs.get((verse_key, tafsir_id))
        if entry is not None:
            return entry.value
        text = self._client.fetch_tafsir(tafsir_id, verse_key)
        self._tafsirs.put((verse_key, tafsir_id), text)
        return text

    def get_verse_info(self, verse_key: str) -> Dict[str, Any]:
        parse_verse_key(verse_key)
        entry = self._verses.get(verse_key)
        if entry is not None:
            return entry.value
        verse = self._client.find_verse_by_key(verse_key, fields=VERSE_INFO_FIELDS)
        if verse:
            self._verses.put(verse_key, verse)
        return verse

    def get_daily_ayah(self) -> Dict[str, Any]:
        """Return today's ayah, fetching a random verse at most once per calendar date."""
        today = self._today().isoformat()
        cached = self._kv.get(DAILY_AYAH_KEY)
        if isinstance(cached, dict) and cached.get("date") == today and cached.get("ayah"):
            LOGGER.debug("Daily ayah for %s served from cache", today)
            return cached["ayah"]

        verse = self._client.find_random_verse(fields=("text_uthmani", "text_uthmani_simple"))
        ayah = self._build_daily_ayah(verse)
        self._kv.set(DAILY_AYAH_KEY, {"date": today, "ayah": ayah})
        LOGGER.info("Fetched daily ayah %s for %s", ayah.get("verseKey"), today)
        return ayah

    def _build_daily_ayah(self, verse: Dict[str, Any]) -> Dict[str, Any]:
        verse_key = str(verse.get("verse_key") or "")
        surah_number: Optional[int] = None
        number: Optional[int] = None
        try:
            surah_number, number = parse_verse_key(verse_key)
        except ValueError:
            surah_number = _safe_int(verse.get("chapter_id"))
            number = _safe_int(verse.get("verse_number"))

        surah_name = ""
        if surah_number:
            try:
                surah_name = str(self._client.find_chapter(surah_number).get("name_arabic") or "")
            except UpstreamFetchError:
                LOGGER.warning("Could not resolve chapter name for %s", surah_number, exc_info=True)

        return {
            "text": verse.get("text_uthmani") or verse.get("text_uthmani_simple") or "",
            "surah": surah_name,
            "number": number,
            "surahNumber": surah_number,
            "verseKey": verse_key or None,
        }


def _safe_int(value: Optional[object]) -> Optional[int]:
    try:
        if value in (None, ""):
            return None
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
