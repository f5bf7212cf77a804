"""Reciter directory backed by the mp3quran.net listing, cached in memory for six hours."""
from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

import requests

from errors import UpstreamFetchError

LOGGER = logging.getLogger(__name__)

MP3QURAN_RECITERS_URL = "https://mp3quran.net/api/v3/reciters"
RECITER_CACHE_TTL = 6 * 60 * 60
RECITER_RETRY_BACKOFF = 60
DEFAULT_MOSHAF_LABEL = "مصحف"

# Reciter name patterns -> substrings expected in their preferred server URL.
RECITER_SERVER_HINTS: List[Tuple[Tuple[Pattern[str], ...], Tuple[str, ...]]] = [
    (
        (
            re.compile(r"maher", re.IGNORECASE),
            re.compile(r"muaiqly", re.IGNORECASE),
            re.compile(r"muaiqil", re.IGNORECASE),
            re.compile(r"المعيقلي"),
            re.compile(r"ماهر"),
        ),
        ("maher",),
    ),
]


@dataclass(frozen=True)
class Moshaf:
    id: Optional[str]
    name: str
    server: str
    surah_list: Tuple[int, ...]
    surah_total: Optional[int]
    rewaya: Optional[str]

    @property
    def label(self) -> str:
        return moshaf_label(self)


@dataclass(frozen=True)
class Reciter:
    identifier: str
    name: str
    moshaf: Tuple[Moshaf, ...]
    default_moshaf_id: Optional[str]
    server: Optional[str]

    def find_moshaf(self, moshaf_id: Optional[str]) -> Optional[Moshaf]:
        if moshaf_id is None:
            return None
        for entry in self.moshaf:
            if entry.id == str(moshaf_id):
                return entry
        return None


def normalize_server_url(server: Optional[str]) -> str:
    if not server:
        return ""
    return server if server.endswith("/") else f"{server}/"


def parse_surah_list(raw: Optional[object]) -> Tuple[int, ...]:
    if not raw:
        return ()
    numbers = []
    for token in str(raw).split(","):
        try:
            numbers.append(int(token.strip()))
        except ValueError:
            continue
    return tuple(numbers)


def moshaf_label(moshaf: Moshaf) -> str:
    """Prefer the rewaya when it adds information over the edition name."""
    name = (moshaf.name or "").strip()
    rewaya = (moshaf.rewaya or "").strip()
    if rewaya and rewaya != name:
        return rewaya
    return name or rewaya or DEFAULT_MOSHAF_LABEL


def _includes(value: str, needles: Iterable[str]) -> bool:
    text = value.lower()
    return any(needle in text for needle in needles)


def _server_hints(reciter_name: Optional[str]) -> Tuple[str, ...]:
    if not reciter_name:
        return ()
    for patterns, hints in RECITER_SERVER_HINTS:
        if any(pattern.search(reciter_name) for pattern in patterns):
            return hints
    return ()


def score_moshaf(moshaf: Moshaf, chapter_id: Optional[int], reciter_name: Optional[str]) -> int:
    if not moshaf.server:
        return -999
    name = moshaf.name or ""
    rewaya = moshaf.rewaya or ""
    server = moshaf.server.lower()

    score = 0
    hints = _server_hints(reciter_name)
    if hints and any(hint in server for hint in hints):
        score += 6
    if _includes(name, ("hafs", "hafs a'n assem", "hafs an asim")) or "hafs" in rewaya.lower() or "حفص" in name or "حفص" in rewaya:
        score += 5
    if _includes(name, ("murattal", "muratal", "murrattal")) or re.search("مرتل|مرتّل", name):
        score += 3
    if _includes(name, ("mujawwad",)) or "مجود" in name:
        score -= 1
    if (moshaf.surah_total or 0) >= 114:
        score += 2
    if chapter_id and moshaf.surah_list:
        score += 4 if chapter_id in moshaf.surah_list else -2
    return score


def pick_best_moshaf(
    moshaf: Sequence[Moshaf],
    chapter_id: Optional[int] = None,
    reciter_name: Optional[str] = None,
    preferred_id: Optional[str] = None,
) -> Optional[Moshaf]:
    if not moshaf:
        return None
    if preferred_id is not None:
        for entry in moshaf:
            if entry.id == str(preferred_id) and entry.server:
                return entry
    # sorted() is stable, so ties keep the upstream order
    ranked = sorted(moshaf, key=lambda entry: score_moshaf(entry, chapter_id, reciter_name), reverse=True)
    return ranked[0]


class ReciterCatalog:
    """Fetches and normalises the reciter listing, refreshing lazily on read."""

    def __init__(
        self,
        url: str = MP3QURAN_RECITERS_URL,
        ttl: float = RECITER_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
        session: Optional[requests.Session] = None,
        timeout: int = 10,
        retry_backoff: float = RECITER_RETRY_BACKOFF,
    ) -> None:
        self._url = url
        self._ttl = ttl
        self._retry_backoff = retry_backoff
        self._clock = clock
        self._session = session or requests.Session()
        self._timeout = timeout
        self._lock = threading.Lock()
        self._reciters: Optional[Tuple[Reciter, ...]] = None
        self._by_id: Dict[str, Reciter] = {}
        self._fetched_at = 0.0
        self._retry_at = 0.0

    def list(self) -> Tuple[Reciter, ...]:
        """Return the cached reciters, re-fetching once they are older than the TTL."""
        with self._lock:
            now = self._clock()
            if self._reciters is not None and (now - self._fetched_at < self._ttl or now < self._retry_at):
                return self._reciters
            try:
                reciters = self._fetch()
            except UpstreamFetchError:
                if self._reciters is None:
                    raise
                self._retry_at = self._clock() + self._retry_backoff
                LOGGER.warning(
                    "Reciter refresh failed; serving stale listing for the next %ss",
                    self._retry_backoff,
                    exc_info=True,
                )
                return self._reciters
            # Swap both views in one step so readers never see a half-built listing.
            self._reciters, self._by_id = reciters, {reciter.identifier: reciter for reciter in reciters}
            self._fetched_at = self._clock()
            LOGGER.info("Loaded %d reciters from %s", len(reciters), self._url)
            return self._reciters

    def get(self, reciter_id: str) -> Optional[Reciter]:
        self.list()
        return self._by_id.get(str(reciter_id))

    def resolve_audio_base(self, reciter_id: str) -> Optional[str]:
        """Return the first moshaf server URL for *reciter_id*, or ``None``."""
        reciter = self.get(reciter_id)
        if reciter is None:
            return None
        for entry in reciter.moshaf:
            if entry.server:
                return entry.server
        return None

    def surah_audio_url(self, reciter_id: str, chapter_id: int, moshaf_id: Optional[str] = None) -> str:
        reciter = self.get(reciter_id)
        if reciter is None:
            raise UpstreamFetchError(f"Reciter {reciter_id} not found", url=self._url)
        selected = reciter.find_moshaf(moshaf_id)
        if selected is None or not selected.server:
            selected = pick_best_moshaf(reciter.moshaf, chapter_id, reciter.name, reciter.identifier)
        server = (selected.server if selected else "") or reciter.server
        if not server:
            raise UpstreamFetchError(f"Reciter {reciter_id} has no audio server", url=self._url)
        return f"{server}{str(chapter_id).zfill(3)}.mp3"

    def _fetch(self) -> Tuple[Reciter, ...]:
        params = {"language": "ar"}
        LOGGER.debug("Requesting reciter listing from %s with params=%s", self._url, params)
        try:
            response = self._session.get(self._url, params=params, timeout=self._timeout)
            LOGGER.debug("Reciter listing response status: %s", response.status_code)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            status = getattr(getattr(exc, "response", None), "status_code", None)
            raise UpstreamFetchError(f"Reciter listing request failed: {exc}", url=self._url, status=status) from exc
        except ValueError as exc:
            raise UpstreamFetchError("Reciter listing returned invalid JSON", url=self._url) from exc

        raw_reciters = payload.get("reciters") if isinstance(payload, dict) else None
        if not isinstance(raw_reciters, list):
            raise UpstreamFetchError("Reciter listing payload has no reciters", url=self._url)
        return tuple(self._parse_reciter(entry) for entry in raw_reciters if isinstance(entry, dict))

    @staticmethod
    def _parse_reciter(entry: Dict[str, Any]) -> Reciter:
        moshaf = tuple(
            Moshaf(
                id=str(item["id"]) if item.get("id") else None,
                name=str(item.get("name") or ""),
                server=normalize_server_url(item.get("server") or item.get("Server") or ""),
                surah_list=parse_surah_list(item.get("surah_list")),
                surah_total=_safe_int(item.get("surah_total")),
                rewaya=item.get("rewaya") or None,
            )
            for item in (entry.get("moshaf") or [])
            if isinstance(item, dict)
        )
        name = str(entry.get("name") or "")
        identifier = str(entry.get("id"))
        default = (
            pick_best_moshaf(moshaf, None, name, identifier)
            or next((item for item in moshaf if item.server), None)
            or (moshaf[0] if moshaf else None)
        )
        return Reciter(
            identifier=identifier,
            name=name,
            moshaf=moshaf,
            default_moshaf_id=default.id if default else None,
            server=(default.server or None) if default else None,
        )


def _safe_int(value: Optional[object]) -> Optional[int]:
    try:
        if value in (None, ""):
            return None
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
