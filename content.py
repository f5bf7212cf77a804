"""Clients for the upstream Qur'an content providers (chapters, verses, tafsir, audio metadata)."""
from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

from errors import ConfigurationMissing, UpstreamFetchError

LOGGER = logging.getLogger(__name__)

CONTENT_BASE_URL = "https://apis.quran.foundation/content/api/v4"
AUTH_TOKEN_URL = "https://oauth2.quran.foundation/oauth2/token"
LEGACY_BASE_URL = "https://api.alquran.cloud/v1"
QURAN_COM_BASE_URL = "https://api.quran.com/api/v4"
TANWEER_URL = "https://raw.githubusercontent.com/SAFI174/tafsir-json/main/json/ar.tanweer.json"

TANWEER_TAFSIR_ID = 999
TOKEN_EXPIRY_MARGIN = 60
VERSES_PER_REQUEST = 50
DIACRITICS = re.compile("[\u064b-\u0652\u06d6-\u06ed]")
PAGE_FIELDS = (
    "code_v2",
    "image_url",
    "image_width",
    "chapter_id",
    "text_uthmani",
    "juz_number",
    "hizb_number",
    "page_number",
)

TAFSIR_ARABIC_NAMES = {
    16: "التفسير الميسر",
    14: "تفسير ابن كثير",
    15: "تفسير الطبري",
    90: "تفسير القرطبي",
    91: "تفسير السعدي",
    93: "التفسير الوسيط",
    94: "تفسير البغوي",
    92: "تفسير تنوير المقباس",
}


@dataclass
class SurahAudio:
    """Audio metadata for one surah: the full recitation plus per-ayah files."""

    surah_number: int
    edition: str
    ayah_urls: Dict[int, str] = field(default_factory=dict)
    audio_url: Optional[str] = None

    def ayah_url(self, ayah_number: int) -> Optional[str]:
        return self.ayah_urls.get(ayah_number)


class QuranContentClient:
    """Authenticated Quran Foundation client with public fallbacks for listings, tafsir and audio."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        session: Optional[requests.Session] = None,
        timeout: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self._session = session or requests.Session()
        self._timeout = timeout
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()
        self._tanweer: Optional[Dict[str, Any]] = None

    def check_credentials(self) -> bool:
        """Log a single startup warning when credentials are missing."""
        if self.client_id and self.client_secret:
            return True
        LOGGER.warning("QURAN_CLIENT_ID or QURAN_CLIENT_SECRET is missing; content requests will fail")
        return False

    # -- Authenticated content API ---------------------------------------------
    def find_all_chapters(self) -> List[Dict[str, Any]]:
        payload = self._content_get("/chapters")
        return list(payload.get("chapters", []))

    def find_chapter(self, chapter_id: int) -> Dict[str, Any]:
        payload = self._content_get(f"/chapters/{chapter_id}")
        return dict(payload.get("chapter", {}))

    def find_verses_by_chapter(self, chapter_id: int, fields: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        """All verses of a chapter, following the API's pagination."""
        verses: List[Dict[str, Any]] = []
        page: Optional[int] = 1
        while page:
            params: Dict[str, Any] = {"per_page": VERSES_PER_REQUEST, "page": page}
            if fields:
                params["fields"] = ",".join(fields)
            payload = self._content_get(f"/verses/by_chapter/{chapter_id}", params=params)
            verses.extend(payload.get("verses", []))
            page = (payload.get("pagination") or {}).get("next_page")
        LOGGER.debug("Fetched %d verses for chapter %s", len(verses), chapter_id)
        return verses

    def find_verses_by_page(
        self,
        page_number: int,
        fields: Optional[Sequence[str]] = None,
        words: bool = False,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"per_page": VERSES_PER_REQUEST, "words": str(words).lower()}
        if fields:
            params["fields"] = ",".join(fields)
        if words:
            params["word_fields"] = "code_v2,v2_page"
        payload = self._content_get(f"/verses/by_page/{page_number}", params=params)
        return list(payload.get("verses", []))

    def find_verse_by_key(self, verse_key: str, fields: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        params = {"fields": ",".join(fields)} if fields else None
        payload = self._content_get(f"/verses/by_key/{verse_key}", params=params)
        return dict(payload.get("verse", {}))

    def find_random_verse(self, fields: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        params = {"fields": ",".join(fields)} if fields else None
        payload = self._content_get("/verses/random", params=params)
        return dict(payload.get("verse", {}))

    def search(self, query: str, mode: str = "quick") -> Dict[str, Any]:
        if not query:
            raise ValueError("Search query is required")
        return self._content_get("/search", params={"q": query, "mode": mode})

    # -- Public fallbacks ---------------------------------------------------------
    def legacy_surahs(self) -> List[Dict[str, Any]]:
        """Surah listing from the public alquran.cloud API, mapped to the app's surah shape."""
        payload = self._get_json(f"{LEGACY_BASE_URL}/surah")
        if payload.get("code") != 200:
            raise UpstreamFetchError(f"Invalid response from alquran.cloud: {payload.get('status')}", url=LEGACY_BASE_URL)
        return [
            {
                "number": surah.get("number"),
                "name": DIACRITICS.sub("", str(surah.get("name", ""))),
                "transliteration": surah.get("englishName"),
                "translation": surah.get("englishNameTranslation"),
                "verses": surah.get("numberOfAyahs"),
                "revelation": surah.get("revelationType"),
            }
            for surah in payload.get("data", [])
        ]

    def fetch_surah_audio(self, surah_number: int, edition: str) -> SurahAudio:
        """Per-ayah recitation URLs for *surah_number* in the given audio *edition*."""
        url = f"{LEGACY_BASE_URL}/surah/{surah_number}/{edition}"
        payload = self._get_json(url)
        if payload.get("code") != 200:
            raise UpstreamFetchError(f"Invalid audio response for surah {surah_number}", url=url)
        ayahs = (payload.get("data") or {}).get("ayahs", [])
        ayah_urls = {
            int(ayah["numberInSurah"]): str(ayah["audio"])
            for ayah in ayahs
            if ayah.get("audio") and ayah.get("numberInSurah")
        }
        LOGGER.debug("Resolved %d ayah audio URLs for surah %s (%s)", len(ayah_urls), surah_number, edition)
        return SurahAudio(surah_number=surah_number, edition=edition, ayah_urls=ayah_urls)

    def fetch_tafsir(self, tafsir_id: int, verse_key: str) -> str:
        if int(tafsir_id) == TANWEER_TAFSIR_ID:
            return self._tanweer_text(verse_key)
        url = f"{QURAN_COM_BASE_URL}/tafsirs/{tafsir_id}/by_ayah/{verse_key}"
        payload = self._get_json(url)
        tafsir = payload.get("tafsir", payload)
        text = tafsir.get("text") if isinstance(tafsir, dict) else None
        if not text:
            raise UpstreamFetchError(f"Tafsir {tafsir_id} has no text for {verse_key}", url=url)
        return str(text)

    def list_tafsirs(self) -> List[Dict[str, Any]]:
        payload = self._get_json(f"{QURAN_COM_BASE_URL}/resources/tafsirs")
        tafsirs = [
            {
                "id": item.get("id"),
                "name": TAFSIR_ARABIC_NAMES.get(item.get("id"), item.get("name")),
                "author_name": item.get("author_name"),
                "language_name": item.get("language_name"),
                "slug": item.get("slug"),
            }
            for item in payload.get("tafsirs", [])
        ]
        tafsirs.insert(
            0,
            {
                "id": TANWEER_TAFSIR_ID,
                "name": "التحرير والتنوير",
                "author_name": "ابن عاشور",
                "language_name": "arabic",
                "slug": "ar-tahrir-wa-tanwir",
            },
        )
        return tafsirs

    def _tanweer_text(self, verse_key: str) -> str:
        surah, ayah = parse_verse_key(verse_key)
        if self._tanweer is None:
            LOGGER.info("Downloading Tahrir wa Tanwir tafsir from %s", TANWEER_URL)
            self._tanweer = self._get_json(TANWEER_URL)
        try:
            text = self._tanweer["tafsir"][surah - 1][ayah - 1]
        except (KeyError, IndexError, TypeError):
            text = None
        if not text:
            raise UpstreamFetchError(f"Tahrir wa Tanwir has no entry for {verse_key}", url=TANWEER_URL)
        return str(text)

    # -- HTTP plumbing ---------------------------------------------------------------
    def _content_get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{CONTENT_BASE_URL}{path}"
        try:
            token = self._access_token()
        except ConfigurationMissing as exc:
            raise UpstreamFetchError(str(exc), url=url) from exc
        headers = {"x-auth-token": token, "x-client-id": str(self.client_id)}
        return self._get_json(url, params=params, headers=headers)

    def _access_token(self) -> str:
        if not (self.client_id and self.client_secret):
            raise ConfigurationMissing("Quran Foundation client credentials are not configured")
        with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token
            LOGGER.debug("Requesting content API access token")
            try:
                response = self._session.post(
                    AUTH_TOKEN_URL,
                    data={"grant_type": "client_credentials", "scope": "content"},
                    auth=(self.client_id, self.client_secret),
                    timeout=self._timeout,
                )
                LOGGER.debug("Token response status: %s", response.status_code)
                response.raise_for_status()
                payload = response.json()
            except requests.RequestException as exc:
                raise UpstreamFetchError(f"Token request failed: {exc}", url=AUTH_TOKEN_URL) from exc
            except ValueError as exc:
                raise UpstreamFetchError("Token endpoint returned invalid JSON", url=AUTH_TOKEN_URL) from exc
            token = payload.get("access_token")
            if not token:
                raise UpstreamFetchError("Token endpoint returned no access token", url=AUTH_TOKEN_URL)
            expires_in = float(payload.get("expires_in") or 3600)
            self._token = str(token)
            self._token_expires_at = self._clock() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN)
            return self._token

    def _get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        LOGGER.debug("Requesting %s with params=%s", url, params)
        try:
            response = self._session.get(url, params=params, headers=headers, timeout=self._timeout)
            LOGGER.debug("Response status for %s: %s", url, response.status_code)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            status = getattr(getattr(exc, "response", None), "status_code", None)
            raise UpstreamFetchError(f"Request to {url} failed: {exc}", url=url, status=status) from exc
        except ValueError as exc:
            raise UpstreamFetchError(f"Invalid JSON from {url}", url=url) from exc
        if not isinstance(payload, dict):
            raise UpstreamFetchError(f"Unexpected payload from {url}", url=url)
        return payload


def parse_verse_key(verse_key: str) -> Tuple[int, int]:
    """Split ``"surah:ayah"`` into two positive integers."""
    try:
        surah_text, ayah_text = str(verse_key).split(":")
        surah, ayah = int(surah_text), int(ayah_text)
    except ValueError as exc:
        raise ValueError(f"Invalid verse key format: {verse_key!r}") from exc
    if surah < 1 or ayah < 1:
        raise ValueError(f"Invalid verse key format: {verse_key!r}")
    return surah, ayah
