import pytest
import responses
from responses import matchers

from content import (
    AUTH_TOKEN_URL,
    CONTENT_BASE_URL,
    LEGACY_BASE_URL,
    QURAN_COM_BASE_URL,
    TANWEER_URL,
    QuranContentClient,
    parse_verse_key,
)
from errors import UpstreamFetchError


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_access_token_is_reused_until_expiry():
    clock = FakeClock()
    client = QuranContentClient("id", "secret", clock=clock)

    with responses.RequestsMock() as mock:
        mock.add(responses.POST, AUTH_TOKEN_URL, json={"access_token": "tok", "expires_in": 3600}, status=200)
        mock.add(responses.GET, f"{CONTENT_BASE_URL}/chapters", json={"chapters": [{"id": 1}]}, status=200)

        assert client.find_all_chapters() == [{"id": 1}]
        clock.now = 3000
        client.find_all_chapters()
        token_calls = [call for call in mock.calls if call.request.url == AUTH_TOKEN_URL]
        assert len(token_calls) == 1
        assert "grant_type=client_credentials" in token_calls[0].request.body
        assert mock.calls[1].request.headers["x-auth-token"] == "tok"
        assert mock.calls[1].request.headers["x-client-id"] == "id"

        clock.now = 3600
        client.find_all_chapters()
        token_calls = [call for call in mock.calls if call.request.url == AUTH_TOKEN_URL]
        assert len(token_calls) == 2


def test_missing_credentials_fail_without_network():
    client = QuranContentClient(None, "secret")

    assert client.check_credentials() is False
    with responses.RequestsMock():
        with pytest.raises(UpstreamFetchError):
            client.find_chapter(1)


def test_token_failure_is_upstream_error():
    client = QuranContentClient("id", "secret")

    with responses.RequestsMock() as mock:
        mock.add(responses.POST, AUTH_TOKEN_URL, status=401)
        with pytest.raises(UpstreamFetchError):
            client.find_random_verse()


def test_legacy_surahs_strip_diacritics():
    client = QuranContentClient(None, None)
    payload = {
        "code": 200,
        "data": [
            {
                "number": 1,
                "name": "سُورَةُ ٱلْفَاتِحَةِ",
                "englishName": "Al-Faatiha",
                "englishNameTranslation": "The Opening",
                "numberOfAyahs": 7,
                "revelationType": "Meccan",
            }
        ],
    }

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, f"{LEGACY_BASE_URL}/surah", json=payload, status=200)
        surahs = client.legacy_surahs()

    assert surahs == [
        {
            "number": 1,
            "name": "سورة ٱلفاتحة",
            "transliteration": "Al-Faatiha",
            "translation": "The Opening",
            "verses": 7,
            "revelation": "Meccan",
        }
    ]


def test_surah_audio_maps_ayah_numbers():
    client = QuranContentClient(None, None)
    payload = {
        "code": 200,
        "data": {
            "ayahs": [
                {"numberInSurah": 1, "audio": "https://cdn/1.mp3"},
                {"numberInSurah": 2, "audio": "https://cdn/2.mp3"},
                {"numberInSurah": 3},
            ]
        },
    }

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, f"{LEGACY_BASE_URL}/surah/1/ar.alafasy", json=payload, status=200)
        audio = client.fetch_surah_audio(1, "ar.alafasy")

    assert audio.surah_number == 1
    assert audio.ayah_url(2) == "https://cdn/2.mp3"
    assert audio.ayah_url(3) is None


def test_tafsir_from_quran_com():
    client = QuranContentClient(None, None)

    with responses.RequestsMock() as mock:
        mock.add(
            responses.GET,
            f"{QURAN_COM_BASE_URL}/tafsirs/16/by_ayah/2:255",
            json={"tafsir": {"text": "<p>الله</p>"}},
            status=200,
        )
        assert client.fetch_tafsir(16, "2:255") == "<p>الله</p>"


def test_tanweer_downloaded_once():
    client = QuranContentClient(None, None)

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, TANWEER_URL, json={"tafsir": [["a1", "a2"], ["b1"]]}, status=200)
        assert client.fetch_tafsir(999, "1:2") == "a2"
        assert client.fetch_tafsir(999, "2:1") == "b1"
        assert len(mock.calls) == 1
        with pytest.raises(UpstreamFetchError):
            client.fetch_tafsir(999, "2:5")


def test_list_tafsirs_prepends_tanweer_and_arabic_names():
    client = QuranContentClient(None, None)

    with responses.RequestsMock() as mock:
        mock.add(
            responses.GET,
            f"{QURAN_COM_BASE_URL}/resources/tafsirs",
            json={"tafsirs": [{"id": 14, "name": "Tafsir Ibn Kathir", "slug": "ibn-kathir"}]},
            status=200,
        )
        tafsirs = client.list_tafsirs()

    assert [item["id"] for item in tafsirs] == [999, 14]
    assert tafsirs[1]["name"] == "تفسير ابن كثير"


def test_parse_verse_key():
    assert parse_verse_key("2:255") == (2, 255)
    for bad in ("2", "a:b", "0:1", "1:2:3"):
        with pytest.raises(ValueError):
            parse_verse_key(bad)


def test_verses_by_chapter_follow_pagination():
    client = QuranContentClient("id", "secret")
    url = f"{CONTENT_BASE_URL}/verses/by_chapter/2"

    with responses.RequestsMock() as mock:
        mock.add(responses.POST, AUTH_TOKEN_URL, json={"access_token": "tok", "expires_in": 3600}, status=200)
        mock.add(
            responses.GET,
            url,
            match=[matchers.query_param_matcher({"page": "1"}, strict_match=False)],
            json={"verses": [{"verse_key": "2:1"}], "pagination": {"current_page": 1, "next_page": 2}},
            status=200,
        )
        mock.add(
            responses.GET,
            url,
            match=[matchers.query_param_matcher({"page": "2"}, strict_match=False)],
            json={"verses": [{"verse_key": "2:2"}], "pagination": {"current_page": 2, "next_page": None}},
            status=200,
        )

        verses = client.find_verses_by_chapter(2, fields=("text_uthmani",))
        page_calls = [call for call in mock.calls if call.request.url.startswith(url)]

    assert [verse["verse_key"] for verse in verses] == ["2:1", "2:2"]
    assert len(page_calls) == 2
    assert "fields=text_uthmani" in page_calls[0].request.url
    assert "per_page=50" in page_calls[0].request.url


def test_search_uses_quick_mode():
    client = QuranContentClient("id", "secret")

    with responses.RequestsMock() as mock:
        mock.add(responses.POST, AUTH_TOKEN_URL, json={"access_token": "tok", "expires_in": 3600}, status=200)
        mock.add(
            responses.GET,
            f"{CONTENT_BASE_URL}/search",
            json={"search": {"results": [{"verse_key": "1:1", "text": "<em>بسم</em>"}]}},
            status=200,
        )

        payload = client.search("بسم")
        request = mock.calls[1].request

    assert payload["search"]["results"][0]["verse_key"] == "1:1"
    assert "mode=quick" in request.url
    assert request.headers["x-auth-token"] == "tok"
    with pytest.raises(ValueError):
        client.search("")
