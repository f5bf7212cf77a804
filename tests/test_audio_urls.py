from audio_urls import RECITER_MAPPINGS, resolve


def test_mapped_reciter_prefers_mp3quran_server():
    urls = resolve("ar.alafasy", 2)

    assert urls[0] == "https://server8.mp3quran.net/afs/002.mp3"
    assert "https://cdn.islamic.network/quran/audio-surah/128/ar.alafasy/2.mp3" in urls
    assert urls[-1] == "https://download.quranicaudio.com/quran/mishari_al_afasy/002.mp3"
    assert len(urls) == len(set(urls))


def test_unmapped_reciter_still_gets_a_candidate():
    urls = resolve("ar.unknown", 114)

    assert urls == ["https://cdn.islamic.network/quran/audio-surah/128/ar.unknown/114.mp3"]


def test_every_mapped_reciter_pads_surah_number():
    for reciter_id, (server, path) in RECITER_MAPPINGS.items():
        assert resolve(reciter_id, 7)[0] == f"https://{server}.mp3quran.net/{path}/007.mp3"
