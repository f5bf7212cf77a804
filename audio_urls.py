"""Candidate recitation URLs for a reciter and surah, ordered by preference."""
from __future__ import annotations

from typing import Dict, List, Tuple

ISLAMIC_NETWORK_SURAH_URL = "https://cdn.islamic.network/quran/audio-surah/128/{reciter}/{surah}.mp3"

# Reciter identifier -> (mp3quran.net server subdomain, path segment)
RECITER_MAPPINGS: Dict[str, Tuple[str, str]] = {
    "ar.abdurrahmaansudais": ("server11", "sds"),
    "ar.alafasy": ("server8", "afs"),
    "ar.saudashshuraim": ("server7", "shur"),
    "ar.mahermuaiqly": ("server12", "maher"),
    "ar.ahmedajamy": ("server10", "ajm"),
    "ar.husary": ("server13", "husr"),
    "ar.hudhaify": ("server6", "hthfi"),
    "ar.abdulbasit": ("server7", "basit"),
    "ar.minshawi": ("server10", "minsh"),
}

EXTRA_FALLBACKS: Dict[str, Tuple[str, ...]] = {
    "ar.alafasy": ("https://download.quranicaudio.com/quran/mishari_al_afasy/{padded}.mp3",),
}


def resolve(reciter_id: str, surah_number: int) -> List[str]:
    """Return every URL worth trying for *surah_number*; never empty, never does I/O."""
    padded = str(surah_number).zfill(3)
    urls: List[str] = []

    mapping = RECITER_MAPPINGS.get(reciter_id)
    if mapping:
        server, path = mapping
        urls.append(f"https://{server}.mp3quran.net/{path}/{padded}.mp3")

    urls.append(ISLAMIC_NETWORK_SURAH_URL.format(reciter=reciter_id, surah=surah_number))

    for template in EXTRA_FALLBACKS.get(reciter_id, ()):
        urls.append(template.format(padded=padded, surah=surah_number))

    return urls
