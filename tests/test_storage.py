import json
from itertools import count
from pathlib import Path

import pytest

from notifications import CacheHitEvent, CacheHitNotifier
from storage import (
    LAST_READ_KEY,
    MIGRATION_MARKER,
    THEME_KEY,
    KeyValueStore,
    LocalDatabase,
    MushafPageCache,
    TafsirCache,
    VerseInfoCache,
    migrate_legacy_state,
)


@pytest.fixture()
def notifier():
    return CacheHitNotifier()


@pytest.fixture()
def db(tmp_path: Path, notifier: CacheHitNotifier):
    ticks = count(1000)
    database = LocalDatabase(tmp_path / "skina.db", notifier=notifier, clock=lambda: float(next(ticks)))
    yield database
    database.close()


def test_key_value_round_trip(db: LocalDatabase):
    kv = KeyValueStore(db)

    assert kv.get("missing") is None
    assert kv.get("missing", []) == []
    assert kv.set(LAST_READ_KEY, {"surahNumber": 2, "verseNumber": 255})
    assert kv.get(LAST_READ_KEY) == {"surahNumber": 2, "verseNumber": 255}

    kv.delete(LAST_READ_KEY)
    assert kv.get(LAST_READ_KEY) is None


def test_last_writer_wins_on_same_page(db: LocalDatabase):
    pages = MushafPageCache(db)

    pages.put(1, [{"verse_key": "1:1"}])
    pages.put(1, [{"verse_key": "1:2"}])

    entry = pages.get(1)
    assert entry.value == [{"verse_key": "1:2"}]
    assert entry.timestamp == 1001.0


def test_cache_hit_emits_event(db: LocalDatabase, notifier: CacheHitNotifier):
    events = []
    notifier.subscribe(events.append)
    tafsirs = TafsirCache(db)
    verses = VerseInfoCache(db)

    assert tafsirs.get(("2:255", 16)) is None
    assert events == []

    tafsirs.put(("2:255", 16), "<p>tafsir</p>")
    verses.put("2:255", {"juz_number": 3})
    assert tafsirs.get(("2:255", 16)).value == "<p>tafsir</p>"
    assert tafsirs.get(("2:255", 14)) is None
    assert verses.get("2:255").value == {"juz_number": 3}

    assert events == [CacheHitEvent(type="tafsir", id="2:255"), CacheHitEvent(type="verse", id="2:255")]


def test_failing_subscriber_does_not_break_reads(db: LocalDatabase, notifier: CacheHitNotifier):
    received = []

    def broken(_event):
        raise RuntimeError("boom")

    notifier.subscribe(broken)
    unsubscribe = notifier.subscribe(received.append)
    pages = MushafPageCache(db)
    pages.put(3, [])

    assert pages.get(3).value == []
    assert received == [CacheHitEvent(type="page", id=3)]

    unsubscribe()
    pages.get(3)
    assert len(received) == 1


def test_unavailable_database_degrades_to_misses(tmp_path: Path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("", encoding="utf-8")
    database = LocalDatabase(blocker / "skina.db")
    kv = KeyValueStore(database)
    pages = MushafPageCache(database)

    assert not database.available
    assert kv.set(THEME_KEY, "dark") is False
    assert kv.get(THEME_KEY, "light") == "light"
    assert pages.put(1, []) is False
    assert pages.get(1) is None
    database.clear()


def test_clear_removes_everything(db: LocalDatabase):
    kv = KeyValueStore(db)
    pages = MushafPageCache(db)
    kv.set(THEME_KEY, "dark")
    pages.put(5, [{"verse_key": "2:30"}])

    db.clear()

    assert kv.get(THEME_KEY) is None
    assert pages.get(5) is None


def test_legacy_state_migrated_once(db: LocalDatabase, tmp_path: Path):
    kv = KeyValueStore(db)
    legacy = tmp_path / "state.json"
    legacy.write_text(
        json.dumps(
            {
                "theme": "dark",
                "quran_bookmarks": json.dumps([{"number": 18}]),
                "unrelated": "ignored",
            }
        ),
        encoding="utf-8",
    )

    assert migrate_legacy_state(legacy, kv) == 2
    assert kv.get(THEME_KEY) == "dark"
    assert kv.get("quran_bookmarks") == [{"number": 18}]
    assert kv.get("unrelated") is None
    assert kv.get(MIGRATION_MARKER) is True

    kv.set(THEME_KEY, "light")
    assert migrate_legacy_state(legacy, kv) == 0
    assert kv.get(THEME_KEY) == "light"


def test_migration_skips_missing_file(db: LocalDatabase, tmp_path: Path):
    kv = KeyValueStore(db)

    assert migrate_legacy_state(tmp_path / "absent.json", kv) == 0
    assert migrate_legacy_state(None, kv) == 0
