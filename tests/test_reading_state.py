from datetime import date
from pathlib import Path

import pytest

from reading_state import (
    KhitmaPlan,
    get_bookmarks,
    get_last_read,
    get_theme,
    is_bookmarked,
    load_khitma,
    save_khitma,
    save_last_read,
    set_theme,
    toggle_bookmark,
)
from storage import KHITMA_KEY, KeyValueStore, LocalDatabase


@pytest.fixture()
def kv(tmp_path: Path):
    database = LocalDatabase(tmp_path / "skina.db")
    yield KeyValueStore(database)
    database.close()


def test_last_read_is_overwritten(kv: KeyValueStore):
    assert get_last_read(kv) is None

    save_last_read(kv, 1, "الفاتحة")
    save_last_read(kv, 2, "البقرة", 255)

    last = get_last_read(kv)
    assert last["surahNumber"] == 2
    assert last["surahName"] == "البقرة"
    assert last["verseNumber"] == 255
    assert isinstance(last["timestamp"], int)


def test_toggle_bookmark_adds_newest_first_and_removes(kv: KeyValueStore):
    toggle_bookmark(kv, {"number": 18, "name": "الكهف", "transliteration": "Al-Kahf", "verses": 110})
    toggle_bookmark(kv, {"number": 36, "name": "يس", "englishName": "Ya-Sin", "numberOfAyahs": 83})

    bookmarks = get_bookmarks(kv)
    assert [item["number"] for item in bookmarks] == [36, 18]
    assert bookmarks[1]["englishName"] == "Al-Kahf"
    assert bookmarks[0]["verses"] == 83
    assert is_bookmarked(kv, 18)

    remaining = toggle_bookmark(kv, {"number": 18})
    assert [item["number"] for item in remaining] == [36]
    assert not is_bookmarked(kv, 18)


def test_khitma_plan_portions():
    plan = KhitmaPlan(days=30)

    assert plan.daily == 21
    assert plan.per_prayer == 5
    assert plan.total_portions == 150

    plan.start()
    for _ in range(7):
        plan.finish_portion()

    assert plan.progress_percentage == 5
    assert plan.remaining_days == 29
    assert plan.completion_date(date(2025, 1, 1)) == date(2025, 1, 30)


def test_khitma_days_must_be_positive():
    plan = KhitmaPlan()

    plan.set_days(60)
    assert plan.days == 60
    assert plan.daily == 11

    plan.set_days(0)
    plan.set_days(-5)
    assert plan.days == 60


def test_khitma_progress_caps_at_total():
    plan = KhitmaPlan(days=1, mode="verses", is_started=True)

    for _ in range(10):
        plan.finish_portion()

    assert plan.daily == 6236
    assert plan.progress == 5
    assert plan.progress_percentage == 100
    assert plan.remaining_days == 0


def test_khitma_persisted_with_stored_key_names(kv: KeyValueStore):
    plan = KhitmaPlan(days=10, mode="verses")
    plan.start()
    plan.finish_portion()
    save_khitma(kv, plan)

    assert kv.get(KHITMA_KEY) == {"days": 10, "mode": "verses", "isStarted": True, "progress": 1}
    assert load_khitma(kv) == plan


def test_malformed_khitma_state_resets(kv: KeyValueStore):
    kv.set(KHITMA_KEY, {"days": "soon", "progress": 2})

    assert load_khitma(kv) == KhitmaPlan()


def test_theme_defaults_to_light(kv: KeyValueStore):
    assert get_theme(kv) == "light"

    set_theme(kv, "dark")
    assert get_theme(kv) == "dark"

    with pytest.raises(ValueError):
        set_theme(kv, "sepia")
