"""Entry point for the offline Qur'an reader and recitation player."""
from __future__ import annotations

import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, List, Optional, Set, Tuple

try:  # Prefer PyQt5, fall back to Qt for Python if available
    from PyQt5 import QtCore  # type: ignore
except Exception:  # pragma: no cover - fallback only used when PyQt5 missing
    try:
        from PySide2 import QtCore  # type: ignore
    except Exception:
        from PySide6 import QtCore  # type: ignore

try:  # Compatibility alias for Qt signal and slot decorators
    Signal = QtCore.pyqtSignal  # type: ignore[attr-defined]
    Slot = QtCore.pyqtSlot  # type: ignore[attr-defined]
except AttributeError:  # pragma: no cover - PySide compatibility
    Signal = QtCore.Signal  # type: ignore[attr-defined]
    Slot = QtCore.Slot  # type: ignore[attr-defined]

from audio_backend import QtAudioBackend
from audio_session import ActiveSurah, AudioSession, AudioSnapshot, PlaybackState, TimerScheduler
from config import AppConfig, load_config
from content import QuranContentClient, SurahAudio
from errors import UpstreamFetchError
from notifications import CacheHitEvent, CacheHitNotifier
from reading_state import (
    KHITMA_MODES,
    THEMES,
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
from reciters import ReciterCatalog
from repository import ContentRepository
from sleep_timer import SleepTimerScheduler
from storage import (
    RECITER_KEY,
    KeyValueStore,
    LocalDatabase,
    MushafPageCache,
    TafsirCache,
    VerseInfoCache,
    migrate_legacy_state,
)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
READING_COMMANDS = ("last-read", "bookmark", "bookmarks", "khitma", "theme")

LOGGER = logging.getLogger(__name__)


class _AsyncDispatcher(QtCore.QObject):
    """Provide main-thread delivery for background task callbacks."""

    success = Signal(object)
    error = Signal(object)

    def __init__(
        self,
        owner: "QuranApp",
        on_success: Callable[[Any], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        super().__init__()
        self._owner = owner
        self._on_success = on_success
        self._on_error = on_error
        self.success.connect(self._handle_success)  # type: ignore[attr-defined]
        self.error.connect(self._handle_error)  # type: ignore[attr-defined]

    @Slot(object)
    def _handle_success(self, result: Any) -> None:
        LOGGER.debug("Dispatcher invoking success handler %s", getattr(self._on_success, "__name__", self._on_success))
        try:
            self._on_success(result)
        finally:
            self._owner._async_dispatchers.discard(self)
            self.deleteLater()

    @Slot(object)
    def _handle_error(self, exc: Exception) -> None:
        LOGGER.debug("Dispatcher invoking error handler %s", getattr(self._on_error, "__name__", self._on_error))
        try:
            self._on_error(exc)
        finally:
            self._owner._async_dispatchers.discard(self)
            self.deleteLater()


class _MainThreadInvoker(QtCore.QObject):
    """Queue callables from scheduler threads onto the Qt thread."""

    invoke = Signal(object)

    def __init__(self) -> None:
        super().__init__()
        self.invoke.connect(self._run)  # type: ignore[attr-defined]

    @Slot(object)
    def _run(self, func: Callable[[], None]) -> None:
        func()


class _QtThreadTimer(TimerScheduler):
    """Fire APScheduler sleep-timer jobs on the Qt thread that owns the audio element."""

    def __init__(self, scheduler: SleepTimerScheduler, invoker: _MainThreadInvoker) -> None:
        self._scheduler = scheduler
        self._invoker = invoker

    def schedule(self, run_date: datetime, callback: Callable[[], None]) -> None:
        self._scheduler.schedule(run_date, lambda: self._invoker.invoke.emit(callback))

    def cancel(self) -> None:
        self._scheduler.cancel()


class QuranApp(QtCore.QCoreApplication):
    """Coordinates storage, content, reciter lookup and the playback session."""

    def __init__(self, argv: List[str], config: AppConfig) -> None:
        super().__init__(argv)
        self.setApplicationName("Skina")
        self.config = config
        self._executor = ThreadPoolExecutor(max_workers=2)
        self._async_dispatchers: Set[_AsyncDispatcher] = set()

        self.notifier = CacheHitNotifier()
        self.notifier.subscribe(self._on_cache_hit)
        self.db = LocalDatabase(config.database_path, notifier=self.notifier)
        self.kv = KeyValueStore(self.db)
        migrate_legacy_state(config.legacy_state, self.kv)

        self.client = QuranContentClient(config.client_id, config.client_secret)
        self.client.check_credentials()
        self.catalog = ReciterCatalog()
        self.repository = ContentRepository(
            self.client,
            MushafPageCache(self.db),
            TafsirCache(self.db),
            VerseInfoCache(self.db),
            self.kv,
            timezone=config.timezone,
        )

        self.sleep_scheduler = SleepTimerScheduler(timezone=config.timezone or "UTC")
        self._invoker = _MainThreadInvoker()
        self.backend = QtAudioBackend(self)
        self.session = AudioSession(
            self.backend,
            _QtThreadTimer(self.sleep_scheduler, self._invoker),
            volume=config.volume,
            initial_buffer_percent=config.initial_buffer_percent,
        )
        self._last_state: Optional[PlaybackState] = None
        self._last_buffer_step = -1

        self.aboutToQuit.connect(self._cleanup)  # type: ignore
        LOGGER.debug("Application initialised with database %s", config.database_path)

    # ------------------------------------------------------------------
    def play(
        self,
        surah_number: int,
        reciter_id: Optional[str] = None,
        sleep_minutes: Optional[float] = None,
        ayah_number: Optional[int] = None,
    ) -> None:
        reciter = reciter_id or self._saved_reciter() or self.config.default_reciter

        def task() -> Tuple[str, Optional[SurahAudio]]:
            surah_name = self._surah_name(surah_number)
            audio = self.client.fetch_surah_audio(surah_number, reciter) if ayah_number else None
            return surah_name, audio

        def on_success(result: Tuple[str, Optional[SurahAudio]]) -> None:
            surah_name, audio = result
            self.kv.set(RECITER_KEY, {"identifier": reciter})
            self.session.subscribe(self._print_snapshot)
            self.session.play_surah(ActiveSurah(surah_number, surah_name), reciter, audio)
            if ayah_number:
                self.session.play_ayah(ayah_number)
            if sleep_minutes:
                self.session.set_sleep_timer(sleep_minutes)

        self._run_async(task, on_success, self._fail_command)

    def show_surah(self, surah_number: int) -> None:
        def task() -> Tuple[str, List[dict]]:
            verses = self.repository.get_surah(surah_number)
            surah_name = self._surah_name(surah_number)
            save_last_read(self.kv, surah_number, surah_name)
            return surah_name, verses

        def on_success(result: Tuple[str, List[dict]]) -> None:
            surah_name, verses = result
            if surah_name:
                print(surah_name)
            for verse in verses:
                print(f"{verse.get('verse_key')}: {verse.get('text_uthmani') or ''}")
            self.exit(0)

        self._run_async(task, on_success, self._fail_command)

    def show_page(self, page_number: int) -> None:
        def task() -> List[dict]:
            verses = self.repository.get_mushaf_page(page_number)
            if verses:
                first = verses[0]
                surah_number = int(first["surah"]["number"])
                save_last_read(self.kv, surah_number, self._surah_name(surah_number), first.get("numberInSurah") or 1)
            return verses

        def on_success(verses: List[dict]) -> None:
            for verse in verses:
                print(f"{verse.get('verse_key')}: {verse.get('text') or ''}")
            self.exit(0)

        self._run_async(task, on_success, self._fail_command)

    def search(self, query: str) -> None:
        def on_success(results: List[dict]) -> None:
            if not results:
                print("No results")
            for result in results:
                print(f"{result.get('verse_key')}: {result.get('text')}")
            self.exit(0)

        self._run_async(lambda: self.repository.search(query), on_success, self._fail_command)

    def reading(self, args: argparse.Namespace) -> None:
        """Run one of the reading-progress commands (last read, bookmarks, khitma, theme)."""

        def on_success(lines: List[str]) -> None:
            for line in lines:
                print(line)
            self.exit(0)

        self._run_async(
            lambda: reading_command(self.kv, args, self.repository.get_all_surahs),
            on_success,
            self._fail_command,
        )

    def show_tafsir(self, verse_key: str, tafsir_id: Optional[int] = None) -> None:
        edition = tafsir_id or self.config.tafsir_id

        def on_success(text: str) -> None:
            print(text)
            self.exit(0)

        self._run_async(lambda: self.repository.get_tafsir(verse_key, edition), on_success, self._fail_command)

    def show_daily_ayah(self) -> None:
        def on_success(ayah: dict) -> None:
            print(ayah.get("text", ""))
            print(f"{ayah.get('surah', '')} {ayah.get('number') or ''}".strip())
            self.exit(0)

        self._run_async(self.repository.get_daily_ayah, on_success, self._fail_command)

    def show_reciters(self) -> None:
        def on_success(reciters: tuple) -> None:
            for reciter in reciters:
                labels = ", ".join(entry.label for entry in reciter.moshaf)
                print(f"{reciter.identifier}\t{reciter.name}\t{labels}")
            self.exit(0)

        self._run_async(self.catalog.list, on_success, self._fail_command)

    def clear_cache(self) -> None:
        self.db.clear()
        QtCore.QTimer.singleShot(0, lambda: self.exit(0))

    # ------------------------------------------------------------------
    def _saved_reciter(self) -> Optional[str]:
        stored = self.kv.get(RECITER_KEY)
        if isinstance(stored, dict):
            return stored.get("identifier") or None
        return stored if isinstance(stored, str) and stored else None

    def _surah_name(self, surah_number: int) -> str:
        try:
            return self.repository.get_surah_name(surah_number)
        except UpstreamFetchError:
            LOGGER.warning("Could not resolve the name of surah %s", surah_number, exc_info=True)
            return ""

    def _print_snapshot(self, snapshot: AudioSnapshot) -> None:
        if snapshot.state is PlaybackState.WAITING_FOR_BUFFER:
            step = int(snapshot.buffered_progress // 5)
            if step != self._last_buffer_step:
                self._last_buffer_step = step
                print(f"Buffering {snapshot.buffered_progress:.0f}%")
        if snapshot.state is self._last_state:
            return
        self._last_state = snapshot.state
        if snapshot.state is PlaybackState.LOADING:
            self._last_buffer_step = -1
            print(f"Loading {snapshot.current_url}")
        elif snapshot.state is PlaybackState.PLAYING:
            print("Playing")
        elif snapshot.state is PlaybackState.PAUSED:
            print("Paused")
        elif snapshot.state is PlaybackState.ENDED:
            print("Finished")
            self.exit(0)
        elif snapshot.state is PlaybackState.FAILED:
            print(f"Playback failed: {snapshot.error}", file=sys.stderr)
            self.exit(1)

    def _on_cache_hit(self, event: CacheHitEvent) -> None:
        LOGGER.info("%s %s loaded from the local cache", event.type, event.id)

    def _fail_command(self, error: Exception) -> None:
        LOGGER.error("Command failed", exc_info=error)
        if isinstance(error, UpstreamFetchError):
            print(f"Unable to reach the content service: {error}", file=sys.stderr)
        else:
            print(f"Error: {error}", file=sys.stderr)
        self.exit(1)

    def _run_async(self, func, on_success, on_error) -> None:
        LOGGER.debug("Submitting background task %s", getattr(func, "__name__", func))
        dispatcher = _AsyncDispatcher(self, on_success, on_error)
        self._async_dispatchers.add(dispatcher)
        future = self._executor.submit(func)

        def _done(future_result) -> None:
            try:
                result = future_result.result()
                LOGGER.debug("Background task %s completed successfully", getattr(func, "__name__", func))
            except Exception as exc:  # pragma: no cover - UI glue
                LOGGER.exception("Background task %s raised an exception", getattr(func, "__name__", func), exc_info=exc)
                dispatcher.error.emit(exc)
            else:
                dispatcher.success.emit(result)

        future.add_done_callback(_done)

    def _cleanup(self) -> None:
        self.session.stop()
        self.sleep_scheduler.shutdown()
        self._executor.shutdown(wait=False)
        self.db.close()


def reading_command(
    kv: KeyValueStore,
    args: argparse.Namespace,
    surahs: Callable[[], List[dict]] = list,
    today: Optional[date] = None,
) -> List[str]:
    """Apply a reading-progress command to *kv* and return the lines to print."""
    if args.command == "last-read":
        last = get_last_read(kv)
        if not last:
            return ["Nothing read yet"]
        return [f"{last.get('surahName') or ''} {last.get('surahNumber')}:{last.get('verseNumber')}".strip()]

    if args.command == "bookmark":
        surah = next((item for item in surahs() if item.get("number") == args.surah), None)
        if surah is None:
            raise ValueError(f"Unknown surah {args.surah}")
        was_bookmarked = is_bookmarked(kv, args.surah)
        toggle_bookmark(kv, surah)
        return [f"{'Removed' if was_bookmarked else 'Added'} bookmark for {surah.get('name') or args.surah}"]

    if args.command == "bookmarks":
        bookmarks = get_bookmarks(kv)
        if not bookmarks:
            return ["No bookmarks"]
        return [f"{item.get('number')}\t{item.get('name') or ''}" for item in bookmarks]

    if args.command == "khitma":
        plan = load_khitma(kv)
        if args.days:
            plan.set_days(args.days)
        if args.mode:
            plan.mode = args.mode
        if args.action == "start":
            plan.start()
        elif args.action == "reset":
            plan.reset()
        elif args.action == "done":
            plan.finish_portion()
        save_khitma(kv, plan)
        status = "started" if plan.is_started else "not started"
        return [
            f"Khitma in {plan.days} days ({plan.mode}), {status}",
            f"{plan.daily} {plan.mode} per day, {plan.per_prayer} after each prayer",
            f"Progress {plan.progress}/{plan.total_portions} ({plan.progress_percentage}%)",
            f"Completes on {plan.completion_date(today).isoformat()}",
        ]

    if args.theme:
        set_theme(kv, args.theme)
    return [get_theme(kv)]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="skina", description="Offline Qur'an reader and recitation player")
    parser.add_argument("--config", type=Path, default=None, help="path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    play = commands.add_parser("play", help="stream a surah recitation")
    play.add_argument("surah", type=int)
    play.add_argument("--reciter", default=None)
    play.add_argument("--sleep", type=float, default=None, help="pause after this many minutes")
    play.add_argument("--ayah", type=int, default=None, help="play a single ayah instead of the surah")

    surah = commands.add_parser("surah", help="print every verse of a surah")
    surah.add_argument("surah", type=int)

    page = commands.add_parser("page", help="print a Mushaf page")
    page.add_argument("page", type=int)

    search = commands.add_parser("search", help="search the text for a word or phrase")
    search.add_argument("query")

    tafsir = commands.add_parser("tafsir", help="print the tafsir of a verse")
    tafsir.add_argument("verse_key")
    tafsir.add_argument("--edition", type=int, default=None)

    commands.add_parser("daily", help="print the ayah of the day")
    commands.add_parser("reciters", help="list available reciters")
    commands.add_parser("clear-cache", help="delete every locally cached entry")

    commands.add_parser("last-read", help="show where reading last stopped")
    bookmark = commands.add_parser("bookmark", help="add or remove a surah bookmark")
    bookmark.add_argument("surah", type=int)
    commands.add_parser("bookmarks", help="list bookmarked surahs")

    khitma = commands.add_parser("khitma", help="show or update the khitma plan")
    khitma.add_argument("--days", type=int, default=None)
    khitma.add_argument("--mode", choices=KHITMA_MODES, default=None)
    actions = khitma.add_mutually_exclusive_group()
    actions.add_argument("--start", dest="action", action="store_const", const="start")
    actions.add_argument("--reset", dest="action", action="store_const", const="reset")
    actions.add_argument("--done", dest="action", action="store_const", const="done", help="mark one portion read")

    theme = commands.add_parser("theme", help="show or set the reading theme")
    theme.add_argument("theme", nargs="?", choices=THEMES, default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    app = QuranApp([sys.argv[0]], config)
    if args.command == "play":
        app.play(args.surah, args.reciter, args.sleep, args.ayah)
    elif args.command == "surah":
        app.show_surah(args.surah)
    elif args.command == "page":
        app.show_page(args.page)
    elif args.command == "search":
        app.search(args.query)
    elif args.command in READING_COMMANDS:
        app.reading(args)
    elif args.command == "tafsir":
        app.show_tafsir(args.verse_key, args.edition)
    elif args.command == "daily":
        app.show_daily_ayah()
    elif args.command == "reciters":
        app.show_reciters()
    else:
        app.clear_cache()
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
