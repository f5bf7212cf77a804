import os

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

try:
    from PyQt5 import QtMultimedia
except Exception:  # pragma: no cover - fallback path
    from PySide2 import QtMultimedia

import pytest

from audio_backend import QtAudioBackend
from audio_session import AudioSession, PlaybackState, TimerScheduler
from errors import AudioSourceError

Status = QtMultimedia.QMediaPlayer


class _Signal:
    def __init__(self) -> None:
        self._slots = []

    def connect(self, slot) -> None:
        self._slots.append(slot)

    def emit(self, *args) -> None:
        for slot in list(self._slots):
            slot(*args)


class _Qt5Player:
    """Mimics the parts of the Qt5 QMediaPlayer the backend uses."""

    def __init__(self) -> None:
        self.mediaStatusChanged = _Signal()
        self.positionChanged = _Signal()
        self.durationChanged = _Signal()
        self.error = _Signal()
        self.calls = []
        self.media = None
        self.volume = None
        self.position = None
        self.duration_ms = 0

    def setMedia(self, content) -> None:
        self.media = content.canonicalUrl().toString()

    def play(self) -> None:
        self.calls.append("play")

    def pause(self) -> None:
        self.calls.append("pause")

    def stop(self) -> None:
        self.calls.append("stop")

    def setPosition(self, position: int) -> None:
        self.position = position

    def setVolume(self, volume: int) -> None:
        self.volume = volume

    def duration(self) -> int:
        return self.duration_ms

    def errorString(self) -> str:
        return "404 Not Found"


class _Interval:
    def __init__(self, end_ms: int) -> None:
        self._end = end_ms

    def end(self) -> int:
        return self._end


class _TimeRange:
    def __init__(self, ends) -> None:
        self._ends = ends

    def intervals(self):
        return [_Interval(end) for end in self._ends]


class _Qt6Player(_Qt5Player):
    """Source-based API with a buffered time range."""

    def __init__(self) -> None:
        super().__init__()
        self.bufferProgressChanged = _Signal()
        self.errorOccurred = _Signal()
        self.source = None
        self.buffered_ends = []

    def setSource(self, url) -> None:
        self.source = url.toString()

    def bufferedTimeRange(self) -> _TimeRange:
        return _TimeRange(self.buffered_ends)


class _RecordingListener:
    def __init__(self) -> None:
        self.events = []

    def on_progress(self, token, buffered_end, duration) -> None:
        self.events.append(("progress", token, buffered_end, duration))

    def on_time_update(self, token, position, duration) -> None:
        self.events.append(("time", token, position, duration))

    def on_duration(self, token, duration) -> None:
        self.events.append(("duration", token, duration))

    def on_waiting(self, token) -> None:
        self.events.append(("waiting", token))

    def on_ready(self, token, duration=None) -> None:
        self.events.append(("ready", token, duration))

    def on_ended(self, token) -> None:
        self.events.append(("ended", token))

    def on_error(self, token, message) -> None:
        self.events.append(("error", token, message))


class _NoopScheduler(TimerScheduler):
    def schedule(self, run_date, callback) -> None:
        return None

    def cancel(self) -> None:
        return None


@pytest.fixture()
def qt5_player():
    return _Qt5Player()


@pytest.fixture()
def listener():
    return _RecordingListener()


def test_load_stamps_events_with_latest_token(qt5_player: _Qt5Player, listener: _RecordingListener) -> None:
    backend = QtAudioBackend(player=qt5_player)
    backend.set_listener(listener)

    backend.load("https://a/001.mp3", 7)
    assert qt5_player.calls == ["stop"]
    assert qt5_player.media == "https://a/001.mp3"
    qt5_player.duration_ms = 600000
    qt5_player.durationChanged.emit(600000)

    backend.load("https://b/001.mp3", 8)
    qt5_player.positionChanged.emit(30000)

    assert listener.events == [("duration", 7, 600.0), ("time", 8, 30.0, 600.0)]


def test_media_status_mapping(qt5_player: _Qt5Player, listener: _RecordingListener) -> None:
    backend = QtAudioBackend(player=qt5_player)
    backend.set_listener(listener)
    backend.load("https://a/001.mp3", 3)

    qt5_player.mediaStatusChanged.emit(Status.LoadingMedia)
    qt5_player.mediaStatusChanged.emit(Status.StalledMedia)
    qt5_player.mediaStatusChanged.emit(Status.EndOfMedia)
    qt5_player.mediaStatusChanged.emit(Status.InvalidMedia)

    assert listener.events == [
        ("waiting", 3),
        ("waiting", 3),
        ("ended", 3),
        ("error", 3, "Invalid or unsupported media"),
    ]


def test_loaded_media_prerolls_and_reports_duration(qt5_player: _Qt5Player, listener: _RecordingListener) -> None:
    backend = QtAudioBackend(player=qt5_player)
    backend.set_listener(listener)
    backend.load("https://a/001.mp3", 1)
    qt5_player.duration_ms = 120000

    qt5_player.mediaStatusChanged.emit(Status.LoadedMedia)
    assert qt5_player.calls[-1] == "pause"
    assert listener.events == [("ready", 1, 120.0)]

    qt5_player.mediaStatusChanged.emit(Status.BufferedMedia)
    assert listener.events[1:] == [("progress", 1, 120.0, 120.0), ("ready", 1, 120.0)]


def test_qt5_session_waits_for_buffer_after_loaded_media(qt5_player: _Qt5Player) -> None:
    backend = QtAudioBackend(player=qt5_player)
    session = AudioSession(backend, _NoopScheduler(), resolver=lambda reciter, surah: ["https://a/001.mp3"])
    session.play_surah(1, "ar.alafasy")

    qt5_player.duration_ms = 600000
    qt5_player.durationChanged.emit(600000)
    qt5_player.mediaStatusChanged.emit(Status.LoadedMedia)

    snapshot = session.snapshot
    assert snapshot.state is PlaybackState.WAITING_FOR_BUFFER
    assert snapshot.duration == 600.0
    assert snapshot.buffered_progress == 0.0
    assert "play" not in qt5_player.calls

    qt5_player.mediaStatusChanged.emit(Status.BufferedMedia)
    assert session.snapshot.state is PlaybackState.PLAYING
    assert session.snapshot.buffered_progress == 100.0
    assert qt5_player.calls[-1] == "play"


def test_loaded_media_without_duration_starts_playback(qt5_player: _Qt5Player) -> None:
    backend = QtAudioBackend(player=qt5_player)
    session = AudioSession(backend, _NoopScheduler(), resolver=lambda reciter, surah: ["https://a/001.mp3"])
    session.play_surah(1, "ar.alafasy")

    qt5_player.mediaStatusChanged.emit(Status.LoadedMedia)

    assert session.snapshot.state is PlaybackState.PLAYING


def test_invalid_url_rejected(qt5_player: _Qt5Player) -> None:
    backend = QtAudioBackend(player=qt5_player)

    with pytest.raises(AudioSourceError):
        backend.load("", 1)
    with pytest.raises(AudioSourceError):
        backend.play()
    assert qt5_player.media is None


def test_qt5_volume_and_seek(qt5_player: _Qt5Player) -> None:
    backend = QtAudioBackend(player=qt5_player)

    backend.set_volume(0.35)
    backend.seek(12.5)

    assert qt5_player.volume == 35
    assert qt5_player.position == 12500


def test_player_errors_forwarded(qt5_player: _Qt5Player, listener: _RecordingListener) -> None:
    backend = QtAudioBackend(player=qt5_player)
    backend.set_listener(listener)
    backend.load("https://a/001.mp3", 4)

    qt5_player.error.emit(Status.NoError)
    qt5_player.error.emit(Status.ResourceError)

    assert listener.events == [("error", 4, "404 Not Found")]


def test_qt6_buffered_range_reported(listener: _RecordingListener) -> None:
    player = _Qt6Player()
    backend = QtAudioBackend(player=player)
    backend.set_listener(listener)

    backend.load("https://a/001.mp3", 2)
    assert player.source == "https://a/001.mp3"
    assert player.media is None

    player.duration_ms = 200000
    player.buffered_ends = [20000, 50000]
    player.durationChanged.emit(200000)
    player.buffered_ends = [80000]
    player.bufferProgressChanged.emit(0.4)
    player.mediaStatusChanged.emit(Status.LoadedMedia)

    assert listener.events == [
        ("duration", 2, 200.0),
        ("progress", 2, 50.0, 200.0),
        ("progress", 2, 80.0, 200.0),
        ("progress", 2, 80.0, 200.0),
        ("ready", 2, 200.0),
    ]
    assert "pause" not in player.calls
