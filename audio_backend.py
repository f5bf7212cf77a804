"""Qt Multimedia implementation of the playback session's audio element."""
from __future__ import annotations

import logging
from typing import Any, Optional

try:  # Prefer PyQt5 multimedia bindings, fall back to Qt for Python variants
    from PyQt5 import QtCore, QtMultimedia  # type: ignore
except Exception:  # pragma: no cover - fallback path
    try:
        from PySide2 import QtCore, QtMultimedia  # type: ignore
    except Exception:
        from PySide6 import QtCore, QtMultimedia  # type: ignore

from audio_session import AudioBackend, AudioSession
from errors import AudioSourceError

LOGGER = logging.getLogger(__name__)


class QtAudioBackend(AudioBackend):
    """Drive a single ``QMediaPlayer`` and forward its events to the session.

    Buffered progress is only reported where the player exposes the buffered
    time range (Qt6) or once it declares the media fully buffered (Qt5,
    which is prerolled in the paused state to get there).  The
    buffer fill level Qt reports elsewhere describes its internal buffer,
    not the file, so it never feeds the session's initial-buffer gate.
    """

    def __init__(self, parent: Optional[QtCore.QObject] = None, player: Optional[Any] = None) -> None:
        self._player = player if player is not None else QtMultimedia.QMediaPlayer(parent)
        self._listener: Optional[AudioSession] = None
        self._token = 0
        self._url: Optional[str] = None
        self._audio_output = None
        if hasattr(self._player, "setAudioOutput"):
            # Qt6 routes volume through a separate QAudioOutput
            self._audio_output = QtMultimedia.QAudioOutput()
            self._player.setAudioOutput(self._audio_output)

        self._using_new_api = hasattr(self._player, "setSource")
        status = QtMultimedia.QMediaPlayer
        # MediaStatus members live on the class in Qt5 and on the nested enum in Qt6.
        media_status = status if hasattr(status, "LoadedMedia") else status.MediaStatus
        self._waiting_statuses = {media_status.StalledMedia, media_status.BufferingMedia, media_status.LoadingMedia}
        self._loaded_status = media_status.LoadedMedia
        self._buffered_status = media_status.BufferedMedia
        self._ended_status = media_status.EndOfMedia
        self._invalid_status = media_status.InvalidMedia

        self._player.mediaStatusChanged.connect(self._on_media_status)  # type: ignore
        self._player.positionChanged.connect(self._on_position)  # type: ignore
        self._player.durationChanged.connect(self._on_duration)  # type: ignore
        if hasattr(self._player, "bufferProgressChanged"):
            self._player.bufferProgressChanged.connect(self._on_buffer_progress)  # type: ignore
        if hasattr(self._player, "errorOccurred"):
            self._player.errorOccurred.connect(self._on_error)  # type: ignore
        elif hasattr(self._player, "error"):
            self._player.error.connect(self._on_error)  # type: ignore

    def set_listener(self, listener: AudioSession) -> None:
        self._listener = listener

    def load(self, url: str, token: int) -> None:
        # Stop first so status changes from the previous source carry its old token.
        self._player.stop()
        self._token = token
        qurl = QtCore.QUrl(url)
        if not url or not qurl.isValid():
            self._url = None
            raise AudioSourceError(f"Invalid audio URL {url}", url=url)
        self._url = url
        if self._using_new_api:
            # Qt6-style API
            self._player.setSource(qurl)
        else:
            # Qt5 API using QMediaContent
            self._player.setMedia(QtMultimedia.QMediaContent(qurl))  # type: ignore[attr-defined]
        LOGGER.debug("Loading audio source %s (token=%s)", url, token)

    def play(self) -> None:
        if not self._url:
            raise AudioSourceError("No audio source loaded")
        self._player.play()

    def pause(self) -> None:
        self._player.pause()

    def stop(self) -> None:
        self._player.stop()
        self._url = None

    def seek(self, seconds: float) -> None:
        self._player.setPosition(int(seconds * 1000))

    def set_volume(self, volume: float) -> None:
        if self._audio_output is not None:
            self._audio_output.setVolume(float(volume))
        elif hasattr(self._player, "setVolume"):
            # Qt5 API uses direct integer volume control on the player
            self._player.setVolume(int(round(volume * 100)))

    # -- Qt signal handlers ---------------------------------------------------------
    def _duration_seconds(self) -> Optional[float]:
        duration_ms = self._player.duration()
        return duration_ms / 1000.0 if duration_ms and duration_ms > 0 else None

    def _on_media_status(self, status: object) -> None:
        if self._listener is None:
            return
        if status in self._waiting_statuses:
            self._listener.on_waiting(self._token)
        elif status == self._loaded_status:
            if not self._report_buffered() and not hasattr(self._player, "bufferedTimeRange"):
                # A stopped Qt5 player does not buffer; pausing prerolls without sound.
                self._player.pause()
            self._listener.on_ready(self._token, self._duration_seconds())
        elif status == self._buffered_status:
            duration = self._duration_seconds()
            if not self._report_buffered() and duration:
                self._listener.on_progress(self._token, duration, duration)
            self._listener.on_ready(self._token, duration)
        elif status == self._ended_status:
            self._listener.on_ended(self._token)
        elif status == self._invalid_status:
            self._listener.on_error(self._token, "Invalid or unsupported media")

    def _on_position(self, position_ms: int) -> None:
        if self._listener is not None:
            self._listener.on_time_update(self._token, position_ms / 1000.0, self._duration_seconds())

    def _on_duration(self, duration_ms: int) -> None:
        if self._listener is None:
            return
        self._listener.on_duration(self._token, duration_ms / 1000.0 if duration_ms and duration_ms > 0 else None)
        self._report_buffered()

    def _on_buffer_progress(self, _progress: float) -> None:
        self._report_buffered()

    def _report_buffered(self) -> bool:
        """Forward the end of the last buffered interval; return whether one was known."""
        duration = self._duration_seconds()
        if self._listener is None or not duration or not hasattr(self._player, "bufferedTimeRange"):
            return False
        intervals = self._player.bufferedTimeRange().intervals()
        if not intervals:
            return False
        self._listener.on_progress(self._token, intervals[-1].end() / 1000.0, duration)
        return True

    def _on_error(self, error: object, *_: object) -> None:
        if hasattr(QtMultimedia.QMediaPlayer, "NoError") and error == QtMultimedia.QMediaPlayer.NoError:
            return
        message = getattr(self._player, "errorString", lambda: "unknown")()
        LOGGER.warning("Audio playback error for %s: %s", self._url, message)
        if self._listener is not None:
            self._listener.on_error(self._token, message or "playback error")
