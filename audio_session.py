"""Playback session for full-surah and single-ayah recitation.

The session owns one audio backend (the single audio element) and publishes an
immutable :class:`AudioSnapshot` after every change.  Every player surface
subscribes to the same session, so all of them observe the same transitions in
the same order.

Full-surah playback walks an ordered list of candidate URLs.  A failing
candidate is abandoned for the next one (never revisited), and playback only
starts once a quarter of the file is buffered.  Every ``load()`` is tagged
with a fresh generation token; backend callbacks carrying an older token
belong to a superseded source and are dropped.
"""
from __future__ import annotations

import itertools
import logging
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple, Union

import audio_urls
from content import SurahAudio
from errors import AudioSourceError, PlaybackFailed

LOGGER = logging.getLogger(__name__)

DEFAULT_VOLUME = 0.8
INITIAL_BUFFER_PERCENT = 25.0


class PlaybackState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    WAITING_FOR_BUFFER = "waiting_for_buffer"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"
    FAILED = "failed"


class PlaybackMode(Enum):
    SURAH = "surah"
    AYAH = "ayah"


_S = PlaybackState
TRANSITIONS: Dict[PlaybackState, FrozenSet[PlaybackState]] = {
    _S.IDLE: frozenset({_S.LOADING}),
    _S.LOADING: frozenset({_S.WAITING_FOR_BUFFER, _S.PLAYING, _S.FAILED, _S.IDLE}),
    _S.WAITING_FOR_BUFFER: frozenset({_S.PLAYING, _S.PAUSED, _S.LOADING, _S.FAILED, _S.IDLE}),
    _S.PLAYING: frozenset({_S.PAUSED, _S.ENDED, _S.LOADING, _S.FAILED, _S.IDLE}),
    _S.PAUSED: frozenset({_S.PLAYING, _S.ENDED, _S.LOADING, _S.FAILED, _S.IDLE}),
    _S.ENDED: frozenset({_S.PLAYING, _S.LOADING, _S.IDLE}),
    _S.FAILED: frozenset({_S.LOADING, _S.IDLE}),
}


@dataclass(frozen=True)
class ActiveSurah:
    number: int
    name: str = ""


@dataclass(frozen=True)
class AudioSnapshot:
    state: PlaybackState = PlaybackState.IDLE
    mode: PlaybackMode = PlaybackMode.SURAH
    active_surah: Optional[ActiveSurah] = None
    reciter: Optional[str] = None
    candidate_urls: Tuple[str, ...] = ()
    current_url_index: int = 0
    current_time: float = 0.0
    duration: Optional[float] = None
    buffered_progress: float = 0.0
    volume: float = DEFAULT_VOLUME
    current_ayah_number: Optional[int] = None
    sleep_timer_deadline: Optional[datetime] = None
    is_buffering: bool = False
    error: Optional[str] = None

    @property
    def is_playing(self) -> bool:
        return self.state is PlaybackState.PLAYING

    @property
    def is_waiting_for_initial_buffer(self) -> bool:
        return self.state is PlaybackState.WAITING_FOR_BUFFER

    @property
    def sleep_timer_active(self) -> bool:
        return self.sleep_timer_deadline is not None

    @property
    def current_url(self) -> Optional[str]:
        if 0 <= self.current_url_index < len(self.candidate_urls):
            return self.candidate_urls[self.current_url_index]
        return None

    @property
    def progress(self) -> float:
        if not _known(self.duration):
            return 0.0
        return self.current_time / self.duration * 100  # type: ignore[operator]


class AudioBackend(ABC):
    """The single playable audio element driven by :class:`AudioSession`.

    Implementations report events through the listener, passing back the
    token given to the most recent :meth:`load`.
    """

    @abstractmethod
    def set_listener(self, listener: "AudioSession") -> None: ...

    @abstractmethod
    def load(self, url: str, token: int) -> None: ...

    @abstractmethod
    def play(self) -> None:
        """Start or resume playback; raise :class:`AudioSourceError` if the source cannot play."""

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...

    @abstractmethod
    def seek(self, seconds: float) -> None: ...

    @abstractmethod
    def set_volume(self, volume: float) -> None: ...


class TimerScheduler(ABC):
    """One-shot timer; scheduling replaces any pending callback."""

    @abstractmethod
    def schedule(self, run_date: datetime, callback: Callable[[], None]) -> None: ...

    @abstractmethod
    def cancel(self) -> None: ...


Subscriber = Callable[[AudioSnapshot], None]
Resolver = Callable[[str, int], List[str]]


def _known(duration: Optional[float]) -> bool:
    return duration is not None and duration > 0 and math.isfinite(duration)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AudioSession:
    """Explicit playback state machine shared by every player surface."""

    def __init__(
        self,
        backend: AudioBackend,
        scheduler: TimerScheduler,
        resolver: Resolver = audio_urls.resolve,
        clock: Callable[[], datetime] = _utcnow,
        volume: float = DEFAULT_VOLUME,
        initial_buffer_percent: float = INITIAL_BUFFER_PERCENT,
    ) -> None:
        self._backend = backend
        self._scheduler = scheduler
        self._resolver = resolver
        self._clock = clock
        self._threshold = initial_buffer_percent
        self._lock = threading.RLock()
        self._subscribers: List[Subscriber] = []
        self._tokens = itertools.count(1)
        self._token = 0
        self._timer_tokens = itertools.count(1)
        self._timer_token = 0
        self._ready = False
        # Cleared by a user pause; a source reloaded after a failure then settles in PAUSED.
        self._autoplay = True
        self._audio: Optional[SurahAudio] = None
        self._snapshot = AudioSnapshot(volume=_clamp(volume, 0.0, 1.0))

        backend.set_listener(self)
        backend.set_volume(self._snapshot.volume)

    # -- Observation ----------------------------------------------------------
    @property
    def snapshot(self) -> AudioSnapshot:
        return self._snapshot

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; it immediately receives the current snapshot."""
        with self._lock:
            self._subscribers.append(callback)
            self._deliver(callback, self._snapshot)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # -- Commands ----------------------------------------------------------------
    def play_surah(
        self,
        surah: Union[int, ActiveSurah],
        reciter_id: str,
        audio: Optional[SurahAudio] = None,
    ) -> None:
        active = surah if isinstance(surah, ActiveSurah) else ActiveSurah(number=int(surah))
        with self._lock:
            current = self._snapshot
            if (
                current.mode is PlaybackMode.SURAH
                and current.active_surah is not None
                and current.active_surah.number == active.number
                and current.reciter == reciter_id
                and current.state not in (PlaybackState.IDLE, PlaybackState.FAILED)
            ):
                LOGGER.debug("Surah %s by %s already loaded", active.number, reciter_id)
                return

            self._audio = audio if audio is not None and audio.surah_number == active.number else None
            candidates = tuple(self._resolver(reciter_id, active.number))
            first_ayah = self._audio.ayah_url(1) if self._audio else None
            if first_ayah and first_ayah not in candidates:
                candidates += (first_ayah,)
            self._autoplay = True
            LOGGER.info("Playing surah %s by %s (%d candidates)", active.number, reciter_id, len(candidates))
            session = dict(
                mode=PlaybackMode.SURAH,
                active_surah=active,
                reciter=reciter_id,
                candidate_urls=candidates,
                current_ayah_number=None,
            )
            if not candidates:
                self._begin_load()
                self._update(state=PlaybackState.LOADING, current_url_index=0, **session)
                self._fail_terminal(f"No audio sources for surah {active.number}")
                return
            self._load_candidate(0, **session)

    def set_surah_audio(self, audio: SurahAudio) -> None:
        """Attach per-ayah metadata that arrived after :meth:`play_surah`."""
        with self._lock:
            self._audio = audio

    def play_ayah(self, ayah_number: int) -> None:
        """Play one ayah from the attached surah audio, bypassing the buffer gate and fallbacks."""
        with self._lock:
            url = self._audio.ayah_url(ayah_number) if self._audio else None
            if not url:
                raise KeyError(f"No audio URL known for ayah {ayah_number}")
            token = self._begin_load()
            self._autoplay = True
            self._update(
                state=PlaybackState.LOADING,
                mode=PlaybackMode.AYAH,
                candidate_urls=(url,),
                current_url_index=0,
                current_ayah_number=ayah_number,
                current_time=0.0,
                duration=None,
                buffered_progress=0.0,
                is_buffering=False,
                error=None,
            )
            LOGGER.debug("Playing ayah %s from %s", ayah_number, url)
            try:
                self._backend.load(url, token)
            except AudioSourceError as exc:
                self._fail(token, str(exc))
                return
            if token == self._token and self._snapshot.state is PlaybackState.LOADING:
                self._start_playback()

    def toggle_play(self) -> None:
        with self._lock:
            state = self._snapshot.state
            if state is PlaybackState.PLAYING:
                self._autoplay = False
                self._backend.pause()
                self._update(state=PlaybackState.PAUSED)
            elif state in (PlaybackState.PAUSED, PlaybackState.ENDED):
                self._autoplay = True
                self._start_playback()
            elif state in (PlaybackState.LOADING, PlaybackState.WAITING_FOR_BUFFER):
                # The buffer gate decides when to start; this only records the user's intent.
                self._autoplay = not self._autoplay
                LOGGER.debug("Autoplay after initial buffer %s", "enabled" if self._autoplay else "disabled")
            else:
                LOGGER.debug("toggle_play ignored in state %s", state.value)

    def seek(self, seconds: float) -> None:
        with self._lock:
            if self._snapshot.state in (PlaybackState.IDLE, PlaybackState.FAILED):
                return
            position = max(0.0, float(seconds))
            duration = self._snapshot.duration
            if _known(duration):
                position = min(position, duration)  # type: ignore[type-var]
            self._backend.seek(position)
            self._update(current_time=position)

    def skip(self, delta_seconds: float) -> None:
        with self._lock:
            self.seek(self._snapshot.current_time + delta_seconds)

    def set_volume(self, volume: float) -> None:
        with self._lock:
            value = _clamp(float(volume), 0.0, 1.0)
            self._backend.set_volume(value)
            self._update(volume=value)

    def stop(self) -> None:
        with self._lock:
            if self._snapshot.state is PlaybackState.IDLE:
                return
            self._begin_load()
            self._cancel_sleep_timer()
            self._backend.stop()
            self._audio = None
            self._autoplay = True
            self._update(
                state=PlaybackState.IDLE,
                mode=PlaybackMode.SURAH,
                active_surah=None,
                reciter=None,
                candidate_urls=(),
                current_url_index=0,
                current_time=0.0,
                duration=None,
                buffered_progress=0.0,
                is_buffering=False,
                current_ayah_number=None,
                sleep_timer_deadline=None,
                error=None,
            )

    def set_sleep_timer(self, minutes: Optional[float]) -> None:
        """Pause playback after *minutes*; ``None`` disarms the timer without touching playback."""
        with self._lock:
            self._cancel_sleep_timer()
            if minutes is None:
                LOGGER.info("Sleep timer cleared")
                self._update(sleep_timer_deadline=None)
                return
            if minutes <= 0:
                raise ValueError("Sleep timer must be a positive number of minutes")
            token = self._timer_token
            deadline = self._clock() + timedelta(minutes=minutes)
            self._scheduler.schedule(deadline, lambda: self._on_sleep_timer(token))
            LOGGER.info("Sleep timer set for %s minutes (until %s)", minutes, deadline)
            self._update(sleep_timer_deadline=deadline)

    # -- Backend listener -------------------------------------------------------------
    def on_progress(self, token: int, buffered_end: float, duration: Optional[float]) -> None:
        with self._lock:
            if token != self._token or not _known(duration):
                return
            percent = _clamp(buffered_end / duration * 100, 0.0, 100.0)  # type: ignore[operator]
            self._update(buffered_progress=percent, duration=duration)
            self._maybe_start()

    def on_time_update(self, token: int, position: float, duration: Optional[float]) -> None:
        with self._lock:
            if token != self._token:
                return
            changes = {"current_time": max(0.0, position)}
            if _known(duration):
                changes["duration"] = duration
            self._update(**changes)

    def on_waiting(self, token: int) -> None:
        with self._lock:
            if token == self._token and not self._snapshot.is_buffering:
                self._update(is_buffering=True)

    def on_duration(self, token: int, duration: Optional[float]) -> None:
        with self._lock:
            if token == self._token and _known(duration) and duration != self._snapshot.duration:
                self._update(duration=duration)

    def on_ready(self, token: int, duration: Optional[float] = None) -> None:
        """The source can play; *duration* is what the player knows at this point, if anything."""
        with self._lock:
            if token != self._token:
                return
            self._ready = True
            changes: Dict[str, object] = {}
            if _known(duration) and duration != self._snapshot.duration:
                changes["duration"] = duration
            if self._snapshot.is_buffering:
                changes["is_buffering"] = False
            if changes:
                self._update(**changes)
            self._maybe_start()

    def on_ended(self, token: int) -> None:
        with self._lock:
            if token != self._token:
                return
            if self._snapshot.state in (PlaybackState.PLAYING, PlaybackState.PAUSED):
                LOGGER.info("Playback reached the end of %s", self._snapshot.current_url)
                self._update(state=PlaybackState.ENDED, current_ayah_number=None, is_buffering=False)

    def on_error(self, token: int, message: str) -> None:
        self._fail(token, message)

    # -- Internals -----------------------------------------------------------------------
    def _begin_load(self) -> int:
        self._token = next(self._tokens)
        self._ready = False
        return self._token

    def _load_candidate(self, index: int, **session) -> None:
        token = self._begin_load()
        self._update(
            state=PlaybackState.LOADING,
            current_url_index=index,
            current_time=0.0,
            duration=None,
            buffered_progress=0.0,
            is_buffering=False,
            error=None,
            **session,
        )
        url = self._snapshot.candidate_urls[index]
        LOGGER.info("Trying source %d/%d: %s", index + 1, len(self._snapshot.candidate_urls), url)
        try:
            self._backend.load(url, token)
        except AudioSourceError as exc:
            self._fail(token, str(exc))
            return
        if token == self._token and self._snapshot.state is PlaybackState.LOADING:
            self._update(state=PlaybackState.WAITING_FOR_BUFFER)
            self._maybe_start()

    def _maybe_start(self) -> None:
        snapshot = self._snapshot
        if snapshot.state is not PlaybackState.WAITING_FOR_BUFFER:
            return
        if snapshot.buffered_progress >= self._threshold or (self._ready and not _known(snapshot.duration)):
            if not self._autoplay:
                LOGGER.debug("Initial buffer reached (%.1f%%); staying paused", snapshot.buffered_progress)
                self._update(state=PlaybackState.PAUSED)
                return
            LOGGER.debug("Initial buffer reached (%.1f%%); starting playback", snapshot.buffered_progress)
            self._start_playback()

    def _start_playback(self) -> None:
        token = self._token
        try:
            self._backend.play()
        except AudioSourceError as exc:
            self._fail(token, str(exc))
            return
        if token == self._token:
            self._update(state=PlaybackState.PLAYING)

    def _fail(self, token: int, reason: str) -> None:
        # Load errors and rejected play() calls both end up here.
        with self._lock:
            if token != self._token:
                LOGGER.debug("Ignoring failure from superseded source: %s", reason)
                return
            snapshot = self._snapshot
            if snapshot.state in (PlaybackState.IDLE, PlaybackState.ENDED, PlaybackState.FAILED):
                return
            LOGGER.warning(
                "Source %d (%s) failed: %s",
                snapshot.current_url_index + 1,
                snapshot.current_url,
                reason,
            )
            next_index = snapshot.current_url_index + 1
            if snapshot.mode is PlaybackMode.SURAH and next_index < len(snapshot.candidate_urls):
                self._load_candidate(next_index)
                return
            self._fail_terminal(reason)

    def _fail_terminal(self, reason: str) -> None:
        snapshot = self._snapshot
        error = PlaybackFailed(f"All audio sources failed: {reason}", url=snapshot.current_url)
        if snapshot.active_surah is not None and snapshot.mode is PlaybackMode.SURAH:
            LOGGER.error("All audio sources failed for surah %s", snapshot.active_surah.number)
        else:
            LOGGER.error("Audio playback failed: %s", reason)
        self._update(state=PlaybackState.FAILED, is_buffering=False, error=str(error))

    def _cancel_sleep_timer(self) -> None:
        self._timer_token = next(self._timer_tokens)
        self._scheduler.cancel()

    def _on_sleep_timer(self, token: int) -> None:
        with self._lock:
            if token != self._timer_token:
                return
            self._timer_token = next(self._timer_tokens)
            LOGGER.info("Sleep timer expired")
            if self._snapshot.state is PlaybackState.PLAYING:
                self._autoplay = False
                self._backend.pause()
                self._update(state=PlaybackState.PAUSED, sleep_timer_deadline=None)
            else:
                self._update(sleep_timer_deadline=None)

    def _update(self, **changes) -> None:
        new_state = changes.get("state")
        current = self._snapshot.state
        if new_state is not None and new_state is not current:
            if new_state not in TRANSITIONS[current]:
                raise RuntimeError(f"Invalid playback transition {current.value} -> {new_state.value}")
            LOGGER.debug("Playback state %s -> %s", current.value, new_state.value)
        self._snapshot = replace(self._snapshot, **changes)
        snapshot = self._snapshot
        for callback in list(self._subscribers):
            self._deliver(callback, snapshot)

    @staticmethod
    def _deliver(callback: Subscriber, snapshot: AudioSnapshot) -> None:
        try:
            callback(snapshot)
        except Exception:
            LOGGER.exception("Playback subscriber %r failed", callback)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
