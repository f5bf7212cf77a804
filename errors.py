"""Exception types shared across the cache, content and playback layers."""
from __future__ import annotations

from typing import Optional


class QuranAppError(Exception):
    """Base class for application errors."""


class UpstreamFetchError(QuranAppError):
    """Raised when a content or reciter upstream cannot be reached or returns garbage."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class CacheUnavailable(QuranAppError):
    """Raised internally when the local database cannot be used."""


class AudioSourceError(QuranAppError):
    """A single audio candidate failed to load or start."""

    def __init__(self, message: str, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class PlaybackFailed(AudioSourceError):
    """Every audio candidate for the session has failed."""


class ConfigurationMissing(QuranAppError):
    """Credentials required for authenticated upstream access are absent."""
