"""Application configuration loaded from ``config.json`` and the environment."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).parent
CONFIG_PATH = APP_ROOT / "config.json"

CLIENT_ID_ENV = ("QURAN_CLIENT_ID", "VITE_QURAN_CLIENT_ID")
CLIENT_SECRET_ENV = ("QURAN_CLIENT_SECRET", "VITE_QURAN_CLIENT_SECRET")


@dataclass
class AppConfig:
    data_dir: Path
    database: str = "skina.db"
    default_reciter: str = "ar.alafasy"
    volume: float = 0.8
    initial_buffer_percent: float = 25.0
    timezone: Optional[str] = None
    tafsir_id: int = 16
    log_level: str = "INFO"
    legacy_state: Optional[Path] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> AppConfig:
    """Build an :class:`AppConfig` from *path* (defaults to ``config.json``) and *environ*."""
    path = path or CONFIG_PATH
    environ = os.environ if environ is None else environ
    raw = _load_json(path, default={})
    LOGGER.debug("Loaded config keys from %s: %s", path, list(raw.keys()))

    data_dir = Path(str(raw.get("data_dir") or "~/.skina")).expanduser()
    legacy = raw.get("legacy_state")

    return AppConfig(
        data_dir=data_dir,
        database=str(raw.get("database") or "skina.db"),
        default_reciter=str(raw.get("default_reciter") or "ar.alafasy"),
        volume=_safe_float(raw.get("volume"), 0.8),
        initial_buffer_percent=_safe_float(raw.get("initial_buffer_percent"), 25.0),
        timezone=str(raw["timezone"]) if raw.get("timezone") else None,
        tafsir_id=int(raw.get("tafsir_id", 16)),
        log_level=str(raw.get("log_level", "INFO")).upper(),
        legacy_state=Path(str(legacy)).expanduser() if legacy else None,
        client_id=_first_env(environ, CLIENT_ID_ENV),
        client_secret=_first_env(environ, CLIENT_SECRET_ENV),
    )


def _load_json(path: Path, default: Dict[str, Any]) -> Dict[str, Any]:
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError):
        LOGGER.warning("Ignoring unreadable config file %s", path, exc_info=True)
        return default
    return payload if isinstance(payload, dict) else default


def _first_env(environ: Dict[str, str], names: tuple) -> Optional[str]:
    for name in names:
        value = environ.get(name)
        if value:
            return value
    return None


def _safe_float(value: Optional[object], default: float) -> float:
    try:
        if value in (None, ""):
            return default
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
