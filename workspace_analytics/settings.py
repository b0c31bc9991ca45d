"""Runtime configuration for the analytics engine, read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timezone, tzinfo
from typing import Mapping, Optional

import pytz
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_DEBOUNCE_MS = 250
DEFAULT_DISPLAY_TIMEZONE = "UTC"
DEFAULT_LOG_LEVEL = "INFO"


def resolve_log_level(name: Optional[str]) -> Optional[str]:
    """Upper-cased level name when ``logging`` knows it, otherwise ``None``."""
    if not name or not name.strip():
        return None
    level = name.strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        return None
    return level


def _safe_timezone(tz_name: str) -> Optional[tzinfo]:
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        return None


@dataclass(frozen=True)
class AnalyticsSettings:
    refresh_debounce_ms: int = DEFAULT_REFRESH_DEBOUNCE_MS
    display_timezone: str = DEFAULT_DISPLAY_TIMEZONE
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def refresh_debounce_seconds(self) -> float:
        return self.refresh_debounce_ms / 1000.0

    @property
    def tzinfo(self) -> tzinfo:
        return _safe_timezone(self.display_timezone) or timezone.utc

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AnalyticsSettings":
        env = os.environ if environ is None else environ

        raw_debounce = env.get("ANALYTICS_REFRESH_DEBOUNCE_MS")
        debounce = DEFAULT_REFRESH_DEBOUNCE_MS
        if raw_debounce not in (None, ""):
            try:
                debounce = int(raw_debounce)
            except ValueError:
                logger.warning(
                    "Ignoring invalid ANALYTICS_REFRESH_DEBOUNCE_MS=%r; using %s",
                    raw_debounce,
                    DEFAULT_REFRESH_DEBOUNCE_MS,
                )
            else:
                if debounce < 0:
                    logger.warning(
                        "Ignoring negative ANALYTICS_REFRESH_DEBOUNCE_MS=%s; using %s",
                        debounce,
                        DEFAULT_REFRESH_DEBOUNCE_MS,
                    )
                    debounce = DEFAULT_REFRESH_DEBOUNCE_MS

        tz_name = (env.get("ANALYTICS_DISPLAY_TIMEZONE") or DEFAULT_DISPLAY_TIMEZONE).strip()
        if _safe_timezone(tz_name) is None:
            logger.warning("Unknown display timezone %r; falling back to UTC", tz_name)
            tz_name = DEFAULT_DISPLAY_TIMEZONE

        raw_level = env.get("ANALYTICS_LOG_LEVEL")
        log_level = resolve_log_level(raw_level)
        if log_level is None:
            if raw_level not in (None, ""):
                logger.warning(
                    "Unknown ANALYTICS_LOG_LEVEL=%r; using %s", raw_level, DEFAULT_LOG_LEVEL
                )
            log_level = DEFAULT_LOG_LEVEL

        return cls(refresh_debounce_ms=debounce, display_timezone=tz_name, log_level=log_level)


_settings_instance: Optional[AnalyticsSettings] = None


def get_settings() -> AnalyticsSettings:
    global _settings_instance
    if _settings_instance is None:
        load_dotenv()
        _settings_instance = AnalyticsSettings.from_env()
    return _settings_instance


def reset_settings() -> None:
    global _settings_instance
    _settings_instance = None


__all__ = ["AnalyticsSettings", "get_settings", "reset_settings", "resolve_log_level"]
