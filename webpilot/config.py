"""Environment-driven configuration for webpilot.

Values are read from the process environment on every attribute access so that
tests and callers can change them with ``monkeypatch.setenv`` / ``.env`` files
without reloading the module.
"""
from __future__ import annotations

import os
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class _Config:
    """Lazy view over WEBPILOT_* environment variables."""

    @property
    def WEBPILOT_LOGGING_LEVEL(self) -> str:
        return os.getenv('WEBPILOT_LOGGING_LEVEL', 'info').lower()

    @property
    def WEBPILOT_SETUP_LOGGING(self) -> bool:
        return _env_bool('WEBPILOT_SETUP_LOGGING', True)

    @property
    def WEBPILOT_MAX_STEPS(self) -> Optional[int]:
        return _env_int('WEBPILOT_MAX_STEPS', None)

    @property
    def WEBPILOT_MAX_TOTAL_TOKENS(self) -> Optional[int]:
        return _env_int('WEBPILOT_MAX_TOTAL_TOKENS', None)


CONFIG = _Config()
