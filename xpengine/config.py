"""
xpengine.config — YAML Configuration Loader
============================================

This module reads ``config.yaml`` for **infrastructure-only** settings
(namespace domain, cache tuning, database URL).  All gameplay tuning values
(cooldown, XP rate, role rewards, level curve) live in the Store as per-guild
config, editable through :class:`~xpengine.services.config_service.ConfigService`.

Usage::

    from xpengine.config import load_config

    cfg = load_config()                 # reads ./config.yaml by default
    print(cfg.leaderboard_ttl_seconds)  # 60.0
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from xpengine.constants import (
    DEFAULT_STORE_ID,
    LEADERBOARD_CACHE_SIZE,
    LEADERBOARD_TTL_SECONDS,
    NAMESPACE_DOMAIN,
)


# ---------------------------------------------------------------------------
# Typed settings object, infrastructure only.
# Gameplay tuning lives in the Store.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EngineSettings:
    """Immutable configuration loaded from ``config.yaml``."""

    domain: str = NAMESPACE_DOMAIN
    default_store_id: str = DEFAULT_STORE_ID

    # Leaderboard cache
    leaderboard_ttl_seconds: float = LEADERBOARD_TTL_SECONDS
    leaderboard_cache_size: int = LEADERBOARD_CACHE_SIZE

    # Persistence (falls back to the DATABASE_URL env var)
    database_url: str | None = None

    # Dashboard API
    api_prefix: str = "/api"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> EngineSettings:
    """Read *path* and return an :class:`EngineSettings` instance.

    Keys missing from the file keep their defaults.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a numeric setting is out of range.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = EngineSettings()
    settings = EngineSettings(
        domain=str(raw.get("domain", defaults.domain)),
        default_store_id=str(raw.get("default_store_id", defaults.default_store_id)),
        leaderboard_ttl_seconds=float(
            raw.get("leaderboard_ttl_seconds", defaults.leaderboard_ttl_seconds)
        ),
        leaderboard_cache_size=int(
            raw.get("leaderboard_cache_size", defaults.leaderboard_cache_size)
        ),
        database_url=raw.get("database_url") or os.getenv("DATABASE_URL"),
        api_prefix=str(raw.get("api_prefix", defaults.api_prefix)),
    )

    if settings.leaderboard_ttl_seconds <= 0:
        raise ValueError("leaderboard_ttl_seconds must be positive")
    if settings.leaderboard_cache_size < 1:
        raise ValueError("leaderboard_cache_size must be at least 1")
    return settings
