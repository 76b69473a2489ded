"""
xpengine.constants — Shared Constants & Namespace Helpers
==========================================================

Single source of truth for store layout, curve coefficients and defaults.
Import from here instead of duplicating in services, cache, and API.
"""

from __future__ import annotations

import re
from typing import Any

from xpengine.errors import InvalidArgument

# ---------------------------------------------------------------------------
# Store layout
# ---------------------------------------------------------------------------
NAMESPACE_DOMAIN = "xp"
DEFAULT_STORE_ID = "default"
GLOBAL_NAMESPACE = "global"

USERS_SEGMENT = "users"
CONFIG_KEY = "config"


def user_namespace(store_id: str, guild_id: str, domain: str = NAMESPACE_DOMAIN) -> list[str]:
    """Namespace holding one UserRecord per user id."""
    return [domain, store_id, guild_id, USERS_SEGMENT]


def guild_namespace(store_id: str, guild_id: str, domain: str = NAMESPACE_DOMAIN) -> list[str]:
    """Namespace holding the per-guild config."""
    return [domain, store_id, guild_id]


# ---------------------------------------------------------------------------
# Leveling formula coefficients: XP needed for level L is A·L² + B·L + C
# ---------------------------------------------------------------------------
CURVE_A = 5
CURVE_B = 50
CURVE_C = 100

# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------
LEADERBOARD_CACHE_SIZE = 100
LEADERBOARD_TTL_SECONDS = 60.0

# ---------------------------------------------------------------------------
# Guild config defaults
# ---------------------------------------------------------------------------
DEFAULT_COOLDOWN_SECONDS = 60
DEFAULT_XP_RATE = 1.0
DEFAULT_REWARDS_MODE = "stack"
DEFAULT_REMOVE_ON_LOSS = False
DEFAULT_LEADERBOARD_PUBLIC = False

# Discord snowflakes are 17–20 digit integers rendered as strings.
SNOWFLAKE_RE = re.compile(r"^\d{17,20}$")


def is_valid_snowflake(value: object) -> bool:
    return isinstance(value, str) and bool(SNOWFLAKE_RE.match(value))


def check_id(name: str, value: Any) -> str:
    """Normalise a guild/user/store id; ints are accepted and stringified.

    Ids become namespace segments, so they must be non-empty and free of
    the ``/`` separator.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value or "/" in value:
        raise InvalidArgument(f"{name} must be a non-empty string without '/'", {name: value})
    return value
