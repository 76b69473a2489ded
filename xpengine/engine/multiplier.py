"""
xpengine.engine.multiplier — XP Multiplier Resolution
======================================================

Effective multiplier = server × max(role multipliers held) × user.
Pure functions over a :class:`~xpengine.services.config_service.GuildConfig`.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from xpengine.services.config_service import GuildConfig


def server_multiplier(config: GuildConfig) -> float:
    return config.multipliers.server


def max_role_multiplier(config: GuildConfig, role_ids: Iterable[str]) -> float:
    """Highest multiplier among the roles held; 1.0 when none is configured."""
    values = [config.multipliers.role[r] for r in role_ids if r in config.multipliers.role]
    return max(values) if values else 1.0


def user_multiplier(config: GuildConfig, user_id: str) -> float:
    return config.multipliers.user.get(user_id, 1.0)


def resolve_multiplier(config: GuildConfig, role_ids: Iterable[str], user_id: str) -> float:
    """Combined multiplier, rounded to 3 decimals."""
    multiplier = (
        server_multiplier(config)
        * max_role_multiplier(config, role_ids)
        * user_multiplier(config, user_id)
    )
    return round(multiplier, 3)
