"""
xpengine.services.config_service — Guild Config CRUD & Validation
==================================================================

Gameplay configuration lives in the Store, one document per guild and store::

    [domain, store_id, guild_id]  key "config"   → per-guild overrides
    [domain, "global"]            key "config"   → defaults shared by all guilds

Effective config = built-in defaults ← global ← stored guild config.  The
first read for a guild persists the merged result so later global changes
do not silently rewrite existing guilds.

Writes are validated first and reported, never thrown: an invalid write
returns ``ConfigWriteResult(valid=False, errors=[...])`` and stores nothing.
"""

from __future__ import annotations

import copy
import enum
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from xpengine.constants import (
    CONFIG_KEY,
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_LEADERBOARD_PUBLIC,
    DEFAULT_REMOVE_ON_LOSS,
    DEFAULT_REWARDS_MODE,
    DEFAULT_STORE_ID,
    DEFAULT_XP_RATE,
    GLOBAL_NAMESPACE,
    NAMESPACE_DOMAIN,
    check_id,
    guild_namespace,
    is_valid_snowflake,
)
from xpengine.database.store import Store
from xpengine.engine.curve import LevelCurve, build_curve, validate_curve_config

logger = logging.getLogger(__name__)


class RewardsMode(enum.StrEnum):
    STACK = "stack"
    REPLACE = "replace"


# ---------------------------------------------------------------------------
# Config data model
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RoleReward:
    level: int
    role_id: str


@dataclass(frozen=True, slots=True)
class Multipliers:
    server: float = 1.0
    role: dict[str, float] = field(default_factory=dict)
    user: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GuildConfig:
    """Effective configuration of one guild in one store."""

    cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS
    xp_rate: float = DEFAULT_XP_RATE
    rewards_mode: RewardsMode = RewardsMode(DEFAULT_REWARDS_MODE)
    remove_rewards_on_loss: bool = DEFAULT_REMOVE_ON_LOSS
    role_rewards: tuple[RoleReward, ...] = ()
    multipliers: Multipliers = field(default_factory=Multipliers)
    no_xp_channel_ids: tuple[str, ...] = ()
    no_xp_role_ids: tuple[str, ...] = ()
    leaderboard_public: bool = DEFAULT_LEADERBOARD_PUBLIC
    levels: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cooldown_seconds": self.cooldown_seconds,
            "xp_rate": self.xp_rate,
            "rewards_mode": self.rewards_mode.value,
            "remove_rewards_on_loss": self.remove_rewards_on_loss,
            "role_rewards": [{"level": r.level, "role_id": r.role_id} for r in self.role_rewards],
            "multipliers": {
                "server": self.multipliers.server,
                "role": dict(self.multipliers.role),
                "user": dict(self.multipliers.user),
            },
            "no_xp_channel_ids": list(self.no_xp_channel_ids),
            "no_xp_role_ids": list(self.no_xp_role_ids),
            "leaderboard_public": self.leaderboard_public,
            "levels": copy.deepcopy(self.levels),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GuildConfig:
        """Build from a (validated) dict; missing keys take defaults."""
        defaults = cls()
        mult = data.get("multipliers") or {}
        return cls(
            cooldown_seconds=data.get("cooldown_seconds", defaults.cooldown_seconds),
            xp_rate=data.get("xp_rate", defaults.xp_rate),
            rewards_mode=RewardsMode(data.get("rewards_mode", defaults.rewards_mode)),
            remove_rewards_on_loss=data.get("remove_rewards_on_loss", defaults.remove_rewards_on_loss),
            role_rewards=tuple(
                RoleReward(level=int(r["level"]), role_id=str(r["role_id"]))
                for r in data.get("role_rewards") or ()
            ),
            multipliers=Multipliers(
                server=mult.get("server", 1.0),
                role=dict(mult.get("role") or {}),
                user=dict(mult.get("user") or {}),
            ),
            no_xp_channel_ids=tuple(data.get("no_xp_channel_ids") or ()),
            no_xp_role_ids=tuple(data.get("no_xp_role_ids") or ()),
            leaderboard_public=data.get("leaderboard_public", defaults.leaderboard_public),
            levels=copy.deepcopy(data.get("levels")),
        )


CONFIG_FIELDS = frozenset(GuildConfig().to_dict())


def default_config() -> dict[str, Any]:
    return GuildConfig().to_dict()


def merge_configs(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Shallow merge, except ``multipliers`` whose role/user maps merge key-wise."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if key == "multipliers" and isinstance(value, Mapping):
            current = merged.get("multipliers") or {}
            merged["multipliers"] = {
                "server": value.get("server", current.get("server", 1.0)),
                "role": {**(current.get("role") or {}), **(value.get("role") or {})},
                "user": {**(current.get("user") or {}), **(value.get("user") or {})},
            }
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ValidationReport:
    valid: bool
    errors: list[str]


def _is_number(value: Any) -> bool:
    return (
        not isinstance(value, bool)
        and isinstance(value, (int, float))
        and math.isfinite(value)
    )


def _id_list_errors(name: str, value: Any) -> list[str]:
    if not isinstance(value, list):
        return [f"{name} must be a list"]
    errors: list[str] = []
    invalid = [str(v) for v in value if not is_valid_snowflake(v)]
    if invalid:
        errors.append(f"{name} contains invalid Discord snowflakes: {', '.join(invalid)}")
    if len(set(map(str, value))) != len(value):
        errors.append(f"{name} contains duplicate IDs")
    return errors


def _role_reward_errors(rewards: Any) -> list[str]:
    if not isinstance(rewards, list):
        return ["role_rewards must be a list"]
    errors: list[str] = []
    levels = []
    for reward in rewards:
        if not isinstance(reward, Mapping):
            errors.append(f"role reward {reward!r} must be an object")
            continue
        level = reward.get("level")
        if isinstance(level, bool) or not isinstance(level, int) or level < 0:
            errors.append(f"role reward level {level!r} must be a non-negative integer")
        else:
            levels.append(level)
        if not is_valid_snowflake(reward.get("role_id")):
            errors.append(f"role reward role_id {reward.get('role_id')!r} is not a valid Discord snowflake")
    if len(set(levels)) != len(levels):
        errors.append("role_rewards contains duplicate levels")
    return errors


def _multiplier_errors(multipliers: Any) -> list[str]:
    if not isinstance(multipliers, Mapping):
        return ["multipliers must be an object"]
    errors: list[str] = []
    server = multipliers.get("server")
    if server is not None and (not _is_number(server) or server < 0):
        errors.append("multipliers.server must be a non-negative number")
    for scope in ("role", "user"):
        table = multipliers.get(scope)
        if table is None:
            continue
        if not isinstance(table, Mapping):
            errors.append(f"multipliers.{scope} must be an object")
            continue
        for target_id, value in table.items():
            if not is_valid_snowflake(target_id):
                errors.append(f"multipliers.{scope} key {target_id!r} is not a valid Discord snowflake")
            if not _is_number(value) or value < 0:
                errors.append(f"multipliers.{scope}[{target_id}] must be a non-negative number")
    return errors


def validate_config(partial: Mapping[str, Any]) -> ValidationReport:
    """Check a (partial) config dict and collect every problem found."""
    if not isinstance(partial, Mapping):
        return ValidationReport(False, ["config must be an object"])

    errors: list[str] = []
    for key in partial:
        if key not in CONFIG_FIELDS:
            errors.append(f"Unknown config key: {key!r}")

    if "cooldown_seconds" in partial:
        value = partial["cooldown_seconds"]
        if not _is_number(value) or value < 0:
            errors.append("cooldown_seconds must be a non-negative number")
    if "xp_rate" in partial:
        value = partial["xp_rate"]
        if not _is_number(value) or value <= 0:
            errors.append("xp_rate must be a positive number")
    if "rewards_mode" in partial and partial["rewards_mode"] not in tuple(m.value for m in RewardsMode):
        errors.append("rewards_mode must be 'stack' or 'replace'")
    for flag in ("remove_rewards_on_loss", "leaderboard_public"):
        if flag in partial and not isinstance(partial[flag], bool):
            errors.append(f"{flag} must be a boolean")
    for name in ("no_xp_channel_ids", "no_xp_role_ids"):
        if name in partial:
            errors.extend(_id_list_errors(name, partial[name]))
    if "role_rewards" in partial:
        errors.extend(_role_reward_errors(partial["role_rewards"]))
    if "multipliers" in partial:
        errors.extend(_multiplier_errors(partial["multipliers"]))
    if partial.get("levels") is not None:
        errors.extend(validate_curve_config(partial["levels"]))

    return ValidationReport(valid=not errors, errors=errors)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ConfigWriteResult:
    valid: bool
    errors: list[str]
    config: GuildConfig | None = None


class ConfigService:
    """Per-guild config reads (cached) and validated writes.

    Cached entries are keyed by ``(store_id, guild_id)``; writing the global
    config drops every cached entry.
    """

    def __init__(self, store: Store, *, domain: str = NAMESPACE_DOMAIN) -> None:
        self._store = store
        self._domain = domain
        self._configs: dict[tuple[str, str], GuildConfig] = {}
        self._curves: dict[tuple[str, str], LevelCurve] = {}

    @property
    def domain(self) -> str:
        return self._domain

    def _namespace(self, store_id: str, guild_id: str) -> list[str]:
        return guild_namespace(store_id, guild_id, self._domain)

    # -------------------------------------------------------------------
    # Global defaults
    # -------------------------------------------------------------------
    async def get_global_config(self) -> dict[str, Any]:
        stored = await self._store.get(CONFIG_KEY, [self._domain, GLOBAL_NAMESPACE])
        return stored or {}

    async def set_global_config(self, partial: Mapping[str, Any]) -> ValidationReport:
        report = validate_config(partial)
        if not report.valid:
            logger.warning("Rejected global config: %s", "; ".join(report.errors))
            return report
        await self._store.set(CONFIG_KEY, dict(partial), [self._domain, GLOBAL_NAMESPACE])
        self.invalidate(all_stores=True)
        logger.info("Global config updated (%d keys)", len(partial))
        return report

    async def _base_config(self) -> dict[str, Any]:
        return merge_configs(default_config(), await self.get_global_config())

    # -------------------------------------------------------------------
    # Guild config
    # -------------------------------------------------------------------
    async def get_config(self, guild_id: str, *, store_id: str = DEFAULT_STORE_ID) -> GuildConfig:
        guild_id = check_id("guild_id", guild_id)
        store_id = check_id("store_id", store_id)
        cache_key = (store_id, guild_id)
        cached = self._configs.get(cache_key)
        if cached is not None:
            return cached

        namespace = self._namespace(store_id, guild_id)
        stored = await self._store.get(CONFIG_KEY, namespace)
        merged = await self._base_config()
        if stored:
            merged = merge_configs(merged, stored)
        else:
            await self._store.set(CONFIG_KEY, merged, namespace)
            logger.debug("Initialised config for guild %s (store=%s)", guild_id, store_id)

        config = GuildConfig.from_dict(merged)
        self._configs[cache_key] = config
        return config

    async def set_config(
        self,
        guild_id: str,
        config: GuildConfig | Mapping[str, Any],
        *,
        store_id: str = DEFAULT_STORE_ID,
    ) -> ConfigWriteResult:
        """Replace the guild's config wholesale.

        Keys absent from *config* take the built-in/global defaults, not the
        previously stored values.  Use :meth:`update_config` to merge.
        """
        guild_id = check_id("guild_id", guild_id)
        store_id = check_id("store_id", store_id)
        data = config.to_dict() if isinstance(config, GuildConfig) else config

        report = validate_config(data)
        if not report.valid:
            logger.warning(
                "Rejected config for guild %s (store=%s): %s",
                guild_id, store_id, "; ".join(report.errors),
            )
            return ConfigWriteResult(valid=False, errors=report.errors)

        merged = merge_configs(await self._base_config(), data)
        await self._store.set(CONFIG_KEY, merged, self._namespace(store_id, guild_id))
        self.invalidate(guild_id, store_id=store_id)

        result = GuildConfig.from_dict(merged)
        self._configs[(store_id, guild_id)] = result
        logger.info("Config replaced for guild %s (store=%s)", guild_id, store_id)
        return ConfigWriteResult(valid=True, errors=[], config=result)

    async def update_config(
        self,
        guild_id: str,
        partial: Mapping[str, Any],
        *,
        store_id: str = DEFAULT_STORE_ID,
    ) -> ConfigWriteResult:
        """Merge *partial* over the current config, then write it."""
        report = validate_config(partial)
        if not report.valid:
            return ConfigWriteResult(valid=False, errors=report.errors)
        current = await self.get_config(guild_id, store_id=store_id)
        return await self.set_config(
            guild_id, merge_configs(current.to_dict(), partial), store_id=store_id
        )

    async def get_curve(self, guild_id: str, *, store_id: str = DEFAULT_STORE_ID) -> LevelCurve:
        guild_id = check_id("guild_id", guild_id)
        store_id = check_id("store_id", store_id)
        cache_key = (store_id, guild_id)
        curve = self._curves.get(cache_key)
        if curve is None:
            config = await self.get_config(guild_id, store_id=store_id)
            curve = self._curves[cache_key] = build_curve(config.levels)
        return curve

    def invalidate(
        self,
        guild_id: str | None = None,
        *,
        store_id: str | None = None,
        all_stores: bool = False,
    ) -> None:
        """Drop cached configs and curves.

        ``all_stores=True`` without a guild clears everything; with a guild it
        clears that guild in every store.
        """
        if all_stores or store_id is None:
            keys = [k for k in self._configs.keys() | self._curves.keys()
                    if guild_id is None or k[1] == guild_id]
        else:
            keys = [(store_id, guild_id)]
        for key in keys:
            self._configs.pop(key, None)
            self._curves.pop(key, None)
