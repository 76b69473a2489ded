"""
xpengine.services.engine — Engine Wiring
=========================================

Builds one self-contained engine: a Store, an EventBus, and the services
subscribed to it.  Nothing is module-global, so several engines (tests,
tenants) can live in one process.

Usage::

    engine = XPEngine.create(MemoryStore(), platform=DiscordPlatform(client))
    await engine.xp.add(guild_id, user_id, 25, reason="message")
    page = await engine.leaderboard.get(guild_id)
    await engine.settled()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from xpengine.config import EngineSettings
from xpengine.database.store import Store
from xpengine.engine.cache import LeaderboardCache
from xpengine.engine.curve import LevelCurve
from xpengine.engine.events import EventBus
from xpengine.services.config_service import ConfigService
from xpengine.services.platform import Platform
from xpengine.services.reconciliation_service import RoleRewardReconciler
from xpengine.services.xp_service import XPLedger

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class XPEngine:
    store: Store
    bus: EventBus
    configs: ConfigService
    xp: XPLedger
    leaderboard: LeaderboardCache
    rewards: RoleRewardReconciler | None
    settings: EngineSettings

    @classmethod
    def create(
        cls,
        store: Store,
        *,
        platform: Platform | None = None,
        settings: EngineSettings | None = None,
        curve: LevelCurve | None = None,
    ) -> XPEngine:
        settings = settings or EngineSettings()
        bus = EventBus()
        configs = ConfigService(store, domain=settings.domain)
        ledger = XPLedger(store, bus, configs, curve=curve, domain=settings.domain)

        leaderboard = LeaderboardCache(
            store,
            domain=settings.domain,
            ttl_seconds=settings.leaderboard_ttl_seconds,
            max_entries=settings.leaderboard_cache_size,
        )
        leaderboard.attach(bus)

        rewards = None
        if platform is not None:
            rewards = RoleRewardReconciler(platform, configs)
            rewards.attach(bus)

        logger.info(
            "XP engine ready (domain=%s, store=%s, role rewards %s)",
            settings.domain, type(store).__name__, "on" if rewards else "off",
        )
        return cls(
            store=store,
            bus=bus,
            configs=configs,
            xp=ledger,
            leaderboard=leaderboard,
            rewards=rewards,
            settings=settings,
        )

    async def settled(self) -> None:
        """Wait for scheduled role reconciliations."""
        if self.rewards is not None:
            await self.rewards.settled()
