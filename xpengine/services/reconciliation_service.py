"""
xpengine.services.reconciliation_service — Role Reward Reconciliation
======================================================================

Keeps a member's reward roles in line with their level.

How it works:
    1. Read the member's current roles from the platform.
    2. Ask the guild's rewards strategy (stack or replace) for the roles to
       grant and the roles to revoke.
    3. Issue platform calls for that delta only, so a second run with the
       same inputs makes no calls at all.

Platform failures are logged and recorded in the result, never raised: an XP
mutation is never undone because a role call failed.  The next level change
(or a manual :meth:`RoleRewardReconciler.reconcile_member`) is the retry point.

Only the ``"default"`` store drives automatic reconciliation; events from
other stores are ignored by :meth:`RoleRewardReconciler.attach`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from xpengine.constants import DEFAULT_STORE_ID
from xpengine.engine.events import EventType, XPEvent
from xpengine.engine.locks import KeyedLock
from xpengine.errors import PlatformError
from xpengine.services.config_service import GuildConfig, RewardsMode, RoleReward

if TYPE_CHECKING:
    from xpengine.engine.events import EventBus
    from xpengine.services.config_service import ConfigService
    from xpengine.services.platform import Platform

logger = logging.getLogger(__name__)

GRANT_REASON = "XP level reward"
REVOKE_REASON = "XP level reward (reconciliation)"


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RolePlan:
    grant: frozenset[str] = frozenset()
    revoke: frozenset[str] = frozenset()


def normalize_rewards(rewards: Iterable[RoleReward]) -> list[RoleReward]:
    """One reward per role (highest level wins), ascending by level."""
    best: dict[str, RoleReward] = {}
    for reward in rewards:
        current = best.get(reward.role_id)
        if current is None or reward.level > current.level:
            best[reward.role_id] = reward
    return sorted(best.values(), key=lambda r: (r.level, r.role_id))


class RewardsStrategy:
    """Computes the role delta for one member."""

    mode: RewardsMode

    def plan(
        self,
        rewards: list[RoleReward],
        level: int,
        held: set[str],
        remove_on_loss: bool,
    ) -> RolePlan:
        raise NotImplementedError


class StackStrategy(RewardsStrategy):
    """Every reward at or below the level is held."""

    mode = RewardsMode.STACK

    def plan(self, rewards, level, held, remove_on_loss):
        target = {r.role_id for r in rewards if r.level <= level}
        revoke: set[str] = set()
        if remove_on_loss:
            revoke = {r.role_id for r in rewards if r.role_id not in target} & held
        return RolePlan(grant=frozenset(target - held), revoke=frozenset(revoke))


class ReplaceStrategy(RewardsStrategy):
    """Only the highest qualifying reward is held.

    Without ``remove_on_loss`` a higher tier the member already holds is kept
    instead of being swapped for a lower one; lower tiers are still revoked.
    """

    mode = RewardsMode.REPLACE

    def plan(self, rewards, level, held, remove_on_loss):
        qualifying = [r for r in rewards if r.level <= level]
        top = qualifying[-1] if qualifying else None

        if remove_on_loss:
            keep = top
        else:
            candidates = [r for r in rewards if r.role_id in held]
            if top is not None:
                candidates.append(top)
            keep = max(candidates, key=lambda r: (r.level, r.role_id), default=None)

        grant = {keep.role_id} - held if keep is not None else set()
        revoke = {r.role_id for r in rewards if r.role_id in held and r is not keep}
        return RolePlan(grant=frozenset(grant), revoke=frozenset(revoke))


def strategy_for(mode: RewardsMode | str) -> RewardsStrategy:
    match RewardsMode(mode):
        case RewardsMode.STACK:
            return StackStrategy()
        case RewardsMode.REPLACE:
            return ReplaceStrategy()


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ReconcileResult:
    granted: list[str] = field(default_factory=list)
    revoked: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.granted or self.revoked)


class RoleRewardReconciler:
    """Applies reward roles on the platform.

    Usage::

        reconciler = RoleRewardReconciler(platform, configs)
        reconciler.attach(bus)
        ...
        await reconciler.settled()    # wait for scheduled reconciliations
    """

    def __init__(self, platform: Platform, configs: ConfigService) -> None:
        self._platform = platform
        self._configs = configs
        self._locks = KeyedLock()
        self._tasks: set[asyncio.Task] = set()

    async def reconcile(
        self,
        guild_id: str,
        user_id: str,
        level: int,
        config: GuildConfig,
    ) -> ReconcileResult:
        """Bring the member's reward roles in line with *level*."""
        result = ReconcileResult()
        rewards = normalize_rewards(config.role_rewards)
        if not rewards:
            result.skipped = "no role rewards configured"
            return result

        try:
            held = await self._platform.get_member_roles(guild_id, user_id)
        except PlatformError as exc:
            logger.warning(
                "Could not read roles of user %s in guild %s: %s", user_id, guild_id, exc
            )
            result.skipped = "role read failed"
            return result
        if held is None:
            logger.debug("User %s left guild %s; reconciliation skipped", user_id, guild_id)
            result.skipped = "member not found"
            return result

        plan = strategy_for(config.rewards_mode).plan(
            rewards, level, held, config.remove_rewards_on_loss
        )

        for role_id in sorted(plan.grant):
            try:
                await self._platform.grant_role(guild_id, user_id, role_id, GRANT_REASON)
                result.granted.append(role_id)
            except PlatformError as exc:
                logger.warning(
                    "Grant of role %s to user %s in guild %s failed: %s",
                    role_id, user_id, guild_id, exc,
                )
                result.failed.append(role_id)

        for role_id in sorted(plan.revoke):
            try:
                await self._platform.revoke_role(guild_id, user_id, role_id, REVOKE_REASON)
                result.revoked.append(role_id)
            except PlatformError as exc:
                logger.warning(
                    "Revoke of role %s from user %s in guild %s failed: %s",
                    role_id, user_id, guild_id, exc,
                )
                result.failed.append(role_id)

        if result.changed:
            logger.info(
                "Reconciled rewards for user %s in guild %s at level %d: +%s -%s",
                user_id, guild_id, level, result.granted, result.revoked,
            )
        return result

    async def reconcile_member(
        self,
        guild_id: str,
        user_id: str,
        level: int,
        *,
        store_id: str = DEFAULT_STORE_ID,
    ) -> ReconcileResult:
        """Load the guild config and reconcile, serialised per member."""
        async with self._locks.hold((guild_id, user_id)):
            config = await self._configs.get_config(guild_id, store_id=store_id)
            return await self.reconcile(guild_id, user_id, level, config)

    # -------------------------------------------------------------------
    # Automatic reconciliation
    # -------------------------------------------------------------------
    async def _reconcile_event(self, event: XPEvent) -> ReconcileResult:
        return await self.reconcile_member(
            event.guild_id, event.user_id, event.new_level, store_id=event.store_id
        )

    def _on_level_change(self, event: XPEvent) -> None:
        if event.store_id != DEFAULT_STORE_ID:
            return
        task = asyncio.ensure_future(self._reconcile_event(event))
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "Reward reconciliation failed for user %s in guild %s",
                    event.user_id, event.guild_id, exc_info=t.exception(),
                )

        task.add_done_callback(_done)

    def attach(self, bus: EventBus) -> None:
        bus.on(EventType.LEVEL_UP, self._on_level_change)
        bus.on(EventType.LEVEL_DOWN, self._on_level_change)

    def detach(self, bus: EventBus) -> None:
        bus.off(EventType.LEVEL_UP, self._on_level_change)
        bus.off(EventType.LEVEL_DOWN, self._on_level_change)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def settled(self) -> None:
        """Wait until every scheduled reconciliation has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
