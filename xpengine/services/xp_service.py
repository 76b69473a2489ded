"""
xpengine.services.xp_service — The XP Ledger
=============================================

Authoritative mutation path for user XP.  Every mutation follows the same
pipeline, under a per-user lock:

1. Validate arguments (``InvalidArgument`` before any Store access)
2. Load (or create) the UserRecord
3. Compute the new xp and level from the guild's curve
4. Persist the record
5. Emit ``levelUp`` / ``levelDown`` when the level changed, then ``xpChange``

A Store failure at step 2 or 4 propagates unchanged and nothing is emitted.
No retries are attempted here; that is the caller's decision.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from xpengine.constants import DEFAULT_STORE_ID, NAMESPACE_DOMAIN, check_id, user_namespace
from xpengine.engine.curve import LevelCurve
from xpengine.engine.events import EventBus, EventType, XPEvent
from xpengine.engine.locks import KeyedLock
from xpengine.engine.multiplier import resolve_multiplier
from xpengine.errors import InvalidArgument
from xpengine.services.config_service import ConfigService, GuildConfig

if TYPE_CHECKING:
    from collections.abc import Iterable

    from xpengine.database.store import Store

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Records & results
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class UserRecord:
    """Persisted progression state of one user in one guild and store."""

    xp: float = 0
    level: int = 0
    messages: int = 0
    xp_messages: int = 0
    last_awarded_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserRecord:
        return cls(
            xp=data.get("xp", 0),
            level=data.get("level", 0),
            messages=data.get("messages", 0),
            xp_messages=data.get("xp_messages", 0),
            last_awarded_at=data.get("last_awarded_at"),
        )


@dataclass(frozen=True, slots=True)
class XPChangeResult:
    old_xp: float
    new_xp: float
    old_level: int
    new_level: int
    leveled_up: bool
    leveled_down: bool
    delta: float


@dataclass(frozen=True, slots=True)
class RecalcResult:
    old_level: int
    new_level: int
    total_xp: float
    reconciled: bool


def check_amount(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise InvalidArgument(f"{name} must be a finite number", {name: value})
    if value < 0:
        raise InvalidArgument(f"{name} must be non-negative", {name: value})
    return value


def _as_utc(moment: datetime) -> datetime:
    # naive datetimes are taken to be UTC
    return moment.replace(tzinfo=UTC) if moment.tzinfo is None else moment


def is_on_cooldown(record: UserRecord | None, config: GuildConfig, now: datetime | None = None) -> bool:
    """True while the guild cooldown since the last award has not elapsed.

    Gating is the caller's job; :meth:`XPLedger.award` does not check this.
    """
    if record is None or record.last_awarded_at is None or config.cooldown_seconds <= 0:
        return False
    now = _as_utc(now or datetime.now(UTC))
    last = _as_utc(datetime.fromisoformat(record.last_awarded_at))
    return now - last < timedelta(seconds=config.cooldown_seconds)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------
class XPLedger:
    """Persist-then-emit XP mutations.

    Parameters
    ----------
    store:
        Where UserRecords live.
    bus:
        Receives committed-change events.
    configs:
        Source of per-guild curves and multipliers.
    curve:
        Optional override; when given, every guild uses it instead of its
        configured preset.
    """

    def __init__(
        self,
        store: Store,
        bus: EventBus,
        configs: ConfigService,
        *,
        curve: LevelCurve | None = None,
        domain: str = NAMESPACE_DOMAIN,
    ) -> None:
        self._store = store
        self._bus = bus
        self._configs = configs
        self._curve = curve
        self._domain = domain
        self._locks = KeyedLock()

    @property
    def bus(self) -> EventBus:
        return self._bus

    async def curve_for(self, guild_id: str, store_id: str = DEFAULT_STORE_ID) -> LevelCurve:
        if self._curve is not None:
            return self._curve
        return await self._configs.get_curve(guild_id, store_id=store_id)

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    @staticmethod
    def _ids(guild_id: Any, user_id: Any, store_id: Any) -> tuple[str, str, str]:
        return (
            check_id("guild_id", guild_id),
            check_id("user_id", user_id),
            check_id("store_id", store_id),
        )

    async def _load(self, guild_id: str, user_id: str, store_id: str) -> UserRecord | None:
        raw = await self._store.get(user_id, user_namespace(store_id, guild_id, self._domain))
        return None if raw is None else UserRecord.from_dict(raw)

    async def _save(self, guild_id: str, user_id: str, store_id: str, record: UserRecord) -> None:
        await self._store.set(user_id, record.to_dict(), user_namespace(store_id, guild_id, self._domain))

    def _emit(
        self,
        guild_id: str,
        user_id: str,
        store_id: str,
        old_xp: float,
        new_xp: float,
        old_level: int,
        new_level: int,
        reason: str | None,
        *,
        xp_event: bool = True,
    ) -> None:
        fields = dict(
            guild_id=guild_id,
            user_id=user_id,
            store_id=store_id,
            old_xp=old_xp,
            new_xp=new_xp,
            old_level=old_level,
            new_level=new_level,
            delta=new_xp - old_xp,
            reason=reason,
        )
        if new_level != old_level:
            level_type = EventType.LEVEL_UP if new_level > old_level else EventType.LEVEL_DOWN
            logger.info(
                "%s: user %s in guild %s (store=%s) %d → %d",
                level_type, user_id, guild_id, store_id, old_level, new_level,
            )
            self._bus.emit(level_type, XPEvent(type=level_type, **fields))
        if xp_event:
            self._bus.emit(EventType.XP_CHANGE, XPEvent(type=EventType.XP_CHANGE, **fields))

    async def _mutate(
        self,
        guild_id: str,
        user_id: str,
        store_id: str,
        compute,
        reason: str | None,
        *,
        touch=None,
    ) -> XPChangeResult:
        """Shared read-modify-write-emit body.

        *compute* maps the old xp to the new xp.  *touch* may update the
        record's counters before it is written.
        """
        async with self._locks.hold((store_id, guild_id, user_id)):
            record = await self._load(guild_id, user_id, store_id) or UserRecord()
            curve = await self.curve_for(guild_id, store_id)

            old_xp, old_level = record.xp, record.level
            new_xp = max(0, compute(old_xp))
            new_level = curve.level_from_xp(new_xp)

            record.xp, record.level = new_xp, new_level
            if touch is not None:
                touch(record)
            await self._save(guild_id, user_id, store_id, record)

            logger.debug(
                "XP %s → %s for user %s in guild %s (store=%s, reason=%s)",
                old_xp, new_xp, user_id, guild_id, store_id, reason,
            )
            self._emit(guild_id, user_id, store_id, old_xp, new_xp, old_level, new_level, reason)

        return XPChangeResult(
            old_xp=old_xp,
            new_xp=new_xp,
            old_level=old_level,
            new_level=new_level,
            leveled_up=new_level > old_level,
            leveled_down=new_level < old_level,
            delta=new_xp - old_xp,
        )

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------
    async def add(
        self,
        guild_id: str,
        user_id: str,
        amount: float,
        *,
        reason: str | None = None,
        store_id: str = DEFAULT_STORE_ID,
    ) -> XPChangeResult:
        """Add *amount* XP, creating the record if needed."""
        guild_id, user_id, store_id = self._ids(guild_id, user_id, store_id)
        amount = check_amount("amount", amount)
        return await self._mutate(guild_id, user_id, store_id, lambda xp: xp + amount, reason)

    async def remove(
        self,
        guild_id: str,
        user_id: str,
        amount: float,
        *,
        reason: str | None = None,
        store_id: str = DEFAULT_STORE_ID,
    ) -> XPChangeResult:
        """Remove up to *amount* XP; xp never drops below 0.

        ``delta`` is minus the amount actually removed.
        """
        guild_id, user_id, store_id = self._ids(guild_id, user_id, store_id)
        amount = check_amount("amount", amount)
        return await self._mutate(guild_id, user_id, store_id, lambda xp: xp - amount, reason)

    async def set(
        self,
        guild_id: str,
        user_id: str,
        total_xp: float,
        *,
        reason: str | None = None,
        store_id: str = DEFAULT_STORE_ID,
    ) -> XPChangeResult:
        """Set absolute XP."""
        guild_id, user_id, store_id = self._ids(guild_id, user_id, store_id)
        total_xp = check_amount("total_xp", total_xp)
        return await self._mutate(guild_id, user_id, store_id, lambda _xp: total_xp, reason)

    async def award(
        self,
        guild_id: str,
        user_id: str,
        base_amount: float,
        *,
        role_ids: Iterable[str] = (),
        reason: str | None = "message",
        store_id: str = DEFAULT_STORE_ID,
        now: datetime | None = None,
    ) -> XPChangeResult:
        """Award activity XP scaled by the guild's rate and multipliers.

        The scaled amount is floored to a whole number.  Message counters are
        bumped and ``last_awarded_at`` is stamped in the same write.
        """
        guild_id, user_id, store_id = self._ids(guild_id, user_id, store_id)
        base_amount = check_amount("base_amount", base_amount)
        config = await self._configs.get_config(guild_id, store_id=store_id)
        multiplier = resolve_multiplier(config, [str(r) for r in role_ids], user_id)
        amount = math.floor(base_amount * config.xp_rate * multiplier)
        stamp = (now or datetime.now(UTC)).isoformat()

        def touch(record: UserRecord) -> None:
            record.messages += 1
            record.xp_messages += 1
            record.last_awarded_at = stamp

        return await self._mutate(
            guild_id, user_id, store_id, lambda xp: xp + amount, reason, touch=touch
        )

    async def recalc(
        self,
        guild_id: str,
        user_id: str,
        *,
        store_id: str = DEFAULT_STORE_ID,
    ) -> RecalcResult:
        """Recompute the stored level from stored xp.

        ``reconciled`` is True only when the stored level was wrong and has
        been corrected; only then is a level event emitted.
        Unknown users are left alone (``reconciled=False``).
        """
        guild_id, user_id, store_id = self._ids(guild_id, user_id, store_id)
        async with self._locks.hold((store_id, guild_id, user_id)):
            record = await self._load(guild_id, user_id, store_id)
            if record is None:
                return RecalcResult(old_level=0, new_level=0, total_xp=0, reconciled=False)

            curve = await self.curve_for(guild_id, store_id)
            old_level = record.level
            new_level = curve.level_from_xp(record.xp)
            if new_level != old_level:
                record.level = new_level
                await self._save(guild_id, user_id, store_id, record)
                self._emit(
                    guild_id, user_id, store_id, record.xp, record.xp,
                    old_level, new_level, "recalc", xp_event=False,
                )
            return RecalcResult(
                old_level=old_level,
                new_level=new_level,
                total_xp=record.xp,
                reconciled=new_level != old_level,
            )

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    async def get(self, guild_id: str, user_id: str, *, store_id: str = DEFAULT_STORE_ID) -> float:
        record = await self.get_user(guild_id, user_id, store_id=store_id)
        return 0 if record is None else record.xp

    async def get_level(self, guild_id: str, user_id: str, *, store_id: str = DEFAULT_STORE_ID) -> int:
        record = await self.get_user(guild_id, user_id, store_id=store_id)
        return 0 if record is None else record.level

    async def get_user(
        self, guild_id: str, user_id: str, *, store_id: str = DEFAULT_STORE_ID
    ) -> UserRecord | None:
        guild_id, user_id, store_id = self._ids(guild_id, user_id, store_id)
        return await self._load(guild_id, user_id, store_id)
