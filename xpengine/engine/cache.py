"""
xpengine.engine.cache — TTL Leaderboard Cache
==============================================

Caches the top of each ``(store_id, guild_id)`` leaderboard as an immutable
:class:`LeaderboardSnapshot`.  Reads never take a lock: a rebuild builds a new
snapshot and swaps it in with a single dict assignment.

Ordering is total and deterministic: xp descending, then user id ascending.

Rebuild rules:

- Missing or expired snapshot → scan every UserRecord for the key, sort, keep
  the top ``max_entries``.
- Concurrent rebuilds of one key share a single in-flight task.
- An invalidation bumps the key's generation; a rebuild that started before
  it finishes normally for its own awaiters but does not install its result.
- A failed rebuild raises to the caller and leaves the previous snapshot in
  place.

Requests the snapshot cannot answer (pages reaching past the cached top, or
ranks of users outside it) fall back to a full Store scan sorted with the same
ordering.  ``LeaderboardPage.cached`` tells the caller which path was used.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from xpengine.constants import (
    DEFAULT_STORE_ID,
    LEADERBOARD_CACHE_SIZE,
    LEADERBOARD_TTL_SECONDS,
    NAMESPACE_DOMAIN,
    check_id,
    user_namespace,
)
from xpengine.engine.events import EventType, XPEvent
from xpengine.errors import InvalidArgument

if TYPE_CHECKING:
    from xpengine.database.store import Store
    from xpengine.engine.events import EventBus

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    rank: int
    user_id: str
    xp: float
    level: int


@dataclass(frozen=True, slots=True)
class LeaderboardPage:
    entries: list[LeaderboardEntry]
    total: int
    cached: bool


@dataclass(frozen=True, slots=True)
class RankInfo:
    rank: int
    level: int
    xp: float
    total: int


@dataclass(frozen=True, slots=True)
class LeaderboardSnapshot:
    """Top-N ordering of one key at ``built_at`` (clock seconds)."""

    entries: tuple[LeaderboardEntry, ...]
    rank_index: Mapping[str, int]
    total: int
    built_at: float

    @property
    def complete(self) -> bool:
        """True when every user of the key is in ``entries``."""
        return len(self.entries) == self.total


def _cache_key(guild_id: Any, store_id: Any) -> CacheKey:
    return check_id("store_id", store_id), check_id("guild_id", guild_id)


def rank_records(records: Mapping[str, Any]) -> list[LeaderboardEntry]:
    """Sort raw UserRecord dicts into ranked entries."""
    ordered = sorted(
        records.items(),
        key=lambda item: (-(item[1].get("xp") or 0), item[0]),
    )
    return [
        LeaderboardEntry(
            rank=i,
            user_id=user_id,
            xp=record.get("xp") or 0,
            level=record.get("level") or 0,
        )
        for i, (user_id, record) in enumerate(ordered, start=1)
    ]


class LeaderboardCache:
    """Per-guild TTL cache of the leaderboard top.

    Usage::

        cache = LeaderboardCache(store, domain="xp")
        cache.attach(bus)                       # auto-invalidate on XP events
        page = await cache.get(guild_id, offset=0, limit=10)
        info = await cache.get_rank(guild_id, user_id)
    """

    def __init__(
        self,
        store: Store,
        *,
        domain: str = NAMESPACE_DOMAIN,
        ttl_seconds: float = LEADERBOARD_TTL_SECONDS,
        max_entries: int = LEADERBOARD_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._domain = domain
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock

        self._snapshots: dict[CacheKey, LeaderboardSnapshot] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}
        self._generations: dict[CacheKey, int] = {}
        self.rebuilds = 0

    # -------------------------------------------------------------------
    # Snapshot management
    # -------------------------------------------------------------------
    def snapshot(self, guild_id: str, store_id: str = DEFAULT_STORE_ID) -> LeaderboardSnapshot | None:
        """Installed snapshot for the key, fresh or not."""
        return self._snapshots.get(_cache_key(guild_id, store_id))

    def _is_fresh(self, snap: LeaderboardSnapshot) -> bool:
        return self._clock() - snap.built_at < self._ttl

    async def _scan(self, key: CacheKey) -> list[LeaderboardEntry]:
        store_id, guild_id = key
        records = await self._store.entries(user_namespace(store_id, guild_id, self._domain))
        return rank_records(records)

    async def _build(self, key: CacheKey, generation: int) -> LeaderboardSnapshot:
        ranked = await self._scan(key)
        top = tuple(ranked[: self._max_entries])
        snap = LeaderboardSnapshot(
            entries=top,
            rank_index=MappingProxyType({e.user_id: e.rank for e in top}),
            total=len(ranked),
            built_at=self._clock(),
        )
        self.rebuilds += 1
        if self._generations.get(key, 0) == generation:
            self._snapshots[key] = snap
            logger.debug(
                "Leaderboard rebuilt for guild %s (store=%s): %d users, %d cached",
                key[1], key[0], snap.total, len(top),
            )
        else:
            logger.debug("Discarded stale leaderboard rebuild for %s", key)
        return snap

    async def _current(self, key: CacheKey) -> LeaderboardSnapshot:
        snap = self._snapshots.get(key)
        if snap is not None and self._is_fresh(snap):
            return snap

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._build(key, self._generations.get(key, 0)))
            self._inflight[key] = task

            def _done(t: asyncio.Task, key: CacheKey = key) -> None:
                if self._inflight.get(key) is t:
                    del self._inflight[key]
                if not t.cancelled() and t.exception() is not None:
                    logger.warning("Leaderboard rebuild failed for %s: %s", key, t.exception())

            task.add_done_callback(_done)
        return await asyncio.shield(task)

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    async def get(
        self,
        guild_id: str,
        offset: int = 0,
        limit: int = 10,
        *,
        store_id: str = DEFAULT_STORE_ID,
    ) -> LeaderboardPage:
        """Return ranks ``offset+1 .. offset+limit``."""
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise InvalidArgument("offset must be a non-negative integer", {"offset": offset})
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidArgument("limit must be a positive integer", {"limit": limit})

        key = _cache_key(guild_id, store_id)
        snap = await self._current(key)
        if snap.complete or offset + limit <= len(snap.entries):
            return LeaderboardPage(
                entries=list(snap.entries[offset:offset + limit]),
                total=snap.total,
                cached=True,
            )

        ranked = await self._scan(key)
        logger.debug("Leaderboard page %d+%d for %s served by full scan", offset, limit, key)
        return LeaderboardPage(
            entries=ranked[offset:offset + limit],
            total=len(ranked),
            cached=False,
        )

    async def get_rank(
        self,
        guild_id: str,
        user_id: str,
        *,
        store_id: str = DEFAULT_STORE_ID,
    ) -> RankInfo | None:
        """Rank of *user_id*, or ``None`` when the user has no record."""
        key = _cache_key(guild_id, store_id)
        user_id = check_id("user_id", user_id)
        snap = await self._current(key)
        rank = snap.rank_index.get(user_id)
        if rank is not None:
            entry = snap.entries[rank - 1]
            return RankInfo(rank=rank, level=entry.level, xp=entry.xp, total=snap.total)
        if snap.complete:
            return None

        ranked = await self._scan(key)
        for entry in ranked:
            if entry.user_id == user_id:
                return RankInfo(rank=entry.rank, level=entry.level, xp=entry.xp, total=len(ranked))
        return None

    # -------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------
    def invalidate_cache(
        self,
        guild_id: str,
        *,
        store_id: str = DEFAULT_STORE_ID,
        all_stores: bool = False,
    ) -> None:
        """Drop the snapshot for one key, or for the guild in every store."""
        guild_id = check_id("guild_id", guild_id)
        if all_stores:
            keys = {k for k in self._snapshots.keys() | self._inflight.keys() if k[1] == guild_id}
        else:
            keys = {_cache_key(guild_id, store_id)}
        for key in keys:
            self._generations[key] = self._generations.get(key, 0) + 1
            self._snapshots.pop(key, None)
            self._inflight.pop(key, None)

    def clear(self) -> None:
        for key in self._snapshots.keys() | self._inflight.keys():
            self._generations[key] = self._generations.get(key, 0) + 1
        self._snapshots.clear()
        self._inflight.clear()

    def _on_event(self, event: XPEvent) -> None:
        self.invalidate_cache(event.guild_id, store_id=event.store_id)

    def attach(self, bus: EventBus) -> None:
        """Invalidate automatically on every XP event published on *bus*."""
        for event_type in EventType:
            bus.on(event_type, self._on_event)

    def detach(self, bus: EventBus) -> None:
        for event_type in EventType:
            bus.off(event_type, self._on_event)
