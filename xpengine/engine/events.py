"""
xpengine.engine.events — XPEvent envelope and EventBus
=======================================================

Every persisted XP mutation is announced as an :class:`XPEvent` on an
:class:`EventBus`.  Events are emitted only after the Store write has
succeeded, so observers never see state that was not committed.

Dispatch is synchronous and ordered by registration.  A handler that raises
is logged and skipped; later handlers still run.  A handler that returns an
awaitable (an ``async def`` handler) has it scheduled as a task; ``emit``
returns once every handler has been *invoked*, not once that work settles.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from xpengine.errors import InvalidArgument

logger = logging.getLogger(__name__)

__all__ = ["EventBus", "EventType", "Handler", "XPEvent"]


class EventType(enum.StrEnum):
    """Event names published by the ledger."""
    XP_CHANGE = "xpChange"
    LEVEL_UP = "levelUp"
    LEVEL_DOWN = "levelDown"


# ---------------------------------------------------------------------------
# XPEvent: the event envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class XPEvent:
    """Immutable record of one committed change.

    ``store_id`` is always set so observers can filter parallel progression
    systems (only ``"default"`` drives role rewards).
    """

    type: EventType
    guild_id: str
    user_id: str
    store_id: str
    old_xp: float
    new_xp: float
    old_level: int
    new_level: int
    delta: float
    reason: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Payload in the shape exposed to subscribers outside Python."""
        return {
            "type": self.type.value,
            "guildId": self.guild_id,
            "userId": self.user_id,
            "storeId": self.store_id,
            "oldXp": self.old_xp,
            "newXp": self.new_xp,
            "oldLevel": self.old_level,
            "newLevel": self.new_level,
            "delta": self.delta,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


Handler = Callable[[XPEvent], Any]


@dataclass(slots=True)
class _Subscription:
    handler: Handler
    once: bool = False


class EventBus:
    """Synchronous, ordered publish/subscribe for XP events.

    One bus per engine instance; there is no module-level singleton.
    """

    def __init__(self) -> None:
        self._subs: dict[EventType, list[_Subscription]] = {t: [] for t in EventType}
        self._tasks: set[asyncio.Task] = set()

    @staticmethod
    def _event_type(name: EventType | str) -> EventType:
        try:
            return EventType(name)
        except ValueError:
            raise InvalidArgument(f"Unknown event name: {name!r}") from None

    # -------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------
    def on(self, name: EventType | str, handler: Handler) -> None:
        """Invoke *handler* on every emission of *name*."""
        self._subs[self._event_type(name)].append(_Subscription(handler))

    def once(self, name: EventType | str, handler: Handler) -> None:
        """Invoke *handler* on the next emission of *name* only."""
        self._subs[self._event_type(name)].append(_Subscription(handler, once=True))

    def off(self, name: EventType | str, handler: Handler) -> None:
        """Remove the first registration of *handler* (no-op if absent)."""
        subs = self._subs[self._event_type(name)]
        for i, sub in enumerate(subs):
            if sub.handler == handler:
                del subs[i]
                return

    def listener_count(self, name: EventType | str) -> int:
        return len(self._subs[self._event_type(name)])

    # -------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------
    def emit(self, name: EventType | str, event: XPEvent) -> None:
        """Invoke every handler for *name* in registration order."""
        event_type = self._event_type(name)
        subs = self._subs[event_type]
        snapshot = list(subs)
        # once-handlers are removed before dispatch so a re-entrant emit
        # from inside a handler cannot fire them twice.
        subs[:] = [s for s in subs if not s.once]

        for sub in snapshot:
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    self._schedule(result, event_type)
            except Exception:
                logger.exception(
                    "Event handler %r failed for %s (guild=%s user=%s store=%s)",
                    sub.handler, event_type, event.guild_id, event.user_id, event.store_id,
                )

    def _schedule(self, awaitable: Any, event_type: EventType) -> None:
        # Raises RuntimeError when no loop is running; the coroutine is closed
        # so it does not warn about never being awaited.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    "Async event handler for %s failed", event_type, exc_info=exc,
                )

        task.add_done_callback(_done)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)
