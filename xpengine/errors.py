"""
xpengine.errors — Domain Exception Hierarchy
=============================================

Every error the engine raises derives from :class:`XPEngineError`.

- :class:`InvalidArgument` — rejected input; raised before any Store access.
- :class:`PersistenceError` — the Store could not read or write.  The ledger
  and leaderboard propagate it unchanged; no event is ever emitted for a
  failed write.
- :class:`PlatformError` — a role grant/revoke/read failed.  The reconciler
  logs and swallows it so an XP mutation is never rolled back by a platform
  outage.
"""

from __future__ import annotations

from typing import Any


class XPEngineError(Exception):
    """Base exception for all engine errors.

    Args:
        message: Human-readable error message
        details: Additional structured context for logging
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} {self.details}"
        return self.message


class InvalidArgument(XPEngineError, ValueError):
    """Negative/non-finite amounts, malformed ids, negative level queries."""


class PersistenceError(XPEngineError):
    """Store unavailable, or a read/write failed."""


class PlatformError(XPEngineError):
    """Role grant/revoke/read failed on the chat platform."""
