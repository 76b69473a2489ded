"""
xpengine.database.store — Namespaced Key-Value Store
=====================================================

The engine's only persistence contract::

    await store.get(key, namespace)          → value | None
    await store.set(key, value, namespace)
    await store.delete(key, namespace)
    await store.entries(namespace)           → {key: value}

``entries`` lists one namespace; the leaderboard uses it to read every user
record of a guild.  Values are JSON-serialisable; callers always receive
fresh copies.

Two implementations:

- :class:`MemoryStore` — in-process dict, for tests and single-process use.
- :class:`SqlStore` — SQLAlchemy ``kv_entries`` table, each call bridged to a
  worker thread through :func:`~xpengine.database.engine.run_db`.

Both raise :class:`~xpengine.errors.PersistenceError` when the backend fails.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from xpengine.database.engine import get_session, run_db
from xpengine.database.models import KVEntry
from xpengine.errors import PersistenceError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = "/"


@runtime_checkable
class Store(Protocol):
    """Namespaced key-value persistence."""

    async def get(self, key: str, namespace: Sequence[str]) -> Any | None: ...

    async def set(self, key: str, value: Any, namespace: Sequence[str]) -> None: ...

    async def delete(self, key: str, namespace: Sequence[str]) -> None: ...

    async def entries(self, namespace: Sequence[str]) -> dict[str, Any]: ...


def namespace_path(namespace: Sequence[str]) -> str:
    """Join namespace segments; segments must not contain the separator."""
    for segment in namespace:
        if not segment or NAMESPACE_SEPARATOR in segment:
            raise ValueError(f"Invalid namespace segment: {segment!r}")
    return NAMESPACE_SEPARATOR.join(namespace)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------
class MemoryStore:
    """Dict-backed store.

    Values are stored as JSON text, so mutating a returned value never
    changes stored state.  Every call yields to the event loop once, which
    keeps interleavings between concurrent callers realistic.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, str]] = {}

    async def get(self, key: str, namespace: Sequence[str]) -> Any | None:
        path = namespace_path(namespace)
        await asyncio.sleep(0)
        raw = self._data.get(path, {}).get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, namespace: Sequence[str]) -> None:
        path = namespace_path(namespace)
        raw = json.dumps(value)
        await asyncio.sleep(0)
        self._data.setdefault(path, {})[key] = raw

    async def delete(self, key: str, namespace: Sequence[str]) -> None:
        path = namespace_path(namespace)
        await asyncio.sleep(0)
        bucket = self._data.get(path)
        if bucket is not None:
            bucket.pop(key, None)
            if not bucket:
                del self._data[path]

    async def entries(self, namespace: Sequence[str]) -> dict[str, Any]:
        path = namespace_path(namespace)
        await asyncio.sleep(0)
        return {k: json.loads(v) for k, v in self._data.get(path, {}).items()}

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._data.values())


# ---------------------------------------------------------------------------
# SQLAlchemy store
# ---------------------------------------------------------------------------
class SqlStore:
    """``kv_entries``-backed store.

    SQLite permits a single writer, so calls against a SQLite engine are
    serialised with a thread lock; server databases run calls in parallel.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock() if engine.dialect.name == "sqlite" else None

    def _guard(self):
        return self._lock if self._lock is not None else contextlib.nullcontext()

    # -------------------------------------------------------------------
    # Synchronous bodies (run on a worker thread)
    # -------------------------------------------------------------------
    def _get_sync(self, path: str, key: str) -> str | None:
        with self._guard(), Session(self._engine) as session:
            row = session.get(KVEntry, (path, key))
            return None if row is None else row.value_json

    def _set_sync(self, path: str, key: str, raw: str) -> None:
        with self._guard(), get_session(self._engine) as session:
            row = session.get(KVEntry, (path, key))
            if row is None:
                session.add(KVEntry(namespace=path, key=key, value_json=raw))
            else:
                row.value_json = raw

    def _delete_sync(self, path: str, key: str) -> None:
        with self._guard(), get_session(self._engine) as session:
            session.execute(
                delete(KVEntry).where(KVEntry.namespace == path, KVEntry.key == key)
            )

    def _entries_sync(self, path: str) -> list[tuple[str, str]]:
        with self._guard(), Session(self._engine) as session:
            rows = session.execute(
                select(KVEntry.key, KVEntry.value_json).where(KVEntry.namespace == path)
            ).all()
            return [(row.key, row.value_json) for row in rows]

    async def _call(self, op: str, func, *args):
        try:
            return await run_db(func, *args)
        except SQLAlchemyError as exc:
            logger.exception("Store %s failed for %s", op, args[0])
            raise PersistenceError(f"Store {op} failed", {"namespace": args[0]}) from exc

    # -------------------------------------------------------------------
    # Store protocol
    # -------------------------------------------------------------------
    async def get(self, key: str, namespace: Sequence[str]) -> Any | None:
        raw = await self._call("get", self._get_sync, namespace_path(namespace), key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, namespace: Sequence[str]) -> None:
        raw = json.dumps(value)
        await self._call("set", self._set_sync, namespace_path(namespace), key, raw)

    async def delete(self, key: str, namespace: Sequence[str]) -> None:
        await self._call("delete", self._delete_sync, namespace_path(namespace), key)

    async def entries(self, namespace: Sequence[str]) -> dict[str, Any]:
        rows = await self._call("entries", self._entries_sync, namespace_path(namespace))
        return {key: json.loads(raw) for key, raw in rows}
