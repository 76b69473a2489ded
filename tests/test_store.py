"""
tests/test_store.py — Store Backends
=====================================

The SQL store runs against in-memory SQLite (see ``db_engine`` in conftest).
"""

from __future__ import annotations

import pytest
from conftest import run_async

from xpengine.database.engine import create_db_engine, get_session, init_db
from xpengine.database.models import Base, KVEntry
from xpengine.database.store import MemoryStore, SqlStore, Store, namespace_path
from xpengine.errors import PersistenceError

NS = ["xp", "default", "g1", "users"]


class TestNamespacePath:
    def test_joins_segments(self):
        assert namespace_path(NS) == "xp/default/g1/users"

    @pytest.mark.parametrize("namespace", [["xp", ""], ["xp", "a/b"]])
    def test_rejects_bad_segments(self, namespace):
        """Empty segments and segments with '/' are refused."""
        with pytest.raises(ValueError):
            namespace_path(namespace)


class TestSqlStore:
    def test_protocol(self, sql_store):
        assert isinstance(sql_store, Store)

    def test_set_get_overwrite(self, sql_store):
        """set overwrites the previous value."""
        async def _inner():
            assert await sql_store.get("u1", NS) is None
            await sql_store.set("u1", {"xp": 10}, NS)
            await sql_store.set("u1", {"xp": 20}, NS)
            return await sql_store.get("u1", NS)

        assert run_async(_inner()) == {"xp": 20}

    def test_entries_are_scoped_to_namespace(self, sql_store):
        """entries only sees its own namespace."""
        async def _inner():
            await sql_store.set("u1", {"xp": 1}, NS)
            await sql_store.set("u2", {"xp": 2}, NS)
            await sql_store.set("u3", {"xp": 3}, ["xp", "default", "g2", "users"])
            return await sql_store.entries(NS)

        assert run_async(_inner()) == {"u1": {"xp": 1}, "u2": {"xp": 2}}

    def test_delete(self, sql_store):
        """Deleting twice or deleting a missing key is fine."""
        async def _inner():
            await sql_store.set("u1", {"xp": 1}, NS)
            await sql_store.delete("u1", NS)
            await sql_store.delete("missing", NS)
            return await sql_store.get("u1", NS)

        assert run_async(_inner()) is None

    def test_backend_failure_becomes_persistence_error(self, sql_store, db_engine):
        """SQLAlchemy errors surface as PersistenceError."""
        Base.metadata.drop_all(db_engine)
        with pytest.raises(PersistenceError):
            run_async(sql_store.get("u1", NS))


class TestMemoryStore:
    def test_returned_values_are_copies(self):
        """Callers cannot mutate stored values through a read."""
        store = MemoryStore()

        async def _inner():
            await store.set("u1", {"xp": 1}, NS)
            value = await store.get("u1", NS)
            value["xp"] = 999
            return await store.get("u1", NS)

        assert run_async(_inner()) == {"xp": 1}

    def test_delete_drops_empty_namespace(self):
        store = MemoryStore()

        async def _inner():
            await store.set("u1", {"xp": 1}, NS)
            await store.delete("u1", NS)

        run_async(_inner())
        assert len(store) == 0


class TestDatabaseEngine:
    def test_requires_a_url(self, monkeypatch):
        """No URL and no DATABASE_URL is an error."""
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setattr("xpengine.database.engine.load_dotenv", lambda: False)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            create_db_engine()

    def test_sqlite_file_round_trip(self, tmp_path):
        """A file-backed SQLite store persists values."""
        engine = create_db_engine(f"sqlite:///{tmp_path / 'xp.db'}")
        init_db(engine)
        store = SqlStore(engine)

        async def _inner():
            await store.set("config", {"xp_rate": 2}, ["xp", "default", "g1"])
            return await store.get("config", ["xp", "default", "g1"])

        assert run_async(_inner()) == {"xp_rate": 2}
        engine.dispose()

    def test_session_rolls_back_on_error(self, db_engine):
        """The session scope rolls back when the block raises."""
        with pytest.raises(RuntimeError):
            with get_session(db_engine) as session:
                session.add(KVEntry(namespace="xp", key="k", value_json="1"))
                raise RuntimeError("abort")
        assert run_async(SqlStore(db_engine).get("k", ["xp"])) is None
