"""
xpengine — XP Ledger, Leaderboard Cache & Role Rewards for Discord
====================================================================
Persists per-user XP behind a namespaced key-value Store, maps XP to levels
through configurable curves, serves cached leaderboards, and keeps reward
roles in sync with levels.  Observers only ever see committed state.

Package layout::

    xpengine/
    ├── config.py          # YAML → typed infrastructure settings
    ├── constants.py       # Namespaces, curve coefficients, defaults
    ├── errors.py          # Domain exception hierarchy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # kv_entries table
    │   └── store.py       # Store protocol, MemoryStore, SqlStore
    ├── engine/
    │   ├── curve.py       # Level curves + leveling math
    │   ├── multiplier.py  # Server/role/user XP multipliers
    │   ├── events.py      # XPEvent + EventBus
    │   ├── locks.py       # Per-key asyncio locks
    │   └── cache.py       # TTL leaderboard snapshots
    ├── services/
    │   ├── config_service.py          # Guild config CRUD + validation
    │   ├── xp_service.py              # XPLedger (persist, then emit)
    │   ├── platform.py                # Platform protocol + discord.py adapter
    │   ├── reconciliation_service.py  # Role reward reconciler
    │   └── engine.py                  # XPEngine wiring
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine + JWT admin dependencies
        └── routes/        # Public + admin REST endpoints
"""

__version__ = "0.1.0"
