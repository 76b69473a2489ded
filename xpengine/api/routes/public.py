"""
xpengine.api.routes.public — Read-only public endpoints
=========================================================
"""

from __future__ import annotations

import math
from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Query

from xpengine.api.deps import EngineDep
from xpengine.engine.curve import progress, xp_needed_for_level

router = APIRouter(prefix="/xp", tags=["public"])

MAX_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# GET /xp/leaderboard/{guild_id}
# ---------------------------------------------------------------------------
@router.get("/leaderboard/{guild_id}")
async def get_leaderboard(
    guild_id: str,
    engine: EngineDep,
    page: int | None = Query(None, ge=1),
    limit: int = Query(10, ge=1),
    offset: int | None = Query(None, ge=0),
    store_id: str | None = None,
):
    """Paginated leaderboard.  ``offset`` wins over ``page`` when both are set."""
    if limit > MAX_PAGE_SIZE:
        raise HTTPException(400, f"Limit cannot exceed {MAX_PAGE_SIZE} entries per page")
    if offset is None:
        offset = (page - 1) * limit if page else 0

    result = await engine.leaderboard.get(
        guild_id, offset, limit, store_id=store_id or engine.settings.default_store_id
    )
    return {
        "entries": [asdict(e) for e in result.entries],
        "pagination": {
            "total": result.total,
            "total_pages": math.ceil(result.total / limit),
            "current_page": offset // limit + 1,
            "limit": limit,
            "offset": offset,
            "has_next": offset + limit < result.total,
            "has_prev": offset > 0,
        },
        "cached": result.cached,
    }


# ---------------------------------------------------------------------------
# GET /xp/users/{guild_id}/{user_id}
# ---------------------------------------------------------------------------
@router.get("/users/{guild_id}/{user_id}")
async def get_user(guild_id: str, user_id: str, engine: EngineDep, store_id: str | None = None):
    """One user's record, progress inside the current level, and rank."""
    store_id = store_id or engine.settings.default_store_id
    record = await engine.xp.get_user(guild_id, user_id, store_id=store_id)
    if record is None:
        raise HTTPException(404, "User has no XP record")

    curve = await engine.xp.curve_for(guild_id, store_id)
    prog = progress(record.xp, curve)
    rank = await engine.leaderboard.get_rank(guild_id, user_id, store_id=store_id)
    return {
        "user_id": user_id,
        "store_id": store_id,
        **record.to_dict(),
        "progress": asdict(prog),
        "rank": asdict(rank) if rank else None,
    }


# ---------------------------------------------------------------------------
# GET /xp/curve/{guild_id}
# ---------------------------------------------------------------------------
@router.get("/curve/{guild_id}")
async def get_curve(
    guild_id: str,
    engine: EngineDep,
    levels: int = Query(20, ge=1, le=200),
    store_id: str | None = None,
):
    """Threshold preview for the first *levels* levels of the guild's curve."""
    curve = await engine.xp.curve_for(guild_id, store_id or engine.settings.default_store_id)
    rows = []
    for level in range(1, levels + 1):
        total = curve.xp_for_level(level)
        if math.isinf(total):
            break
        rows.append({"level": level, "xp_total": total, "xp_needed": xp_needed_for_level(level, curve)})
    return {"max_level": curve.max_level, "levels": rows}


# ---------------------------------------------------------------------------
# GET /xp/stats/{guild_id}
# ---------------------------------------------------------------------------
@router.get("/stats/{guild_id}")
async def get_stats(guild_id: str, engine: EngineDep, store_id: str | None = None):
    """Guild summary: user count, top user, and the shape of its config."""
    store_id = store_id or engine.settings.default_store_id
    top = await engine.leaderboard.get(guild_id, 0, 1, store_id=store_id)
    config = await engine.configs.get_config(guild_id, store_id=store_id)

    mult = config.multipliers
    users: dict = {"total": top.total}
    if top.entries:
        leader = top.entries[0]
        users["top_user"] = {"user_id": leader.user_id, "xp": leader.xp, "level": leader.level}
    return {
        "guild_id": guild_id,
        "store_id": store_id,
        "users": users,
        "config": {
            "cooldown_seconds": config.cooldown_seconds,
            "xp_rate": config.xp_rate,
            "rewards_count": len(config.role_rewards),
            "multipliers_count": (mult.server != 1.0) + len(mult.role) + len(mult.user),
        },
        "leaderboard": {"public": config.leaderboard_public},
    }
