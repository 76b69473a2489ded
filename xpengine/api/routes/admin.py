"""
xpengine.api.routes.admin — Admin endpoints (JWT‑protected)
============================================================
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from xpengine.api.deps import EngineDep, get_current_admin
from xpengine.services.config_service import ConfigWriteResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/xp", tags=["admin"], dependencies=[Depends(get_current_admin)])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class XPMutation(BaseModel):
    amount: float | None = Field(None, ge=0)
    reason: str | None = None
    store_id: str | None = None


def _write_response(result: ConfigWriteResult):
    if not result.valid:
        return JSONResponse(status_code=400, content={"valid": False, "errors": result.errors})
    return {"valid": True, "config": result.config.to_dict()}


# ---------------------------------------------------------------------------
# Global config (declared before the {guild_id} routes so "global" matches here)
# ---------------------------------------------------------------------------
@router.get("/config/global")
async def get_global_config(engine: EngineDep):
    return {"config": await engine.configs.get_global_config()}


@router.put("/config/global")
async def replace_global_config(
    body: dict[str, Any], engine: EngineDep, admin: dict = Depends(get_current_admin),
):
    """Replace the defaults every guild config is merged over."""
    if not body:
        return JSONResponse(
            status_code=400, content={"valid": False, "errors": ["config must not be empty"]}
        )
    report = await engine.configs.set_global_config(body)
    if not report.valid:
        return JSONResponse(status_code=400, content={"valid": False, "errors": report.errors})
    logger.info("Admin %s replaced the global config", admin.get("sub"))
    return {"valid": True, "config": await engine.configs.get_global_config()}


# ---------------------------------------------------------------------------
# Guild config
# ---------------------------------------------------------------------------
@router.get("/config/{guild_id}")
async def get_config(guild_id: str, engine: EngineDep, store_id: str | None = None):
    config = await engine.configs.get_config(
        guild_id, store_id=store_id or engine.settings.default_store_id
    )
    return {"config": config.to_dict()}


@router.put("/config/{guild_id}")
async def replace_config(
    guild_id: str, body: dict[str, Any], engine: EngineDep, store_id: str | None = None,
):
    """Replace the config wholesale; absent keys fall back to defaults."""
    result = await engine.configs.set_config(
        guild_id, body, store_id=store_id or engine.settings.default_store_id
    )
    return _write_response(result)


@router.patch("/config/{guild_id}")
async def update_config(
    guild_id: str, body: dict[str, Any], engine: EngineDep, store_id: str | None = None,
):
    result = await engine.configs.update_config(
        guild_id, body, store_id=store_id or engine.settings.default_store_id
    )
    return _write_response(result)


# ---------------------------------------------------------------------------
# XP mutations
# ---------------------------------------------------------------------------
@router.post("/users/{guild_id}/{user_id}/reconcile")
async def reconcile_user(
    guild_id: str,
    user_id: str,
    engine: EngineDep,
    store_id: str | None = None,
    admin: dict = Depends(get_current_admin),
):
    """Re-apply reward roles for the member's current level."""
    if engine.rewards is None:
        raise HTTPException(409, "Role rewards are disabled: no platform connection")
    store_id = store_id or engine.settings.default_store_id
    level = await engine.xp.get_level(guild_id, user_id, store_id=store_id)
    result = await engine.rewards.reconcile_member(guild_id, user_id, level, store_id=store_id)
    logger.info(
        "Admin %s reconciled rewards of user %s in guild %s", admin.get("sub"), user_id, guild_id
    )
    return {"level": level, **asdict(result)}


@router.post("/users/{guild_id}/{user_id}/{action}")
async def mutate_user(
    guild_id: str,
    user_id: str,
    action: Literal["add", "remove", "set", "recalc"],
    body: XPMutation,
    engine: EngineDep,
    admin: dict = Depends(get_current_admin),
):
    store_id = body.store_id or engine.settings.default_store_id
    if action == "recalc":
        result = await engine.xp.recalc(guild_id, user_id, store_id=store_id)
    else:
        if body.amount is None:
            raise HTTPException(400, f"'amount' is required for {action}")
        mutate = getattr(engine.xp, action)
        result = await mutate(guild_id, user_id, body.amount, reason=body.reason, store_id=store_id)

    logger.info(
        "Admin %s ran %s on user %s in guild %s (store=%s)",
        admin.get("sub"), action, user_id, guild_id, store_id,
    )
    return {"action": action, **asdict(result)}
