"""
xpengine.api.deps — FastAPI dependency injection
=================================================

Process-wide singletons (settings, Discord client, engine) and the admin JWT
guard.  The signing secret is checked once, when this module is imported, so
a misconfigured deployment fails at startup instead of on the first request.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated

import discord
import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from xpengine.config import EngineSettings, load_config
from xpengine.database.engine import create_db_engine, init_db
from xpengine.database.store import SqlStore
from xpengine.services.engine import XPEngine
from xpengine.services.platform import DiscordPlatform

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
CONFIG_PATH_ENV = "XPENGINE_CONFIG"
DISCORD_TOKEN_ENV = "DISCORD_TOKEN"
PLACEHOLDER_TOKEN = "your-discord-bot-token-here"

MIN_SECRET_LENGTH = 32
KNOWN_WEAK_SECRETS = {"xpengine-dev-secret-change-me", "change-me", "changeme", "secret", "dev"}


def _load_jwt_secret() -> str:
    """Read ``JWT_SECRET`` and refuse blank, placeholder, or short values."""
    secret = os.environ.get("JWT_SECRET", "").strip()
    if not secret:
        problem = (
            "JWT_SECRET environment variable is not set. Generate one with "
            "`python -c \"import secrets; print(secrets.token_urlsafe(64))\"`."
        )
    elif secret.lower() in KNOWN_WEAK_SECRETS:
        problem = f"JWT_SECRET {secret!r} is a known weak default; choose a unique value."
    elif len(secret) < MIN_SECRET_LENGTH:
        problem = (
            f"JWT_SECRET is too short: {len(secret)} characters, "
            f"need at least {MIN_SECRET_LENGTH}."
        )
    else:
        return secret
    raise RuntimeError(problem)


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """``config.yaml`` (or ``$XPENGINE_CONFIG``) when present, else defaults."""
    path = Path(os.getenv(CONFIG_PATH_ENV, "config.yaml"))
    if path.exists():
        return load_config(path)
    return EngineSettings(database_url=os.getenv("DATABASE_URL"))


def get_discord_token() -> str | None:
    token = os.getenv(DISCORD_TOKEN_ENV, "").strip()
    if not token or token == PLACEHOLDER_TOKEN:
        return None
    return token


@lru_cache(maxsize=1)
def get_discord_client() -> discord.Client | None:
    """Gateway client for role rewards, or ``None`` when no bot token is set.

    The client is only built here; the app lifespan logs it in and closes it.
    """
    if get_discord_token() is None:
        logger.warning("%s is not set; role rewards will not be reconciled", DISCORD_TOKEN_ENV)
        return None
    intents = discord.Intents.default()
    intents.members = True
    return discord.Client(intents=intents)


@lru_cache(maxsize=1)
def get_engine() -> XPEngine:
    """Process-wide engine over the SQL store.

    Level changes reconcile reward roles through the Discord client when one
    is configured.
    """
    settings = get_settings()
    db = create_db_engine(settings.database_url)
    init_db(db)
    client = get_discord_client()
    platform = DiscordPlatform(client) if client is not None else None
    return XPEngine.create(SqlStore(db), platform=platform, settings=settings)


EngineDep = Annotated[XPEngine, Depends(get_engine)]


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Decode the bearer token; 401 when absent or invalid, 403 for non-admins."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token expired")
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if claims.get("is_admin") is not True:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return claims
