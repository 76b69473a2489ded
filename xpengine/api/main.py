"""
xpengine.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn xpengine.api.main:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

load_dotenv()

from xpengine import __version__  # noqa: E402
from xpengine.api.deps import (  # noqa: E402
    get_discord_client,
    get_discord_token,
    get_engine,
    get_settings,
)
from xpengine.api.routes.admin import router as admin_router  # noqa: E402
from xpengine.api.routes.public import router as public_router  # noqa: E402
from xpengine.errors import InvalidArgument, PersistenceError  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle: build the engine once, run the gateway client."""
    engine = get_engine()
    client = get_discord_client()
    gateway = None
    if client is not None:
        gateway = asyncio.create_task(client.start(get_discord_token()))
    logger.info(
        "xpengine API started, engine ready (store=%s, gateway=%s)",
        type(engine.store).__name__, "on" if gateway else "off",
    )
    yield
    await engine.settled()
    if gateway is not None:
        await client.close()
        results = await asyncio.gather(gateway, return_exceptions=True)
        if isinstance(results[0], BaseException):
            logger.error("Discord gateway stopped with an error: %s", results[0])
    logger.info("xpengine API shutting down")


app = FastAPI(
    title="xpengine API",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(InvalidArgument)
async def invalid_argument_handler(request: Request, exc: InvalidArgument):
    return JSONResponse(status_code=400, content={"detail": exc.message})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


# Mount routers
API_PREFIX = get_settings().api_prefix
app.include_router(public_router, prefix=API_PREFIX)
app.include_router(admin_router, prefix=API_PREFIX)


@app.get(f"{API_PREFIX}/health")
def health():
    return {"status": "ok"}
