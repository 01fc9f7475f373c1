from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .clients.panel_api import close_panel_api
from .core.logging_setup import configure_runtime_logging, install_asyncio_exception_logging
from .core.settings import PANEL_URL
from .routers import api_route

configure_runtime_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    install_asyncio_exception_logging()
    logger.info("route console started, backend=%s", PANEL_URL)
    try:
        yield
    finally:
        await close_panel_api()
        logger.info("route console stopped")


app = FastAPI(title="Route Console", version="1.0.0", lifespan=lifespan)
app.include_router(api_route.router)


@app.get("/api/health")
async def api_health():
    return {"ok": True}
