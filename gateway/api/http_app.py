# ==============================
# FastAPI App Factory
# ==============================
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from gateway.api.deps import get_engine, get_settings
from gateway.api.routes_run import router as run_router
from runledger.logging.logger import bootstrap_logger


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    bootstrap_logger(get_settings())
    yield
    if get_engine.cache_info().currsize:
        get_engine().shutdown()


def create_app() -> FastAPI:
    app = FastAPI(title="runledger", version="0.1.0", lifespan=_lifespan)
    app.include_router(run_router, prefix="/api")
    return app
