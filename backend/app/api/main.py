from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from backend.app.core.settings import settings
from backend.app.db.session import Database
from backend.app.services.scheduler import build_scheduler
from backend.app.services.scrape_orchestrator import ScrapeOrchestrator
from backend.app.services.worker_pool import SearchPool
from .routes import scrape, searches

logger = logging.getLogger(__name__)


def create_app(
    *,
    database: Optional[Database] = None,
    pool: Optional[SearchPool] = None,
    worker_token: Optional[str] = None,
    enable_scheduler: bool = True,
    run_on_start: Optional[bool] = None,
) -> FastAPI:
    database = database or Database()
    owns_pool = pool is None
    if pool is None:
        pool = SearchPool(database, ScrapeOrchestrator(database), concurrency=settings.concurrency)
    run_on_start = settings.run_on_start if run_on_start is None else run_on_start

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        scheduler = None
        if enable_scheduler:
            scheduler = build_scheduler(pool)
            scheduler.start()
        if run_on_start:
            logger.info("RUN_ON_START=true, running all active searches now")
            pool.submit_all()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            if owns_pool:
                await pool.orchestrator.aclose()

    app = FastAPI(title="Car Tracker Worker", version="0.1.0", lifespan=lifespan)
    app.state.database = database
    app.state.pool = pool
    app.state.worker_token = worker_token if worker_token is not None else settings.worker_token

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(scrape.router, tags=["scrape"])
    app.include_router(searches.router, prefix="/searches", tags=["searches"])
    return app
