from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set
from uuid import UUID

from sqlalchemy import select

from backend.app.db import models
from backend.app.db.session import Database
from backend.app.services.scrape_orchestrator import RunReport, ScrapeOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3


class SearchPool:
    """Bounded pool that runs saved searches end to end, one slot per search.

    Cron runs and HTTP triggers both go through here; the semaphore is the only
    place the concurrency limit is enforced.
    """

    def __init__(
        self,
        database: Database,
        orchestrator: ScrapeOrchestrator,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        self.database = database
        self.orchestrator = orchestrator
        self.concurrency = max(1, concurrency)
        self.sem = asyncio.Semaphore(self.concurrency)
        self._in_flight: Set[UUID] = set()
        self._tasks: Set[asyncio.Task] = set()

    def is_running(self, search_id: UUID) -> bool:
        return search_id in self._in_flight

    def active_search_ids(self) -> List[UUID]:
        with self.database.session_scope() as session:
            return list(
                session.execute(
                    select(models.SavedSearch.id).where(models.SavedSearch.is_active.is_(True))
                ).scalars()
            )

    async def run_search(self, search_id: UUID) -> Optional[RunReport]:
        if not self._reserve(search_id):
            return None
        return await self._run_reserved(search_id)

    def _reserve(self, search_id: UUID) -> bool:
        if search_id in self._in_flight:
            logger.warning("Search %s is already queued or running; ignoring", search_id)
            return False
        self._in_flight.add(search_id)
        return True

    async def _run_reserved(self, search_id: UUID) -> Optional[RunReport]:
        try:
            async with self.sem:
                return await self.orchestrator.run_search_scrape(search_id)
        except Exception:
            logger.exception("Failed to process search %s", search_id)
            return None
        finally:
            self._in_flight.discard(search_id)

    async def run_all(self) -> List[RunReport]:
        logger.info("=" * 60)
        logger.info("Starting scrape of all active searches")
        try:
            search_ids = self.active_search_ids()
        except Exception:
            logger.exception("Could not load active searches")
            return []
        if not search_ids:
            logger.info("No active searches found")
            return []

        logger.info("Processing %d active searches (concurrency: %d)", len(search_ids), self.concurrency)
        results = await asyncio.gather(*(self.run_search(search_id) for search_id in search_ids))
        reports = [report for report in results if report is not None]
        logger.info("Scrape of all active searches completed (%d runs)", len(reports))
        logger.info("=" * 60)
        return reports

    def submit(self, search_id: UUID) -> bool:
        """Schedule one search in the background. False when it is already in flight."""
        if not self._reserve(search_id):
            return False
        self._spawn(self._run_reserved(search_id))
        return True

    def submit_all(self) -> None:
        self._spawn(self.run_all())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every background task started through ``submit``."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
