from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from backend.app.adapters.registry import AdapterRegistry, build_registry, select_adapters
from backend.app.adapters.types import AdapterOutcome, ScrapedRecord, SearchParams, SourceAdapter, merge_unique_by_url
from backend.app.core.settings import settings
from backend.app.db import models
from backend.app.db.session import Database
from backend.app.services.fallback_search import GeminiFallbackSearcher
from backend.app.services.notifier import AlertBundle, NotificationTrigger
from backend.app.services.reconciler import ListingReconciler, ReconcileResult
from backend.app.services.vehicle_tracker import detect_delisted

logger = logging.getLogger(__name__)

LOW_YIELD_THRESHOLD = 5
FALLBACK_SITE_PREFIX = "ai_fallback:"


@dataclass(frozen=True)
class SearchSnapshot:
    """Detached copy of the SavedSearch fields a run needs."""

    id: UUID
    params: SearchParams
    enabled_sites: Tuple[str, ...]


@dataclass
class RunReport:
    search_id: UUID
    skipped: bool = False
    outcomes: List[AdapterOutcome] = field(default_factory=list)
    fallback_outcomes: List[AdapterOutcome] = field(default_factory=list)
    total_records: int = 0
    reconcile: Optional[ReconcileResult] = None
    delisted: int = 0
    notifications_sent: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def failed_sites(self) -> List[str]:
        return [o.site for o in self.outcomes if not o.ok]


class ScrapeOrchestrator:
    """Runs every enabled adapter for one saved search and reconciles the results."""

    def __init__(
        self,
        database: Database,
        adapters: Optional[AdapterRegistry] = None,
        *,
        notifier: Optional[NotificationTrigger] = None,
        fallback: Optional[GeminiFallbackSearcher] = None,
        reconciler: Optional[ListingReconciler] = None,
        low_yield_threshold: int = LOW_YIELD_THRESHOLD,
        lock_stale_after: Optional[timedelta] = None,
    ):
        self.database = database
        self.adapters = list(adapters) if adapters is not None else build_registry(settings.proxy_list)
        self.notifier = notifier or NotificationTrigger(database)
        if fallback is None and settings.gemini_api_key:
            fallback = GeminiFallbackSearcher()
        self.fallback = fallback
        self.reconciler = reconciler or ListingReconciler(database)
        self.low_yield_threshold = low_yield_threshold
        self.lock_stale_after = lock_stale_after or timedelta(minutes=settings.run_lock_stale_minutes)

    async def run_search_scrape(self, search_id: UUID) -> RunReport:
        report = RunReport(search_id=search_id)
        snapshot = self._load_search(search_id)
        if snapshot is None:
            logger.warning("Search %s not found; nothing to scrape", search_id)
            report.skipped = True
            return report

        adapters = select_adapters(self.adapters, snapshot.enabled_sites)
        if not self._claim(search_id, total_steps=len(adapters)):
            logger.warning("Search %s already has a run in progress; skipping", search_id)
            report.skipped = True
            return report

        params = snapshot.params
        logger.info("Starting scrape for %s %s (%s)", params.make, params.model, search_id)

        try:
            await self._run_claimed(search_id, params, adapters, report)
        except BaseException:
            self._release(search_id)
            raise
        self._complete(search_id, total_steps=len(adapters))

        report.completed_at = datetime.now(timezone.utc)
        logger.info(
            "Completed scrape for %s %s: %d records, %d failed sites, %d delisted",
            params.make,
            params.model,
            report.total_records,
            len(report.failed_sites),
            report.delisted,
        )
        return report

    async def _run_claimed(
        self,
        search_id: UUID,
        params: SearchParams,
        adapters: AdapterRegistry,
        report: RunReport,
    ) -> None:
        records: List[ScrapedRecord] = []
        for index, (site, adapter) in enumerate(adapters):
            self._update_progress(search_id, step=index, current_site=site)
            outcome = await self._run_adapter(site, adapter, params)
            self._write_log(search_id, site, outcome)
            report.outcomes.append(outcome)
            records.extend(outcome.records)

        if len(records) < self.low_yield_threshold and self.fallback is not None and self.fallback.enabled:
            empty_sites = [o.site for o in report.outcomes if o.listings_found == 0]
            if empty_sites:
                records.extend(await self._run_fallback(search_id, params, empty_sites, records, report))

        report.total_records = len(records)

        try:
            result = self.reconciler.reconcile(
                search_id,
                records,
                search_make=params.make,
                search_model=params.model,
            )
            report.reconcile = result
        except SQLAlchemyError as exc:
            logger.error("Reconciliation failed for search %s: %s", search_id, exc)
            return

        try:
            with self.database.session_scope() as session:
                report.delisted = len(detect_delisted(session, search_id, result.found_urls))
        except SQLAlchemyError as exc:
            logger.error("Delisting pass failed for search %s: %s", search_id, exc)

        try:
            report.notifications_sent = await self.notifier.send_notifications(
                search_id,
                AlertBundle(
                    price_drops=result.price_drops,
                    new_listings=result.new_listings,
                    sold_alerts=result.sold_alerts,
                ),
            )
        except Exception as exc:
            logger.error("Notification pass failed for search %s: %s", search_id, exc)

    async def aclose(self) -> None:
        if self.fallback is not None:
            await self.fallback.aclose()

    async def _run_adapter(self, site: str, adapter: SourceAdapter, params: SearchParams) -> AdapterOutcome:
        start = time.monotonic()
        try:
            records = list(await adapter.scrape(params))
            outcome = AdapterOutcome(site=site, records=records)
        except Exception as exc:
            logger.error("[%s] adapter failed: %s", site, exc)
            outcome = AdapterOutcome(site=site, error=str(exc) or exc.__class__.__name__)
        outcome.duration_ms = int((time.monotonic() - start) * 1000)
        return outcome

    async def _run_fallback(
        self,
        search_id: UUID,
        params: SearchParams,
        sites: Sequence[str],
        collected: Sequence[ScrapedRecord],
        report: RunReport,
    ) -> List[ScrapedRecord]:
        logger.info("Low yield (%d records); running AI fallback for %s", len(collected), ", ".join(sites))
        outcomes = await self.fallback.search_sites(params, sites)
        found: List[ScrapedRecord] = []
        for outcome in outcomes:
            self._write_log(search_id, f"{FALLBACK_SITE_PREFIX}{outcome.site}", outcome)
            report.fallback_outcomes.append(outcome)
            found.extend(outcome.records)
        return merge_unique_by_url(collected, found)

    def _load_search(self, search_id: UUID) -> Optional[SearchSnapshot]:
        with self.database.session_scope() as session:
            search = session.get(models.SavedSearch, search_id)
            if search is None:
                return None
            return SearchSnapshot(
                id=search.id,
                params=SearchParams(
                    make=search.make,
                    model=search.model,
                    trim=search.trim,
                    year_min=search.year_min,
                    year_max=search.year_max,
                    zip_code=search.zip_code,
                    search_radius=search.search_radius,
                ),
                enabled_sites=tuple(search.enabled_sites or ()),
            )

    def _claim(self, search_id: UUID, *, total_steps: int) -> bool:
        """Mark the search running unless another live run already holds it."""
        now = datetime.now(timezone.utc)
        stale_before = now - self.lock_stale_after
        with self.database.session_scope() as session:
            result = session.execute(
                update(models.SavedSearch)
                .where(
                    models.SavedSearch.id == search_id,
                    or_(
                        models.SavedSearch.scrape_status != "running",
                        models.SavedSearch.scrape_started_at.is_(None),
                        models.SavedSearch.scrape_started_at < stale_before,
                    ),
                )
                .values(
                    scrape_status="running",
                    scrape_step=0,
                    scrape_total_steps=total_steps,
                    scrape_current_site=None,
                    scrape_started_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def _update_progress(self, search_id: UUID, *, step: int, current_site: Optional[str]) -> None:
        try:
            with self.database.session_scope() as session:
                search = session.get(models.SavedSearch, search_id)
                if not search:
                    return
                search.scrape_step = step
                search.scrape_current_site = current_site
        except SQLAlchemyError as exc:
            logger.error("Could not update progress for search %s: %s", search_id, exc)

    def _complete(self, search_id: UUID, *, total_steps: int) -> None:
        try:
            with self.database.session_scope() as session:
                search = session.get(models.SavedSearch, search_id)
                if not search:
                    return
                search.scrape_status = "complete"
                search.scrape_step = total_steps
                search.scrape_current_site = None
                search.last_scraped_at = datetime.now(timezone.utc)
        except SQLAlchemyError as exc:
            logger.error("Could not mark search %s complete: %s", search_id, exc)

    def _release(self, search_id: UUID) -> None:
        """Drop the run lock after an aborted run so the next trigger is not refused."""
        try:
            with self.database.session_scope() as session:
                search = session.get(models.SavedSearch, search_id)
                if not search:
                    return
                search.scrape_status = "idle"
                search.scrape_current_site = None
        except SQLAlchemyError as exc:
            logger.error("Could not release run lock for search %s: %s", search_id, exc)

    def _write_log(self, search_id: UUID, site: str, outcome: AdapterOutcome) -> None:
        try:
            with self.database.session_scope() as session:
                session.add(
                    models.ScrapeLogEntry(
                        search_id=search_id,
                        source_site=site,
                        status="success" if outcome.ok else "error",
                        listings_found=outcome.listings_found,
                        error_message=outcome.error,
                        duration_ms=outcome.duration_ms,
                    )
                )
        except SQLAlchemyError as exc:
            logger.error("Could not write scrape log for %s/%s: %s", search_id, site, exc)
