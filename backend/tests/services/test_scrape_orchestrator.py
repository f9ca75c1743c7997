from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from backend.app.adapters.types import AdapterOutcome, ScrapedRecord
from backend.app.db import models
from backend.app.services.scrape_orchestrator import ScrapeOrchestrator


class FakeAdapter:
    def __init__(self, site: str, records: Optional[List[ScrapedRecord]] = None, error: Optional[Exception] = None, on_scrape=None):
        self.site = site
        self._records = list(records or [])
        self._error = error
        self._on_scrape = on_scrape
        self.calls = 0

    async def scrape(self, params):
        self.calls += 1
        if self._on_scrape:
            self._on_scrape(self.site)
        if self._error:
            raise self._error
        return list(self._records)


class FakeNotifier:
    def __init__(self):
        self.bundles = []

    async def send_notifications(self, search_id, alerts):
        self.bundles.append(alerts)
        return 1


class FakeFallback:
    enabled = True

    def __init__(self, outcomes_by_site):
        self.outcomes_by_site = outcomes_by_site
        self.requested = []

    async def search_sites(self, params, sites):
        self.requested.append(list(sites))
        return [self.outcomes_by_site.get(site, AdapterOutcome(site=site)) for site in sites]


def _record(make_record, site, n):
    return make_record(url=f"https://{site}.example/listing/{n}", source_site=site, price_cents=1_000_000 + n)


def _orchestrator(database, adapters, **kwargs):
    kwargs.setdefault("notifier", FakeNotifier())
    kwargs.setdefault("low_yield_threshold", 0)
    return ScrapeOrchestrator(database, [(a.site, a) for a in adapters], **kwargs)


def _logs(database, search_id):
    with database.session_scope() as session:
        return [
            (row.source_site, row.status, row.listings_found, row.error_message)
            for row in session.query(models.ScrapeLogEntry).filter_by(search_id=search_id).order_by(models.ScrapeLogEntry.id)
        ]


def _search(database, search_id):
    with database.session_scope() as session:
        return session.get(models.SavedSearch, search_id)


@pytest.mark.asyncio
async def test_failing_adapter_does_not_abort_the_run(database, make_search, make_record):
    search_id = make_search()
    adapters = [
        FakeAdapter("bat", [_record(make_record, "bat", 1), _record(make_record, "bat", 2)]),
        FakeAdapter("carsandbids", error=RuntimeError("blocked by captcha")),
        FakeAdapter("hemmings", [_record(make_record, "hemmings", 3)]),
    ]
    notifier = FakeNotifier()

    report = await _orchestrator(database, adapters, notifier=notifier).run_search_scrape(search_id)

    assert not report.skipped
    assert report.failed_sites == ["carsandbids"]
    assert report.total_records == 3
    assert report.reconcile.created == 3
    assert report.notifications_sent == 1
    assert len(notifier.bundles[0].new_listings) == 3
    assert _logs(database, search_id) == [
        ("bat", "success", 2, None),
        ("carsandbids", "error", 0, "blocked by captcha"),
        ("hemmings", "success", 1, None),
    ]

    search = _search(database, search_id)
    assert search.scrape_status == "complete"
    assert search.scrape_step == search.scrape_total_steps == 3
    assert search.scrape_current_site is None
    assert search.last_scraped_at is not None


@pytest.mark.asyncio
async def test_progress_is_visible_while_adapters_run(database, make_search, make_record):
    search_id = make_search()
    seen = []

    def snapshot(site):
        search = _search(database, search_id)
        seen.append((site, search.scrape_status, search.scrape_step, search.scrape_total_steps, search.scrape_current_site))

    adapters = [FakeAdapter(site, on_scrape=snapshot) for site in ("bat", "hagerty")]

    await _orchestrator(database, adapters).run_search_scrape(search_id)

    assert seen == [
        ("bat", "running", 0, 2, "bat"),
        ("hagerty", "running", 1, 2, "hagerty"),
    ]


@pytest.mark.asyncio
async def test_enabled_sites_limit_the_adapters_run(database, make_search, make_record):
    search_id = make_search(enabled_sites=["hemmings"])
    bat = FakeAdapter("bat", [_record(make_record, "bat", 1)])
    hemmings = FakeAdapter("hemmings", [_record(make_record, "hemmings", 2)])

    report = await _orchestrator(database, [bat, hemmings]).run_search_scrape(search_id)

    assert bat.calls == 0
    assert hemmings.calls == 1
    assert [o.site for o in report.outcomes] == ["hemmings"]
    assert _search(database, search_id).scrape_total_steps == 1


@pytest.mark.asyncio
async def test_low_yield_runs_fallback_for_empty_sites_only(database, make_search, make_record):
    search_id = make_search()
    bat_record = _record(make_record, "bat", 1)
    adapters = [
        FakeAdapter("bat", [bat_record]),
        FakeAdapter("carsandbids", []),
        FakeAdapter("hemmings", error=RuntimeError("timeout")),
    ]
    fresh = _record(make_record, "carsandbids", 7)
    fallback = FakeFallback(
        {
            "carsandbids": AdapterOutcome(site="carsandbids", records=[bat_record, fresh]),
            "hemmings": AdapterOutcome(site="hemmings", error="quota exhausted"),
        }
    )

    report = await _orchestrator(database, adapters, fallback=fallback, low_yield_threshold=5).run_search_scrape(search_id)

    assert fallback.requested == [["carsandbids", "hemmings"]]
    assert report.total_records == 2
    assert report.reconcile.created == 2
    logs = _logs(database, search_id)
    assert logs[3:] == [
        ("ai_fallback:carsandbids", "success", 2, None),
        ("ai_fallback:hemmings", "error", 0, "quota exhausted"),
    ]


@pytest.mark.asyncio
async def test_fallback_skipped_when_yield_is_sufficient(database, make_search, make_record):
    search_id = make_search()
    adapters = [
        FakeAdapter("bat", [_record(make_record, "bat", n) for n in range(5)]),
        FakeAdapter("carsandbids", []),
    ]
    fallback = FakeFallback({})

    await _orchestrator(database, adapters, fallback=fallback, low_yield_threshold=5).run_search_scrape(search_id)

    assert fallback.requested == []


@pytest.mark.asyncio
async def test_unseen_active_listings_are_delisted(database, make_search, make_record, add_listing):
    search_id = make_search()
    add_listing(search_id, url="https://bat.example/listing/gone")
    adapters = [FakeAdapter("bat", [_record(make_record, "bat", 1)])]

    report = await _orchestrator(database, adapters).run_search_scrape(search_id)

    assert report.delisted == 1
    with database.session_scope() as session:
        statuses = {l.url: l.status for l in session.query(models.Listing).filter_by(search_id=search_id)}
    assert statuses == {
        "https://bat.example/listing/gone": "delisted",
        "https://bat.example/listing/1": "active",
    }


@pytest.mark.asyncio
async def test_live_run_lock_skips_second_run(database, make_search):
    search_id = make_search(scrape_status="running", scrape_started_at=datetime.now(timezone.utc))
    adapter = FakeAdapter("bat")

    report = await _orchestrator(database, [adapter]).run_search_scrape(search_id)

    assert report.skipped
    assert adapter.calls == 0
    assert _search(database, search_id).scrape_status == "running"


@pytest.mark.asyncio
async def test_stale_run_lock_is_reclaimed(database, make_search):
    search_id = make_search(
        scrape_status="running",
        scrape_started_at=datetime.now(timezone.utc) - timedelta(hours=3),
    )
    adapter = FakeAdapter("bat")

    report = await _orchestrator(database, [adapter], lock_stale_after=timedelta(hours=2)).run_search_scrape(search_id)

    assert not report.skipped
    assert adapter.calls == 1
    assert _search(database, search_id).scrape_status == "complete"


@pytest.mark.asyncio
async def test_unknown_search_is_skipped(database):
    adapter = FakeAdapter("bat")

    report = await _orchestrator(database, [adapter]).run_search_scrape(uuid.uuid4())

    assert report.skipped
    assert adapter.calls == 0


class RaisingReconciler:
    def reconcile(self, search_id, records, **kwargs):
        raise ValueError("unexpected record shape")


@pytest.mark.asyncio
async def test_unexpected_error_releases_run_lock(database, make_search, make_record):
    search_id = make_search()
    adapter = FakeAdapter("bat", [_record(make_record, "bat", 1)])

    with pytest.raises(ValueError):
        await _orchestrator(database, [adapter], reconciler=RaisingReconciler()).run_search_scrape(search_id)

    search = _search(database, search_id)
    assert search.scrape_status == "idle"
    assert search.scrape_current_site is None

    rerun = await _orchestrator(database, [adapter]).run_search_scrape(search_id)

    assert not rerun.skipped
    assert adapter.calls == 2
    assert rerun.reconcile.created == 1
    assert _search(database, search_id).scrape_status == "complete"
