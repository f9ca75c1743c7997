from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.adapters._common import normalize_vin
from backend.app.adapters.types import ScrapedRecord
from backend.app.db import models
from backend.app.db.session import Database
from backend.app.services.identity import resolve_vehicle, upgrade_vin
from backend.app.services.price_history import record_price
from backend.app.services.vehicle_tracker import detect_cross_listings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceDropAlert:
    listing_title: str
    old_price: int
    new_price: int
    drop_pct: float
    url: str


@dataclass(frozen=True)
class NewListingAlert:
    title: str
    price: int
    source_site: str
    url: str


@dataclass(frozen=True)
class SoldAlert:
    title: str
    sale_price: int
    source_site: str
    url: str


@dataclass
class ReconcileResult:
    price_drops: List[PriceDropAlert] = field(default_factory=list)
    new_listings: List[NewListingAlert] = field(default_factory=list)
    sold_alerts: List[SoldAlert] = field(default_factory=list)
    found_urls: Set[str] = field(default_factory=set)
    created: int = 0
    updated: int = 0
    discarded: int = 0
    duplicates: int = 0
    failed: int = 0
    price_points: int = 0

    @property
    def alert_count(self) -> int:
        return len(self.price_drops) + len(self.new_listings) + len(self.sold_alerts)


@dataclass
class _RecordOutcome:
    created: bool = False
    price_drop: Optional[PriceDropAlert] = None
    new_listing: Optional[NewListingAlert] = None
    sold: Optional[SoldAlert] = None
    price_recorded: bool = False


def compute_drop_pct(old_price: int, new_price: int) -> float:
    return (old_price - new_price) * 100 / old_price


def collapse_duplicates(records: Iterable[ScrapedRecord]) -> List[ScrapedRecord]:
    """One record per URL, then one per (VIN, site); the last record seen wins."""
    by_url: Dict[str, ScrapedRecord] = {}
    for record in records:
        by_url[record.url] = record

    by_identity: Dict[Tuple[str, str], ScrapedRecord] = {}
    for record in by_url.values():
        vin = normalize_vin(record.vin)
        key = (vin, record.source_site) if vin else ("url", record.url)
        by_identity[key] = record
    return list(by_identity.values())


class ListingReconciler:
    """Folds one run's scraped records into the listing catalog of a search."""

    def __init__(self, database: Database):
        self.database = database

    def reconcile(
        self,
        search_id: UUID,
        records: Iterable[ScrapedRecord],
        *,
        search_make: str,
        search_model: str,
        observed_at: Optional[datetime] = None,
    ) -> ReconcileResult:
        observed_at = observed_at or datetime.now(timezone.utc)
        result = ReconcileResult()

        priced: List[ScrapedRecord] = []
        for record in records:
            if not record.price_cents or record.price_cents <= 0:
                result.discarded += 1
                continue
            result.found_urls.add(record.url)
            priced.append(record)

        unique = collapse_duplicates(priced)
        result.duplicates = len(priced) - len(unique)

        for record in unique:
            try:
                with self.database.session_scope() as session:
                    outcome = self._reconcile_record(
                        session, search_id, record, search_make, search_model, observed_at
                    )
            except SQLAlchemyError as exc:
                result.failed += 1
                logger.error("Skipping %s for search %s: %s", record.url, search_id, exc)
                continue

            if outcome.created:
                result.created += 1
            else:
                result.updated += 1
            if outcome.price_recorded:
                result.price_points += 1
            if outcome.price_drop:
                result.price_drops.append(outcome.price_drop)
            if outcome.new_listing:
                result.new_listings.append(outcome.new_listing)
            if outcome.sold:
                result.sold_alerts.append(outcome.sold)

        logger.info(
            "Reconciled search %s: %d created, %d updated, %d discarded, %d duplicates, %d failed",
            search_id,
            result.created,
            result.updated,
            result.discarded,
            result.duplicates,
            result.failed,
        )
        return result

    def _reconcile_record(
        self,
        session: Session,
        search_id: UUID,
        record: ScrapedRecord,
        search_make: str,
        search_model: str,
        observed_at: datetime,
    ) -> _RecordOutcome:
        vin = normalize_vin(record.vin)

        listing = session.execute(
            select(models.Listing).where(
                models.Listing.search_id == search_id,
                models.Listing.url == record.url,
            )
        ).scalar_one_or_none()

        if listing is not None:
            if vin:
                upgrade_vin(session, listing, vin)
            outcome = self._apply_update(session, listing, record, observed_at)
            if vin:
                detect_cross_listings(session, listing.vehicle_id)
            return outcome

        vehicle_id = resolve_vehicle(session, record, search_make, search_model)
        listing = session.execute(
            select(models.Listing).where(
                models.Listing.search_id == search_id,
                models.Listing.vehicle_id == vehicle_id,
                models.Listing.source_site == record.source_site,
            )
        ).scalar_one_or_none()

        if listing is not None:
            # the site moved the listing; follow it so delisting sees the new URL
            listing.url = record.url
            outcome = self._apply_update(session, listing, record, observed_at)
        else:
            outcome = self._insert_listing(session, search_id, vehicle_id, record, observed_at)

        if vin:
            detect_cross_listings(session, vehicle_id)
        return outcome

    def _apply_update(
        self,
        session: Session,
        listing: models.Listing,
        record: ScrapedRecord,
        observed_at: datetime,
    ) -> _RecordOutcome:
        outcome = _RecordOutcome()
        old_price = listing.current_price
        prior_status = listing.status
        new_price = record.price_cents

        listing.last_seen = observed_at
        listing.current_price = new_price
        listing.title = record.title or listing.title
        listing.location = record.location or listing.location
        listing.image_url = record.image_url or listing.image_url

        sold_now = False
        if record.status == "sold" and prior_status != "sold":
            sale_price = record.sale_price or new_price
            listing.status = "sold"
            listing.sale_price = sale_price
            sold_now = True
            outcome.sold = SoldAlert(
                title=record.title,
                sale_price=sale_price,
                source_site=record.source_site,
                url=record.url,
            )
        elif prior_status == "delisted" and record.status == "active":
            logger.info("Listing %s is back on %s; reactivating", listing.id, listing.source_site)
            listing.status = "active"

        if not sold_now and old_price and new_price < old_price:
            outcome.price_drop = PriceDropAlert(
                listing_title=record.title,
                old_price=old_price,
                new_price=new_price,
                drop_pct=compute_drop_pct(old_price, new_price),
                url=record.url,
            )

        session.flush()
        outcome.price_recorded = record_price(session, listing.id, new_price, recorded_at=observed_at)
        return outcome

    def _insert_listing(
        self,
        session: Session,
        search_id: UUID,
        vehicle_id: UUID,
        record: ScrapedRecord,
        observed_at: datetime,
    ) -> _RecordOutcome:
        sold = record.status == "sold"
        listing = models.Listing(
            vehicle_id=vehicle_id,
            search_id=search_id,
            source_site=record.source_site,
            url=record.url,
            title=record.title,
            location=record.location,
            image_url=record.image_url,
            current_price=record.price_cents,
            sale_price=record.sale_price if sold else None,
            status="sold" if sold else "active",
            first_seen=observed_at,
            last_seen=observed_at,
        )
        session.add(listing)
        session.flush()
        recorded = record_price(session, listing.id, record.price_cents, recorded_at=observed_at)
        return _RecordOutcome(
            created=True,
            price_recorded=recorded,
            new_listing=NewListingAlert(
                title=record.title,
                price=record.price_cents,
                source_site=record.source_site,
                url=record.url,
            ),
        )
