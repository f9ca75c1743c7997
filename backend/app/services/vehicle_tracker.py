from __future__ import annotations

import logging
from typing import Iterable, List
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db import models

logger = logging.getLogger(__name__)

CROSS_LISTING_CANDIDATE_STATUSES = ("active", "cross_listed")


def detect_delisted(session: Session, search_id: UUID, found_urls: Iterable[str]) -> List[UUID]:
    """Mark active listings of a search that this run did not see as delisted.

    Listings that are sold, cross-listed or already delisted are left alone.
    """
    found = set(found_urls)
    listings = session.execute(
        select(models.Listing).where(
            models.Listing.search_id == search_id,
            models.Listing.status == "active",
        )
    ).scalars().all()

    delisted: List[UUID] = []
    for listing in listings:
        if listing.url in found:
            continue
        listing.status = "delisted"
        delisted.append(listing.id)
        logger.info("Marked listing %s as delisted", listing.id)
    session.flush()
    return delisted


def detect_cross_listings(session: Session, vehicle_id: UUID) -> int:
    """Mark a vehicle's live listings cross_listed once they span several sites.

    Only ever adds listings to cross_listed. Returns how many changed status.
    """
    listings = session.execute(
        select(models.Listing).where(
            models.Listing.vehicle_id == vehicle_id,
            models.Listing.status.in_(CROSS_LISTING_CANDIDATE_STATUSES),
        )
    ).scalars().all()
    if len(listings) <= 1:
        return 0

    sites = {listing.source_site for listing in listings}
    if len(sites) <= 1:
        return 0

    changed = 0
    for listing in listings:
        if listing.status != "cross_listed":
            listing.status = "cross_listed"
            changed += 1
    session.flush()
    if changed:
        logger.info("Marked %d listings as cross-listed for vehicle %s", changed, vehicle_id)
    return changed
