"""Vehicle identity resolution for scraped records."""

from __future__ import annotations

import logging
import uuid
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.adapters._common import normalize_vin, parse_year
from backend.app.adapters.types import ScrapedRecord
from backend.app.db import models

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "UNKNOWN-"


def make_placeholder_vin() -> str:
    # the hyphen keeps placeholders outside the VIN alphabet
    return f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex}"


def is_placeholder_vin(vin: Optional[str]) -> bool:
    return normalize_vin(vin) is None


def resolve_vehicle(
    session: Session,
    record: ScrapedRecord,
    search_make: str,
    search_model: str,
) -> UUID:
    """Return the id of the Vehicle a record describes, creating it when unseen."""
    vin = normalize_vin(record.vin)
    if vin:
        existing = session.execute(
            select(models.Vehicle.id).where(models.Vehicle.vin == vin)
        ).scalar_one_or_none()
        if existing is not None:
            return existing
        vehicle = models.Vehicle(
            vin=vin,
            make=search_make,
            model=search_model,
            year=parse_year(record.title),
            mileage=record.mileage,
        )
    else:
        vehicle = models.Vehicle(
            vin=make_placeholder_vin(),
            make=search_make,
            model=search_model,
        )
    session.add(vehicle)
    session.flush()
    return vehicle.id


def upgrade_vin(session: Session, listing: models.Listing, vin: Optional[str]) -> bool:
    """Give a placeholder vehicle the real VIN a later scrape found.

    A real VIN is never replaced. When the VIN already belongs to another vehicle,
    the listing moves to that vehicle unless the search already has a listing for
    it on the same site. Returns True when anything changed.
    """
    real_vin = normalize_vin(vin)
    if real_vin is None:
        return False
    vehicle = session.get(models.Vehicle, listing.vehicle_id)
    if vehicle is None or not is_placeholder_vin(vehicle.vin):
        return False

    owner = session.execute(
        select(models.Vehicle).where(models.Vehicle.vin == real_vin)
    ).scalar_one_or_none()
    if owner is None:
        logger.info("Upgrading vehicle %s VIN %s -> %s", vehicle.id, vehicle.vin, real_vin)
        vehicle.vin = real_vin
        if vehicle.year is None:
            vehicle.year = parse_year(listing.title or "")
        session.flush()
        return True

    conflict = session.execute(
        select(models.Listing.id).where(
            models.Listing.search_id == listing.search_id,
            models.Listing.vehicle_id == owner.id,
            models.Listing.source_site == listing.source_site,
        )
    ).scalar_one_or_none()
    if conflict is not None:
        logger.warning(
            "VIN %s already tracked for search %s on %s; leaving listing %s on placeholder",
            real_vin,
            listing.search_id,
            listing.source_site,
            listing.id,
        )
        return False

    logger.info("Relinking listing %s to existing vehicle %s (VIN %s)", listing.id, owner.id, real_vin)
    listing.vehicle_id = owner.id
    session.flush()
    return True
