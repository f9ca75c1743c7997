from __future__ import annotations

import uuid
from typing import Callable

import pytest

from backend.app.adapters.types import ScrapedRecord
from backend.app.db import models
from backend.app.db.session import Database


@pytest.fixture
def database():
    db = Database("sqlite+pysqlite:///:memory:")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def make_search(database) -> Callable[..., uuid.UUID]:
    def _make(**overrides) -> uuid.UUID:
        fields = {
            "make": "Porsche",
            "model": "911",
            "year_min": 1990,
            "year_max": 1998,
            "is_active": True,
        }
        fields.update(overrides)
        with database.session_scope() as session:
            search = models.SavedSearch(**fields)
            session.add(search)
            session.flush()
            return search.id

    return _make


@pytest.fixture
def make_record() -> Callable[..., ScrapedRecord]:
    def _make(url: str = "https://bringatrailer.com/listing/u1", **overrides) -> ScrapedRecord:
        fields = {
            "title": "1995 Porsche 911 Carrera",
            "price_cents": 1_000_000,
            "url": url,
            "source_site": "bat",
            "location": "Austin, TX",
        }
        fields.update(overrides)
        return ScrapedRecord(**fields)

    return _make


@pytest.fixture
def add_listing(database) -> Callable[..., uuid.UUID]:
    """Insert a vehicle (by VIN) and a listing row directly, bypassing reconciliation."""

    def _add(search_id, *, url, source_site="bat", status="active", price=1_000_000, vin=None) -> uuid.UUID:
        with database.session_scope() as session:
            vehicle = None
            if vin:
                vehicle = session.query(models.Vehicle).filter_by(vin=vin).one_or_none()
            if vehicle is None:
                vehicle = models.Vehicle(vin=vin or f"UNKNOWN-{uuid.uuid4().hex}", make="Porsche", model="911")
                session.add(vehicle)
                session.flush()
            listing = models.Listing(
                vehicle_id=vehicle.id,
                search_id=search_id,
                source_site=source_site,
                url=url,
                current_price=price,
                status=status,
            )
            session.add(listing)
            session.flush()
            return listing.id

    return _add
