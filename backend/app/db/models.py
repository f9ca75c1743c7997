import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, Float, Text, DateTime, ForeignKey, UniqueConstraint, Index, JSON, Uuid
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserAccount(Base):
    __tablename__ = "users"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(Text, nullable=False)

class SavedSearch(Base):
    __tablename__ = "saved_searches"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"))
    make = Column(Text, nullable=False)
    model = Column(Text, nullable=False)
    trim = Column(Text)
    year_min = Column(Integer, nullable=False)
    year_max = Column(Integer, nullable=False)
    zip_code = Column(Text)
    search_radius = Column(Integer)
    enabled_sites = Column(JSON)  # null/empty -> every registered adapter
    is_active = Column(Boolean, nullable=False, default=True)
    scrape_status = Column(Text, nullable=False, default="idle")  # idle|running|complete
    scrape_step = Column(Integer, nullable=False, default=0)
    scrape_total_steps = Column(Integer, nullable=False, default=0)
    scrape_current_site = Column(Text)
    scrape_started_at = Column(DateTime(timezone=True))
    last_scraped_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)

class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    vin = Column(String(64), nullable=False, unique=True)  # real VIN or UNKNOWN-<hex>
    make = Column(Text)
    model = Column(Text)
    year = Column(Integer)
    mileage = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

class Listing(Base):
    __tablename__ = "listings"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    vehicle_id = Column(Uuid(as_uuid=True), ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    search_id = Column(Uuid(as_uuid=True), ForeignKey("saved_searches.id", ondelete="CASCADE"), nullable=False)
    source_site = Column(Text, nullable=False)
    url = Column(Text, nullable=False)
    title = Column(Text)
    location = Column(Text)
    image_url = Column(Text)
    current_price = Column(BigInteger, nullable=False)  # cents
    sale_price = Column(BigInteger)
    status = Column(Text, nullable=False, default="active")  # active|sold|delisted|cross_listed
    first_seen = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_seen = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    __table_args__ = (
        UniqueConstraint("search_id", "url", name="uq_listings_search_url"),
        UniqueConstraint("search_id", "vehicle_id", "source_site", name="uq_listings_search_vehicle_site"),
    )

class PriceHistoryEntry(Base):
    __tablename__ = "price_history"
    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    listing_id = Column(Uuid(as_uuid=True), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    price = Column(BigInteger, nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

Index("idx_price_history_listing_recorded", PriceHistoryEntry.listing_id, PriceHistoryEntry.recorded_at)

class ScrapeLogEntry(Base):
    __tablename__ = "scrape_log"
    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    search_id = Column(Uuid(as_uuid=True), ForeignKey("saved_searches.id", ondelete="CASCADE"), nullable=False)
    source_site = Column(Text, nullable=False)
    status = Column(Text, nullable=False)  # success|error
    listings_found = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    duration_ms = Column(Integer)
    scraped_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

class NotificationSetting(Base):
    __tablename__ = "notification_settings"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    search_id = Column(Uuid(as_uuid=True), ForeignKey("saved_searches.id", ondelete="CASCADE"), nullable=False)
    price_drop_enabled = Column(Boolean, nullable=False, default=True)
    price_drop_pct = Column(Float, nullable=False, default=5.0)
    new_listing_enabled = Column(Boolean, nullable=False, default=True)
    sold_alert_enabled = Column(Boolean, nullable=False, default=True)
    email = Column(Text)
    __table_args__ = (UniqueConstraint("user_id", "search_id"),)
