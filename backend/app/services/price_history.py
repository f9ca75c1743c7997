from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db import models

logger = logging.getLogger(__name__)


def get_previous_price(session: Session, listing_id: UUID) -> Optional[int]:
    return session.execute(
        select(models.PriceHistoryEntry.price)
        .where(models.PriceHistoryEntry.listing_id == listing_id)
        .order_by(models.PriceHistoryEntry.recorded_at.desc(), models.PriceHistoryEntry.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def record_price(
    session: Session,
    listing_id: UUID,
    price_cents: int,
    *,
    recorded_at: Optional[datetime] = None,
) -> bool:
    """Append a price point unless it repeats the latest one.

    Returns True when a row was written.
    """
    if get_previous_price(session, listing_id) == price_cents:
        return False
    session.add(
        models.PriceHistoryEntry(
            listing_id=listing_id,
            price=price_cents,
            recorded_at=recorded_at or datetime.now(timezone.utc),
        )
    )
    session.flush()
    logger.debug("Recorded price %d for listing %s", price_cents, listing_id)
    return True
