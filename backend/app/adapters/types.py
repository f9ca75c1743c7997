from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional, Protocol, Sequence

RecordStatus = Literal["active", "sold"]


class AdapterError(Exception):
    """Raised when a source adapter cannot produce records after its retries."""


@dataclass(frozen=True)
class SearchParams:
    make: str
    model: str
    year_min: int
    year_max: int
    trim: Optional[str] = None
    zip_code: Optional[str] = None
    search_radius: Optional[int] = None

    @property
    def query(self) -> str:
        parts = [self.make, self.model]
        if self.trim:
            parts.append(self.trim)
        return " ".join(parts)


@dataclass
class ScrapedRecord:
    title: str
    price_cents: int
    url: str
    source_site: str
    location: str = ""
    vin: Optional[str] = None
    mileage: Optional[int] = None
    status: RecordStatus = "active"
    sale_price: Optional[int] = None
    image_url: Optional[str] = None


class SourceAdapter(Protocol):
    site: str

    async def scrape(self, params: SearchParams) -> List[ScrapedRecord]: ...


@dataclass
class AdapterOutcome:
    """Result of one adapter invocation: either records or an error message."""

    site: str
    records: List[ScrapedRecord] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def listings_found(self) -> int:
        return len(self.records)


def merge_unique_by_url(existing: Sequence[ScrapedRecord], extra: Sequence[ScrapedRecord]) -> List[ScrapedRecord]:
    seen = {record.url for record in existing}
    merged: List[ScrapedRecord] = []
    for record in extra:
        if record.url in seen:
            continue
        seen.add(record.url)
        merged.append(record)
    return merged
