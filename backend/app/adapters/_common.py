"""Common helpers for parsing marketplace search-result pages."""

from __future__ import annotations

import itertools
import random
import re
from datetime import datetime, timedelta, timezone
from html import unescape
from typing import Iterable, List, Literal, Optional, Sequence

VIN_RE = re.compile(r"\b[A-HJ-NPR-Z0-9]{17}\b")
VIN_EXACT_RE = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")
YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
PRICE_RE = re.compile(r"\$\s*([0-9]{1,3}(?:,[0-9]{3})+|[0-9]+)")
MILEAGE_RE = re.compile(r"([0-9]{1,3}(?:,[0-9]{3})*|[0-9]+)\s*(k)?\s*(?:miles|mi\b)", re.IGNORECASE)
SOLD_PRICE_RE = re.compile(r"sold\s+(?:for|after)\s+(?:usd\s+)?\$\s*([\d,]+)")
BID_TO_RE = re.compile(r"bid\s+to\s+(?:usd\s+)?\$")
TAG_RE = re.compile(r"<[^>]+>")
WS_RE = re.compile(r"\s+")
DATA_VIN_RE = re.compile(r'data-vin="([^"]+)"', re.IGNORECASE)
VIN_ELEMENT_RE = re.compile(
    r'<(\w+)[^>]*\b(?:class|id|data-testid)="[^"]*vin[^"]*"[^>]*>(.*?)</\1>',
    re.IGNORECASE | re.DOTALL,
)

MONTH_DAY_YEAR_RE = re.compile(
    r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)\w*\.?\s+(\d{1,2}),?\s+(\d{4})",
    re.IGNORECASE,
)
MDY_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
RELATIVE_RE = re.compile(r"(\d+)\s+(day|week|month|year)s?\s+ago", re.IGNORECASE)
MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
)

AuctionResult = Literal["active", "sold", "no-sale"]


def random_user_agent() -> str:
    return random.choice(USER_AGENTS)


class ProxyRotator:
    """Round-robin over configured proxy URLs; yields None when none are set."""

    def __init__(self, proxies: Sequence[str] = ()):
        self._proxies = [p for p in proxies if p]
        self._cycle = itertools.cycle(self._proxies) if self._proxies else None

    def next(self) -> Optional[str]:
        if self._cycle is None:
            return None
        return next(self._cycle)


def strip_tags(raw: str) -> str:
    return WS_RE.sub(" ", unescape(TAG_RE.sub(" ", raw))).strip()


def normalize_vin(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    candidate = value.strip().upper()
    return candidate if VIN_EXACT_RE.match(candidate) else None


def extract_vin(text: str) -> Optional[str]:
    match = VIN_RE.search(text.upper())
    return match.group(0) if match else None


def find_vin_in_page(html: str) -> Optional[str]:
    """Look for a VIN on a listing detail page.

    Tries a data-vin attribute, then elements labelled as a VIN, then any
    upper-case 17 character token in the page.
    """
    for match in DATA_VIN_RE.finditer(html):
        vin = normalize_vin(match.group(1))
        if vin:
            return vin
    for match in VIN_ELEMENT_RE.finditer(html):
        vin = extract_vin(strip_tags(match.group(2)))
        if vin:
            return vin
    match = VIN_RE.search(html)
    return match.group(0) if match else None


def parse_year(title: str) -> Optional[int]:
    match = YEAR_RE.search(title or "")
    return int(match.group(0)) if match else None


def parse_price_cents(text: str) -> int:
    """First dollar amount in ``text`` in cents, or 0 when none is found."""
    match = PRICE_RE.search(text or "")
    if not match:
        return 0
    return int(match.group(1).replace(",", "")) * 100


def parse_mileage(text: str) -> Optional[int]:
    match = MILEAGE_RE.search(text or "")
    if not match:
        return None
    value = int(match.group(1).replace(",", ""))
    if match.group(2):
        value *= 1000
    return value


def year_in_range(title: str, year_min: int, year_max: int) -> bool:
    year = parse_year(title)
    if year is None:
        return True
    return year_min <= year <= year_max


def get_auction_result(text: str) -> AuctionResult:
    lower = text.lower()
    if "no sale" in lower or "reserve not met" in lower:
        return "no-sale"
    if SOLD_PRICE_RE.search(lower):
        return "sold"
    # bid-to / ended without a sale marker usually means reserve not met
    if BID_TO_RE.search(lower) or "final bid" in lower or "auction ended" in lower:
        return "no-sale"
    return "active"


def extract_sale_price(text: str) -> int:
    match = SOLD_PRICE_RE.search(text.lower())
    if not match:
        return 0
    return int(match.group(1).replace(",", "")) * 100


def _subtract_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, 28)
    return moment.replace(year=year, month=month, day=day)


def is_sold_within_three_months(text: str, now: Optional[datetime] = None) -> bool:
    """True when the sold date in ``text`` is recent, or when no date is present."""
    now = now or datetime.now(timezone.utc)
    cutoff = _subtract_months(now, 3)

    match = MONTH_DAY_YEAR_RE.search(text)
    if match:
        month = MONTHS.index(match.group(1).lower()[:3]) + 1
        try:
            sold = datetime(int(match.group(3)), month, int(match.group(2)), tzinfo=timezone.utc)
        except ValueError:
            sold = None
        if sold is not None:
            return sold >= cutoff

    match = MDY_RE.search(text)
    if match:
        try:
            sold = datetime(int(match.group(3)), int(match.group(1)), int(match.group(2)), tzinfo=timezone.utc)
        except ValueError:
            sold = None
        if sold is not None:
            return sold >= cutoff

    match = RELATIVE_RE.search(text)
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        if unit == "day":
            sold = now - timedelta(days=amount)
        elif unit == "week":
            sold = now - timedelta(weeks=amount)
        elif unit == "month":
            sold = _subtract_months(now, amount)
        else:
            sold = _subtract_months(now, amount * 12)
        return sold >= cutoff

    return True


def first_group(patterns: Iterable[re.Pattern[str]], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


def split_cards(html: str, card_pattern: re.Pattern[str]) -> List[str]:
    return [match.group(0) for match in card_pattern.finditer(html or "")]
