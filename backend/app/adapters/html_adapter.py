"""Generic search-results adapter driven by a per-site configuration."""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import urljoin

import httpx

from backend.app.adapters._common import (
    ProxyRotator,
    extract_sale_price,
    extract_vin,
    find_vin_in_page,
    first_group,
    get_auction_result,
    is_sold_within_three_months,
    parse_mileage,
    parse_price_cents,
    random_user_agent,
    split_cards,
    strip_tags,
    year_in_range,
)
from backend.app.adapters.types import AdapterError, ScrapedRecord, SearchParams
from backend.app.core.retry import with_retry

logger = logging.getLogger(__name__)

IMG_RE = re.compile(r'<img[^>]+?(?:data-src|src)="([^"]+)"', re.IGNORECASE)
LOCATION_PATTERNS = (
    re.compile(r'class="[^"]*location[^"]*"[^>]*>(.*?)</', re.IGNORECASE | re.DOTALL),
    re.compile(r'class="[^"]*dealer[^"]*"[^>]*>(.*?)</', re.IGNORECASE | re.DOTALL),
)
PRICE_PATTERNS = (
    re.compile(r'class="[^"]*(?:price|bid)[^"]*"[^>]*>(.*?)</', re.IGNORECASE | re.DOTALL),
)

MAX_VIN_EXTRACTIONS = 10
VIN_PAUSE_SECONDS = (1.0, 2.0)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


@dataclass(frozen=True)
class SiteConfig:
    site: str
    base_url: str
    build_search_url: Callable[[SearchParams], str]
    card_pattern: re.Pattern[str]
    link_pattern: re.Pattern[str]
    auction: bool = False
    price_patterns: Sequence[re.Pattern[str]] = field(default_factory=lambda: PRICE_PATTERNS)


class HtmlSearchAdapter:
    """Fetches one search page for a marketplace and parses its listing cards."""

    def __init__(
        self,
        config: SiteConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        proxies: Optional[ProxyRotator] = None,
        timeout: float = 30.0,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        max_vin_extractions: int = MAX_VIN_EXTRACTIONS,
    ):
        self.config = config
        self.site = config.site
        self._transport = transport
        self._proxies = proxies or ProxyRotator()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self.max_vin_extractions = max_vin_extractions

    async def scrape(self, params: SearchParams) -> List[ScrapedRecord]:
        url = self.config.build_search_url(params)
        logger.info("[%s] scraping %s", self.site, url)
        html = await self._fetch(url)
        records = self.parse(html, params)
        logger.info("[%s] parsed %d listings", self.site, len(records))
        await self._extract_vins(records)
        return records

    async def _extract_vins(self, records: List[ScrapedRecord]) -> None:
        """Visit a bounded number of detail pages to fill in missing VINs."""
        missing = [r for r in records if not r.vin][: self.max_vin_extractions]
        if not missing:
            return
        sleep = self._sleep or asyncio.sleep
        found = 0
        for index, record in enumerate(missing):
            if index:
                await sleep(random.uniform(*VIN_PAUSE_SECONDS))
            try:
                html = await self._fetch(record.url)
            except AdapterError as exc:
                logger.warning("[%s] VIN lookup failed for %s: %s", self.site, record.url, exc)
                continue
            record.vin = find_vin_in_page(html)
            if record.vin:
                found += 1
        logger.info("[%s] found %d VINs on %d detail pages", self.site, found, len(missing))

    async def _fetch(self, url: str) -> str:
        async def _once() -> str:
            client_kwargs: Dict[str, Any] = {"timeout": self.timeout, "follow_redirects": True}
            if self._transport is not None:
                client_kwargs["transport"] = self._transport
            else:
                proxy = self._proxies.next()
                if proxy:
                    client_kwargs["proxy"] = proxy
            headers = {**DEFAULT_HEADERS, "User-Agent": random_user_agent()}
            try:
                async with httpx.AsyncClient(**client_kwargs) as client:
                    response = await client.get(url, headers=headers)
            except httpx.HTTPError as exc:
                raise AdapterError(f"{self.site}: {exc}") from exc
            if response.status_code >= 400:
                raise AdapterError(f"{self.site}: HTTP {response.status_code}")
            return response.text

        retry_kwargs: Dict[str, Any] = {"retry_on": (AdapterError,), "label": self.site}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep
        return await with_retry(_once, self.max_attempts, self.base_delay, **retry_kwargs)

    def parse(self, html: str, params: SearchParams) -> List[ScrapedRecord]:
        records: List[ScrapedRecord] = []
        seen_urls = set()
        for card in split_cards(html, self.config.card_pattern):
            record = self._parse_card(card, params)
            if record is None or record.url in seen_urls:
                continue
            seen_urls.add(record.url)
            records.append(record)
        return records

    def _parse_card(self, card: str, params: SearchParams) -> Optional[ScrapedRecord]:
        link = self.config.link_pattern.search(card)
        if not link:
            return None
        href = link.group("href")
        title = strip_tags(link.group("title"))
        if not href or not title:
            return None
        if not year_in_range(title, params.year_min, params.year_max):
            return None

        text = strip_tags(card)
        price_text = first_group(self.config.price_patterns, card) or text
        price_cents = parse_price_cents(strip_tags(price_text))
        status = "active"
        sale_price: Optional[int] = None

        if self.config.auction:
            result = get_auction_result(text)
            if result == "no-sale":
                return None
            if result == "sold":
                if not is_sold_within_three_months(text):
                    return None
                status = "sold"
                sale_price = extract_sale_price(text) or price_cents
                price_cents = sale_price

        image = IMG_RE.search(card)
        location = first_group(LOCATION_PATTERNS, card)
        return ScrapedRecord(
            title=title,
            price_cents=price_cents,
            url=urljoin(self.config.base_url, href),
            source_site=self.site,
            location=strip_tags(location) if location else "",
            vin=extract_vin(text),
            mileage=parse_mileage(text),
            status=status,
            sale_price=sale_price,
            image_url=image.group(1) if image else None,
        )
