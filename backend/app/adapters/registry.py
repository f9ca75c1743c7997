"""Statically declared marketplace adapters, in the order a search runs them."""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, urlencode

from backend.app.adapters._common import ProxyRotator
from backend.app.adapters.html_adapter import HtmlSearchAdapter, SiteConfig
from backend.app.adapters.types import SearchParams, SourceAdapter


def _slug(value: str) -> str:
    return re.sub(r"\s+", "-", value.strip().lower())


def _card(class_tokens: str) -> re.Pattern[str]:
    # a card runs from its opening tag to the next card's opening tag
    opening = r'<(?:div|article|li)[^>]+class="(?:[^"]*\s)?(?:%s)(?:\s[^"]*)?"' % class_tokens
    return re.compile(
        opening + r"[^>]*>.*?(?=" + opening + r"|\Z)",
        re.IGNORECASE | re.DOTALL,
    )


def _link(path_fragment: str) -> re.Pattern[str]:
    return re.compile(
        r'<a[^>]+href="(?P<href>[^"]*(?:%s)[^"]*)"[^>]*>(?P<title>.*?)</a>' % path_fragment,
        re.IGNORECASE | re.DOTALL,
    )


def _autotrader_url(params: SearchParams) -> str:
    query = {
        "startYear": params.year_min,
        "endYear": params.year_max,
        "isNewSearch": "true",
        "sortBy": "relevance",
        "numRecords": 25,
    }
    if params.zip_code:
        query["zip"] = params.zip_code
    if params.search_radius:
        query["searchRadius"] = params.search_radius
    return (
        f"https://www.autotrader.com/cars-for-sale/all-cars/{_slug(params.make)}/{_slug(params.model)}?"
        + urlencode(query)
    )


SITE_CONFIGS: Tuple[SiteConfig, ...] = (
    SiteConfig(
        site="bat",
        base_url="https://bringatrailer.com",
        build_search_url=lambda p: f"https://bringatrailer.com/search/?s={quote(p.query)}",
        card_pattern=_card("listing-card|search-result-item"),
        link_pattern=_link("/listing/"),
        auction=True,
    ),
    SiteConfig(
        site="carsandbids",
        base_url="https://carsandbids.com",
        build_search_url=lambda p: f"https://carsandbids.com/search?q={quote(p.query)}",
        card_pattern=_card("auction-card|auction-item|search-result"),
        link_pattern=_link("/auctions/"),
        auction=True,
    ),
    SiteConfig(
        site="autotrader",
        base_url="https://www.autotrader.com",
        build_search_url=_autotrader_url,
        card_pattern=_card("inventoryListing|inventory-listing"),
        link_pattern=_link("/cars-for-sale/vehicle"),
    ),
    SiteConfig(
        site="hemmings",
        base_url="https://www.hemmings.com",
        build_search_url=lambda p: f"https://www.hemmings.com/classifieds/cars/for-sale?q={quote(p.query)}",
        card_pattern=_card("listing-item|ListingCard|vehicle-card"),
        link_pattern=_link("/classifieds/cars/|/listing/"),
    ),
    SiteConfig(
        site="pcarmarket",
        base_url="https://www.pcarmarket.com",
        build_search_url=lambda p: f"https://www.pcarmarket.com/search/?q={quote(p.query)}",
        card_pattern=_card("auction"),
        link_pattern=_link("/auction/|/listing/"),
        auction=True,
    ),
    SiteConfig(
        site="hagerty",
        base_url="https://www.hagerty.com",
        build_search_url=lambda p: (
            f"https://www.hagerty.com/marketplace/search?q={quote(p.query)}&type=auctions&forSale=true"
        ),
        card_pattern=_card("auction-card|listing-card|VehicleCard|vehicle-card"),
        link_pattern=_link("/marketplace/"),
        auction=True,
    ),
    SiteConfig(
        site="autohunter",
        base_url="https://www.autohunter.com",
        build_search_url=lambda p: f"https://www.autohunter.com/search?q={quote(p.query)}",
        card_pattern=_card("auction-item|listing-card|vehicle-listing"),
        link_pattern=_link("/auction/|/lot/"),
        auction=True,
    ),
)

SITE_KEYS: Tuple[str, ...] = tuple(config.site for config in SITE_CONFIGS)

SITE_DOMAINS = {
    "bat": "bringatrailer.com",
    "carsandbids": "carsandbids.com",
    "autotrader": "autotrader.com",
    "hemmings": "hemmings.com",
    "pcarmarket": "pcarmarket.com",
    "hagerty": "hagerty.com",
    "autohunter": "autohunter.com",
}

AdapterRegistry = Sequence[Tuple[str, SourceAdapter]]


def build_registry(proxies: Iterable[str] = ()) -> List[Tuple[str, SourceAdapter]]:
    rotator = ProxyRotator(list(proxies))
    return [(config.site, HtmlSearchAdapter(config, proxies=rotator)) for config in SITE_CONFIGS]


def select_adapters(
    registry: AdapterRegistry,
    enabled_sites: Optional[Iterable[str]],
) -> List[Tuple[str, SourceAdapter]]:
    """Adapters enabled for a search, preserving registry order."""
    enabled = set(enabled_sites or ())
    if not enabled:
        return list(registry)
    return [(key, adapter) for key, adapter in registry if key in enabled]
