from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence
from urllib.parse import urlparse

import httpx

from backend.app.adapters.registry import SITE_DOMAINS
from backend.app.adapters.types import AdapterOutcome, ScrapedRecord, SearchParams
from backend.app.core.rate_limit import TokenBucket
from backend.app.core.retry import with_retry
from backend.app.core.settings import settings

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"
GEMINI_MODEL = "gemini-2.0-flash"
# free tier allows 15 RPM
GEMINI_RPM = 13
RETRYABLE_STATUS = {429, 500, 502, 503, 504}
JSON_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


class FallbackSearchError(Exception):
    """Raised when the AI-assisted search fails for a site."""


class FallbackRetryableError(FallbackSearchError):
    """Raised for rate limits and transient provider errors."""


class AsyncTransport(Protocol):
    async def post(
        self,
        path: str,
        json: Dict[str, Any],
        params: Dict[str, str],
        timeout: float,
    ) -> httpx.Response: ...

    async def close(self) -> None: ...


class HttpxTransport:
    """httpx-based transport with connection pooling."""

    def __init__(self, base_url: str):
        self._client = httpx.AsyncClient(base_url=base_url, timeout=None)

    async def post(
        self,
        path: str,
        json: Dict[str, Any],
        params: Dict[str, str],
        timeout: float,
    ) -> httpx.Response:
        return await self._client.post(path, json=json, params=params, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()


def build_prompt(params: SearchParams, domain: str) -> str:
    trim = f" {params.trim}" if params.trim else ""
    return "\n".join(
        [
            f"Find {params.year_min} to {params.year_max} {params.make} {params.model}{trim} car listings "
            f"currently for sale on {domain}.",
            "",
            "For each listing you find, provide a JSON array of objects with these fields:",
            "- title: the listing title",
            "- price: number in USD (no $ sign, no commas, just the number)",
            f"- url: the full URL to the individual listing page on {domain}",
            '- status: "active" or "sold"',
            "- imageUrl: the main image URL if visible, otherwise null",
            "- location: city/state if visible, otherwise empty string",
            "",
            "Return ONLY a valid JSON array. If no listings are found, return [].",
            "Do not include markdown formatting or code fences, just raw JSON.",
        ]
    )


def _price_cents(value: Any) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        dollars = float(value)
    else:
        try:
            dollars = float(str(value or "").replace(",", "").replace("$", "").strip())
        except ValueError:
            return 0
    if dollars != dollars or dollars <= 0:  # NaN
        return 0
    return int(round(dollars * 100))


def parse_listings(text: str, params: SearchParams, site: str) -> List[ScrapedRecord]:
    """Turn the model's reply into records, keeping only plausible listing URLs on ``site``."""
    domain = SITE_DOMAINS[site]
    match = JSON_ARRAY_RE.search(text or "")
    if not match:
        logger.info("[fallback] no JSON array in reply for %s", domain)
        return []
    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.info("[fallback] unparseable JSON for %s", domain)
        return []
    if not isinstance(items, list):
        return []

    records: List[ScrapedRecord] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if not isinstance(url, str) or domain not in url:
            continue
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            continue
        price = _price_cents(item.get("price"))
        if price <= 0:
            continue
        image_url = item.get("imageUrl")
        records.append(
            ScrapedRecord(
                title=str(item.get("title") or f"{params.make} {params.model}"),
                price_cents=price,
                url=url,
                source_site=site,
                location=str(item.get("location") or ""),
                status="sold" if item.get("status") == "sold" else "active",
                image_url=image_url if isinstance(image_url, str) else None,
            )
        )
    return records


class GeminiFallbackSearcher:
    """Grounded web search through Gemini for sites whose adapter came back empty."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: str = GEMINI_MODEL,
        timeout: float = 60.0,
        max_attempts: int = 2,
        transport: Optional[AsyncTransport] = None,
        bucket: Optional[TokenBucket] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.api_key = api_key or settings.gemini_api_key
        self.model = model
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self._transport = transport or HttpxTransport(GEMINI_BASE_URL)
        self._owns_transport = transport is None
        self.bucket = bucket or TokenBucket(GEMINI_RPM, capacity=1)
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.close()

    async def search_sites(self, params: SearchParams, sites: Sequence[str]) -> List[AdapterOutcome]:
        outcomes: List[AdapterOutcome] = []
        for site in sites:
            if site not in SITE_DOMAINS:
                continue
            start = time.monotonic()
            try:
                await self.bucket.acquire(1)
                records = await self.search_site(params, site)
                outcome = AdapterOutcome(site=site, records=records)
            except Exception as exc:
                logger.error("[fallback] error searching %s: %s", site, exc)
                outcome = AdapterOutcome(site=site, error=str(exc) or exc.__class__.__name__)
            outcome.duration_ms = int((time.monotonic() - start) * 1000)
            outcomes.append(outcome)
        return outcomes

    async def search_site(self, params: SearchParams, site: str) -> List[ScrapedRecord]:
        domain = SITE_DOMAINS[site]
        logger.info("[fallback] searching %s for %s %s", domain, params.make, params.model)
        retry_kwargs: Dict[str, Any] = {"retry_on": (FallbackRetryableError,), "label": f"fallback:{site}"}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep
        body = await with_retry(
            lambda: self._generate(build_prompt(params, domain)),
            self.max_attempts,
            **retry_kwargs,
        )
        records = parse_listings(self._reply_text(body), params, site)
        logger.info("[fallback] found %d listings on %s", len(records), domain)
        return records

    async def _generate(self, prompt: str) -> Dict[str, Any]:
        if not self.api_key:
            raise FallbackSearchError("GEMINI_API_KEY is not configured")
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "tools": [{"google_search": {}}],
        }
        path = f"/v1beta/models/{self.model}:generateContent"
        try:
            response = await self._transport.post(path, json=payload, params={"key": self.api_key}, timeout=self.timeout)
        except httpx.RequestError as exc:
            raise FallbackRetryableError(str(exc)) from exc

        if response.status_code in RETRYABLE_STATUS:
            raise FallbackRetryableError(f"Gemini returned {response.status_code}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FallbackSearchError(str(exc)) from exc
        try:
            return response.json()
        except ValueError as exc:
            raise FallbackSearchError("Invalid JSON from Gemini") from exc

    @staticmethod
    def _reply_text(body: Dict[str, Any]) -> str:
        texts: List[str] = []
        for candidate in body.get("candidates") or []:
            content = candidate.get("content") if isinstance(candidate, dict) else None
            for part in (content or {}).get("parts") or []:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    texts.append(part["text"])
            if texts:
                break
        return "".join(texts)
