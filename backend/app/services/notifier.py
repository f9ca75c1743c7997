from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from html import escape
from typing import Any, Dict, List, Optional, Protocol, Sequence
from uuid import UUID

import httpx
from sqlalchemy import select

from backend.app.core.settings import settings
from backend.app.db import models
from backend.app.db.session import Database
from backend.app.services.reconciler import NewListingAlert, PriceDropAlert, SoldAlert

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailDeliveryError(Exception):
    """Raised when the email provider rejects or fails a send."""


class EmailSink(Protocol):
    async def send(self, to: str, subject: str, html: str) -> None: ...


class AccountDirectory(Protocol):
    def email_for(self, user_id: UUID) -> Optional[str]: ...


class ResendEmailSink:
    """Sends mail through the Resend HTTP API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        sender: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.resend_api_key
        self.sender = sender or settings.email_from
        self.timeout = timeout
        self._transport = transport

    async def send(self, to: str, subject: str, html: str) -> None:
        if not self.api_key:
            raise EmailDeliveryError("RESEND_API_KEY is not configured")
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        client_kwargs: Dict[str, Any] = {"timeout": self.timeout}
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                response = await client.post(RESEND_API_URL, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(str(exc)) from exc


class DatabaseAccountDirectory:
    """Looks up a user's registered address in the accounts table."""

    def __init__(self, database: Database):
        self.database = database

    def email_for(self, user_id: UUID) -> Optional[str]:
        with self.database.session_scope() as session:
            return session.execute(
                select(models.UserAccount.email).where(models.UserAccount.id == user_id)
            ).scalar_one_or_none()


@dataclass
class AlertBundle:
    price_drops: Sequence[PriceDropAlert] = ()
    new_listings: Sequence[NewListingAlert] = ()
    sold_alerts: Sequence[SoldAlert] = ()


@dataclass
class UserAlerts:
    email: str
    search_label: str
    price_drops: List[PriceDropAlert] = field(default_factory=list)
    new_listings: List[NewListingAlert] = field(default_factory=list)
    sold_alerts: List[SoldAlert] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.price_drops) + len(self.new_listings) + len(self.sold_alerts)


def format_price(cents: int) -> str:
    dollars = (Decimal(cents) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return f"${int(dollars):,}"


def search_label(search: models.SavedSearch) -> str:
    return f"{search.make} {search.model} ({search.year_min}-{search.year_max})"


def filter_alerts(setting: models.NotificationSetting, alerts: AlertBundle, label: str = "") -> UserAlerts:
    threshold = setting.price_drop_pct if setting.price_drop_pct is not None else 5.0
    return UserAlerts(
        email=setting.email or "",
        search_label=label,
        price_drops=[a for a in alerts.price_drops if a.drop_pct >= threshold] if setting.price_drop_enabled else [],
        new_listings=list(alerts.new_listings) if setting.new_listing_enabled else [],
        sold_alerts=list(alerts.sold_alerts) if setting.sold_alert_enabled else [],
    )


def render_email(alerts: UserAlerts) -> str:
    parts = [f"<h2>Car Finder &amp; Tracker: {escape(alerts.search_label)}</h2>"]

    if alerts.new_listings:
        parts.append(f"<h3>New Listings ({len(alerts.new_listings)})</h3><ul>")
        for item in alerts.new_listings:
            parts.append(
                f'<li><a href="{escape(item.url)}">{escape(item.title)}</a> - '
                f"{format_price(item.price)} on {escape(item.source_site)}</li>"
            )
        parts.append("</ul>")

    if alerts.price_drops:
        parts.append(f"<h3>Price Drops ({len(alerts.price_drops)})</h3><ul>")
        for drop in alerts.price_drops:
            parts.append(
                f'<li><a href="{escape(drop.url)}">{escape(drop.listing_title)}</a>: '
                f"{format_price(drop.old_price)} &rarr; {format_price(drop.new_price)} (-{drop.drop_pct:.1f}%)</li>"
            )
        parts.append("</ul>")

    if alerts.sold_alerts:
        parts.append(f"<h3>Sold ({len(alerts.sold_alerts)})</h3><ul>")
        for sold in alerts.sold_alerts:
            parts.append(
                f'<li><a href="{escape(sold.url)}">{escape(sold.title)}</a> sold for '
                f"{format_price(sold.sale_price)} on {escape(sold.source_site)}</li>"
            )
        parts.append("</ul>")

    return "".join(parts)


class NotificationTrigger:
    def __init__(
        self,
        database: Database,
        sink: Optional[EmailSink] = None,
        directory: Optional[AccountDirectory] = None,
    ):
        self.database = database
        self.sink = sink or ResendEmailSink()
        self.directory = directory or DatabaseAccountDirectory(database)

    async def send_notifications(self, search_id: UUID, alerts: AlertBundle) -> int:
        """Send one digest per subscriber of a search. Returns the number sent."""
        with self.database.session_scope() as session:
            search = session.get(models.SavedSearch, search_id)
            if search is None:
                return 0
            label = search_label(search)
            subscriptions = session.execute(
                select(models.NotificationSetting).where(models.NotificationSetting.search_id == search_id)
            ).scalars().all()

        sent = 0
        for setting in subscriptions:
            user_alerts = filter_alerts(setting, alerts, label)
            if user_alerts.total == 0:
                continue

            if not user_alerts.email:
                user_alerts.email = self.directory.email_for(setting.user_id) or ""
            if not user_alerts.email:
                logger.warning("No email address for user %s; skipping notification", setting.user_id)
                continue

            subject = f"Car Tracker: {user_alerts.search_label} - {user_alerts.total} updates"
            try:
                await self.sink.send(user_alerts.email, subject, render_email(user_alerts))
            except Exception as exc:
                logger.error("Failed to send email to %s: %s", user_alerts.email, exc)
                continue
            sent += 1
            logger.info("Sent %d alerts to %s", user_alerts.total, user_alerts.email)
        return sent
