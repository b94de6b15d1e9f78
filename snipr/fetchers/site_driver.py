"""
Update driver over pluggable ``AuctionSite`` scrapers.

Each record names its site code; the driver fetches a ``BidSnapshot`` for
the record's URL and copies it onto the write-borrowed record. HTTP 429 and
503 responses get one retry after a randomized backoff; anything else is
raised for the pipeline to log and retry on the next tick.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Dict, Mapping, Optional, Type

import httpx

from snipr.core import AuctionSite, BidSnapshot, UpdateDriver
from snipr.records import ListingRecord
from snipr.settings import Settings

log = logging.getLogger("snipr.fetchers")

RETRYABLE_STATUS = (429, 503)

# site code -> scraper class; scrapers register themselves here
SCRAPERS: Dict[str, Type[AuctionSite]] = {}


class SiteDriver(UpdateDriver):
    def __init__(self, settings: Settings, sites: Optional[Mapping[str, AuctionSite]] = None):
        self._settings = settings
        self._sites = {code.lower(): site for code, site in (sites or {}).items()}

    def register(self, code: str, site: AuctionSite) -> None:
        self._sites[code.lower()] = site

    def _site_for(self, record: ListingRecord) -> AuctionSite:
        try:
            return self._sites[record.site.lower()]
        except KeyError:
            raise LookupError(f"No scraper registered for site {record.site!r}") from None

    async def _fetch(self, site: AuctionSite, url: str) -> BidSnapshot:
        try:
            return await site.fetch(
                url,
                headers=self._settings.random_headers(),
                proxy=self._settings.random_proxy(),
            )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code not in RETRYABLE_STATUS:
                raise
            back = self._settings.network.retry_backoff_seconds
            log.warning("%s failed: %s; retrying once", url, exc)
            await asyncio.sleep(back + random.uniform(0, back))
        return await site.fetch(
            url,
            headers=self._settings.random_headers(),
            proxy=self._settings.random_proxy(),
        )

    async def refresh(self, record: ListingRecord) -> None:
        snap = await self._fetch(self._site_for(record), record.url)
        if snap.item_title:
            record.title = snap.item_title
        record.current_price = snap.current_price
        record.currency = snap.currency
        record.total_bids = snap.total_bids
        end_time = getattr(snap, "end_time", None)
        if end_time is not None and end_time >= record.created_time:
            record.end_time = end_time
        log.info("%s → %s %.2f", record.title, record.currency, snap.current_price)

    async def place_snipe(self, record: ListingRecord) -> None:
        if record.snipe is None:
            return
        site = self._site_for(record)
        log.info("Bidding %.2f on %s", record.snipe.amount, record.title)
        await site.place_bid(record.url, record.snipe.amount)
