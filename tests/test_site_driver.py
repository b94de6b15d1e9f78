from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import httpx
import pytest

from snipr.core import AuctionSite
from snipr.fetchers.site_driver import SiteDriver
from snipr.records import Snipe
from snipr.settings import NetworkCfg, Settings

from conftest import make_record, run


@dataclass(frozen=True)
class Snap:
    timestamp: datetime
    item_title: str
    lot_number: str
    currency: str
    current_price: float
    total_bids: int
    end_time: Optional[datetime] = None


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://auctions.example/lot")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


class FakeSite(AuctionSite):
    def __init__(self, snap, failures=()):
        self.snap = snap
        self.failures = list(failures)
        self.fetched = []
        self.bids = []

    async def fetch(self, item_url, *, headers=None, proxy=None):
        self.fetched.append((item_url, headers["User-Agent"] if headers else None))
        if self.failures:
            raise self.failures.pop(0)
        return self.snap

    async def place_bid(self, item_url, amount):
        self.bids.append((item_url, amount))


def test_refresh_copies_the_snapshot(clock):
    end = clock.now() + timedelta(minutes=5)
    site = FakeSite(Snap(clock.now(), "Bench grinder", "101", "GBP", 35.0, 6, end))
    driver = SiteDriver(Settings(), {"TEST": site})
    record = make_record("A", clock)

    run(driver.refresh(record))
    assert site.fetched[0][0] == record.url
    assert site.fetched[0][1] is not None
    assert (record.title, record.current_price, record.currency, record.total_bids) == (
        "Bench grinder", 35.0, "GBP", 6,
    )
    assert record.end_time == end


def test_unknown_site_is_an_error(clock):
    driver = SiteDriver(Settings())
    with pytest.raises(LookupError):
        run(driver.refresh(make_record("A", clock)))


def test_throttled_fetch_backs_off_and_retries_once(clock):
    site = FakeSite(Snap(clock.now(), "Lathe", "7", "USD", 10.0, 1), failures=[_status_error(503)])
    driver = SiteDriver(Settings(network=NetworkCfg(retry_backoff_seconds=0)), {"test": site})
    record = make_record("A", clock)

    run(driver.refresh(record))
    assert len(site.fetched) == 2
    assert record.current_price == 10.0


def test_other_http_errors_propagate(clock):
    site = FakeSite(None, failures=[_status_error(404)])
    driver = SiteDriver(Settings(), {"test": site})
    with pytest.raises(httpx.HTTPStatusError):
        run(driver.refresh(make_record("A", clock)))


def test_place_snipe_bids_the_snipe_amount(clock):
    site = FakeSite(None)
    driver = SiteDriver(Settings(), {"test": site})
    record = make_record("A", clock, snipe=Snipe(amount=99.5, lead_ms=5000))
    run(driver.place_snipe(record))
    assert site.bids == [(record.url, 99.5)]


def test_sites_without_bidding_refuse_snipes(clock):
    class ReadOnlySite(AuctionSite):
        async def fetch(self, item_url, *, headers=None, proxy=None):
            raise AssertionError("not used")

    driver = SiteDriver(Settings())
    driver.register("test", ReadOnlySite())
    record = make_record("A", clock, snipe=Snipe(amount=1.0, lead_ms=5000))
    with pytest.raises(NotImplementedError):
        run(driver.place_snipe(record))
