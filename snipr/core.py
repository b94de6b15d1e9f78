from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Optional, Protocol

if TYPE_CHECKING:
    from snipr.records import ListingRecord


class BidSnapshot(Protocol):
    timestamp: datetime
    item_title: str
    lot_number: str
    currency: str
    current_price: float
    total_bids: int
    end_time: Optional[datetime]


class SniprError(Exception):
    """Base class for engine errors."""


class EntryDeletedError(SniprError):
    """Raised when adding an identifier that has a tombstone."""


class DuplicateEntryError(SniprError):
    """Raised when adding an identifier that is already tracked."""


class SnapshotError(SniprError):
    """Raised when a snapshot document is structurally unusable."""


class BidParseError(RuntimeError):
    """Raised when mandatory price data cannot be extracted from a listing."""


class AuctionFinished(Exception):
    """Raised when we decide a lot is done."""


class AuctionSite(ABC):
    """A pluggable scraper/bid reader."""

    @abstractmethod
    async def fetch(
        self,
        item_url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        proxy: Optional[str] = None,
    ) -> BidSnapshot: ...

    async def place_bid(self, item_url: str, amount: float) -> None:
        raise NotImplementedError(f"{type(self).__name__} cannot place bids")

    # Optional: hook for CAPTCHA / auth early-login
    async def warm_up(self) -> None: ...


class UpdateDriver(ABC):
    """What the engine calls to refresh a listing and to fire its snipe.

    ``refresh`` receives a write-borrowed working copy and mutates it in
    place. Anything it raises aborts the commit for that listing.
    """

    @abstractmethod
    async def refresh(self, record: ListingRecord) -> None: ...

    def serialize(self, record: ListingRecord) -> bytes:
        return record.serialized_form

    async def place_snipe(self, record: ListingRecord) -> None:
        raise NotImplementedError(f"{type(self).__name__} cannot snipe")
