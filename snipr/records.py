"""
Listing records: the in-memory state of one tracked auction.

A record renders itself as an ``<auction>`` XML element. The full element
goes into snapshots; the canonical form leaves out the volatile
bookkeeping fields (``last_checked``, ``next_due``, ``update_required``)
and is what the update pipeline diffs to decide whether anything changed.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from snipr.core import SnapshotError


class ListingState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    INVALID = "invalid"
    DELETED = "deleted"


class Snipe(BaseModel):
    amount: float
    lead_ms: int
    fired: bool = False
    # the auction closed before the bid could go out
    missed: bool = False


class ListingRecord(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    identifier: str = Field(frozen=True)
    site: str = ""
    url: str = ""
    title: str = ""
    comment: str = ""
    category: str = "current"
    created_time: datetime
    end_time: datetime
    last_checked: Optional[datetime] = None
    next_due: Optional[datetime] = None
    current_price: Optional[float] = None
    currency: str = "USD"
    total_bids: int = 0
    snipe: Optional[Snipe] = None
    state: ListingState = ListingState.ACTIVE
    update_required: bool = False

    @field_validator("created_time", "end_time", "last_checked", "next_due")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # naive timestamps are taken to be UTC already
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _ends_after_creation(self) -> "ListingRecord":
        if self.end_time < self.created_time:
            raise ValueError(
                f"{self.identifier}: end_time {self.end_time} precedes "
                f"created_time {self.created_time}"
            )
        return self

    # ---- helpers -----------------------------------------------------

    @property
    def title_and_comment(self) -> str:
        if self.comment:
            return f"{self.title} ({self.comment})"
        return self.title

    @property
    def is_active(self) -> bool:
        return self.state is ListingState.ACTIVE

    @property
    def snipe_at(self) -> Optional[datetime]:
        """When the snipe should go out, or None if there is nothing to fire."""
        if self.snipe is None or self.snipe.fired or self.snipe.missed:
            return None
        return self.end_time - timedelta(milliseconds=self.snipe.lead_ms)

    def schedule_next(self, now: datetime, slow: timedelta, fast: timedelta,
                      ending_window: timedelta) -> None:
        horizon = fast if self.end_time <= now + ending_window else slow
        self.next_due = now + horizon

    @property
    def serialized_form(self) -> bytes:
        return ET.tostring(self.to_element(volatile=False), encoding="utf-8")

    # ---- XML ---------------------------------------------------------

    def to_element(self, volatile: bool = True) -> ET.Element:
        el = ET.Element("auction", id=self.identifier)
        _text(el, "site", self.site)
        _text(el, "url", self.url)
        _text(el, "title", self.title)
        if self.comment:
            _text(el, "comment", self.comment)
        _text(el, "category", self.category)
        _text(el, "created", self.created_time.isoformat())
        _text(el, "end", self.end_time.isoformat())
        if self.current_price is not None:
            price = _text(el, "price", repr(self.current_price))
            price.set("currency", self.currency)
        _text(el, "bids", str(self.total_bids))
        _text(el, "state", self.state.value)
        if self.snipe is not None:
            ET.SubElement(
                el,
                "snipe",
                amount=repr(self.snipe.amount),
                lead_ms=str(self.snipe.lead_ms),
                fired="true" if self.snipe.fired else "false",
                missed="true" if self.snipe.missed else "false",
            )
        if volatile:
            if self.last_checked is not None:
                _text(el, "last_checked", self.last_checked.isoformat())
            if self.next_due is not None:
                _text(el, "next_due", self.next_due.isoformat())
            if self.update_required:
                ET.SubElement(el, "update_required")
        return el

    @classmethod
    def from_element(cls, el: ET.Element) -> "ListingRecord":
        identifier = el.get("id")
        if not identifier:
            raise SnapshotError("<auction> without an id attribute")
        end = el.findtext("end")
        created = el.findtext("created")
        if not end:
            raise SnapshotError(f"auction {identifier} has no <end>")

        price_el = el.find("price")
        snipe_el = el.find("snipe")
        try:
            end_time = datetime.fromisoformat(end)
            return cls(
                identifier=identifier,
                site=el.findtext("site", ""),
                url=el.findtext("url", ""),
                title=el.findtext("title", ""),
                comment=el.findtext("comment", ""),
                category=el.findtext("category", "current"),
                created_time=datetime.fromisoformat(created) if created else end_time,
                end_time=end_time,
                last_checked=_opt_time(el.findtext("last_checked")),
                next_due=_opt_time(el.findtext("next_due")),
                current_price=float(price_el.text) if price_el is not None else None,
                currency=price_el.get("currency", "USD") if price_el is not None else "USD",
                total_bids=int(el.findtext("bids", "0")),
                snipe=Snipe(
                    amount=float(snipe_el.get("amount")),
                    lead_ms=int(snipe_el.get("lead_ms")),
                    fired=snipe_el.get("fired") == "true",
                    missed=snipe_el.get("missed") == "true",
                )
                if snipe_el is not None
                else None,
                state=ListingState(el.findtext("state", "active")),
                update_required=el.find("update_required") is not None,
            )
        except (TypeError, ValueError) as exc:
            raise SnapshotError(f"auction {identifier}: {exc}") from exc


def _text(parent: ET.Element, tag: str, value: str) -> ET.Element:
    child = ET.SubElement(parent, tag)
    child.text = value
    return child


def _opt_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
