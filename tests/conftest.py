import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from snipr.bus import MessageBus
from snipr.clock import Clock
from snipr.core import UpdateDriver
from snipr.db import ListingStore
from snipr.manager import create_manager
from snipr.records import ListingRecord
from snipr.settings import Settings, StorageCfg

START = datetime(2024, 1, 2, 13, 30, tzinfo=timezone.utc)


class FakeClock(Clock):
    def __init__(self, start: datetime = START):
        self._now = start
        self._mono = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._mono += seconds


class RecordingBus(MessageBus):
    """Keeps (queue, text) for everything published, in publish order."""

    def __init__(self):
        super().__init__()
        self.published: list[tuple[str, str]] = []

    def publish(self, name, message):
        self.published.append((name, str(message)))
        super().publish(name, message)

    def on(self, name: str) -> list[str]:
        return [text for queue, text in self.published if queue == name]


class ScriptedDriver(UpdateDriver):
    """Records refresh calls; per-identifier behaviour comes from ``actions``."""

    def __init__(self):
        self.calls: list[str] = []
        self.snipes: list[tuple[str, float]] = []
        self.actions = {}
        self.snipe_error = None

    async def refresh(self, record):
        self.calls.append(record.identifier)
        action = self.actions.get(record.identifier)
        if action is not None:
            result = action(record)
            if asyncio.iscoroutine(result):
                await result

    async def place_snipe(self, record):
        if self.snipe_error is not None:
            raise self.snipe_error
        self.snipes.append((record.identifier, record.snipe.amount))


def make_record(identifier, clock, end_in=7200, checked_ago=None, category="current", **kw):
    now = clock.now()
    return ListingRecord(
        identifier=identifier,
        site="test",
        url=f"https://auctions.example/{identifier}",
        title=kw.pop("title", f"Lot {identifier}"),
        category=category,
        created_time=now - timedelta(days=1),
        end_time=now + timedelta(seconds=end_in),
        last_checked=now - timedelta(seconds=checked_ago) if checked_ago is not None else None,
        **kw,
    )


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def driver():
    return ScriptedDriver()


@pytest.fixture
def store():
    return ListingStore("sqlite://")


@pytest.fixture
def savefile(tmp_path):
    return tmp_path / "auctions.xml"


@pytest.fixture
def settings(savefile):
    return Settings(storage=StorageCfg(savefile=str(savefile), database_url="sqlite://"))


@pytest.fixture
def manager(settings, driver, store, bus, clock, tmp_path):
    return create_manager(settings, driver, store=store, bus=bus, clock=clock, home=tmp_path)


@pytest.fixture
def fresh_manager(settings, driver, clock, tmp_path):
    """Factory for a second engine over the same savefile but an empty store."""

    def build():
        return create_manager(
            settings,
            driver,
            store=ListingStore("sqlite://"),
            bus=RecordingBus(),
            clock=clock,
            home=tmp_path,
        )

    return build
