"""
AuctionsManager: the engine facade.

Owns the collaborators that make up the engine (corral, filter index,
pipeline, scheduler, checkpointer) and exposes the operations the CLI and
any front-end call: adding and deleting entries, snipe and comment edits,
forcing refreshes, pausing, loading and saving. ``create_manager`` builds a
fully wired instance from ``Settings``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

from snipr.bus import MessageBus, Redraw, SplashProgress, StatusText
from snipr.clock import Clock, PauseManager, Ticker
from snipr.config import RuntimeConfig
from snipr.core import DuplicateEntryError, EntryDeletedError, UpdateDriver
from snipr.corral import EntryCorral
from snipr.db import ListingStore
from snipr.filters import FilterIndex
from snipr.persistence import Checkpointer
from snipr.pipeline import UpdatePipeline
from snipr.records import ListingRecord, ListingState, Snipe
from snipr.scheduler import Scheduler
from snipr.settings import SNIPR_ROOT, Settings

log = logging.getLogger("snipr.manager")

DB_LOAD_INCOMPLETE = "NOTIFY Failed to load all auctions from database."


class AuctionsManager:
    def __init__(
        self,
        settings: Settings,
        *,
        store: ListingStore,
        driver: UpdateDriver,
        bus: MessageBus,
        config: RuntimeConfig,
        clock: Clock,
        home: Path,
    ):
        self.settings = settings
        self.bus = bus
        self.config = config
        self.clock = clock
        self.driver = driver
        self.pause = PauseManager(clock)
        self.filters = FilterIndex()
        self.corral = EntryCorral(
            store,
            clock,
            cache_size=settings.storage.cache_size,
            ending_window=timedelta(minutes=settings.polling.ending_window_minutes),
        )
        self.checkpointer = Checkpointer(
            self.corral, config, bus, clock, home, settings.storage.server_name
        )
        self.pipeline = UpdatePipeline(
            self.corral, self.filters, bus, clock, driver, self.pause, settings.polling
        )
        self.scheduler = Scheduler(
            self.corral,
            self.pipeline,
            self.checkpointer,
            driver,
            bus,
            clock,
            self.pause,
            settings.polling,
        )
        self.default_snipe_ms = settings.snipe.lead_milliseconds
        self._ticker: Optional[Ticker] = None
        config.register_listener(self.update_configuration)
        self.update_configuration("snipemilliseconds")

    # ---- lifecycle -----------------------------------------------------

    def start(self) -> None:
        if self._ticker is None:
            self._ticker = Ticker(
                self.check, self.settings.polling.tick_milliseconds, name="updates"
            )
        self._ticker.start()

    async def stop(self, save: bool = True) -> Optional[str]:
        if self._ticker is not None:
            self._ticker.cancel()
        path = await self.save_auctions() if save else None
        await self.bus.close()
        return path

    @property
    def ticker(self) -> Optional[Ticker]:
        return self._ticker

    def update_configuration(self, key: str) -> None:
        if key != "snipemilliseconds":
            return
        value = self.config.query("snipemilliseconds")
        if value is None:
            return
        try:
            self.default_snipe_ms = int(value)
        except ValueError:
            log.warning("Ignoring non-numeric snipemilliseconds=%r", value)

    async def check(self) -> bool:
        return await self.scheduler.check()

    # ---- entries ---------------------------------------------------------

    def add_entry(self, record: ListingRecord) -> None:
        """Start tracking a listing. Deleted or already-tracked ids are refused."""
        identifier = record.identifier
        if self.corral.is_tombstoned(identifier):
            raise EntryDeletedError(f"{identifier} was deleted and cannot be re-added")
        if identifier in self.corral:
            raise DuplicateEntryError(f"{identifier} is already tracked")
        self.corral.insert(record)
        self.filters.add(record)
        self.bus.emit(Redraw(record.category))

    async def del_entry(self, identifier: str) -> bool:
        async with self.corral.take_for_write(identifier) as working:
            if working is None:
                return False
            self.corral.tombstone(identifier)
            working.snipe = None
            working.state = ListingState.DELETED
            category = working.category
        self.filters.delete(identifier)
        self.corral.remove(identifier)
        log.info("Deleted %s", identifier)
        self.bus.emit(Redraw(category))
        return True

    def get(self, identifier: str) -> Optional[ListingRecord]:
        return self.corral.take_for_read(identifier)

    def listings(self, category: Optional[str] = None) -> list[ListingRecord]:
        if category is None:
            return self.corral.all_records()
        return [
            r for r in (self.corral.take_for_read(i) for i in self.filters.members(category))
            if r is not None
        ]

    async def add_snipe(self, identifier: str, amount: float,
                        lead_ms: Optional[int] = None) -> bool:
        async with self.corral.take_for_write(identifier) as working:
            if working is None:
                return False
            working.snipe = Snipe(amount=amount, lead_ms=lead_ms or self.default_snipe_ms)
        self.bus.emit(Redraw(identifier))
        return True

    async def cancel_snipe(self, identifier: str) -> bool:
        async with self.corral.take_for_write(identifier) as working:
            if working is None or working.snipe is None:
                return False
            working.snipe = None
        self.bus.emit(Redraw(identifier))
        return True

    async def set_comment(self, identifier: str, comment: str) -> bool:
        async with self.corral.take_for_write(identifier) as working:
            if working is None:
                return False
            working.comment = comment
        self.bus.emit(Redraw(identifier))
        return True

    async def set_category(self, identifier: str, category: str) -> bool:
        async with self.corral.take_for_write(identifier) as working:
            if working is None:
                return False
            working.category = category
            left = self.filters.move(identifier, category)
        if left is not None:
            self.bus.emit(Redraw(left))
        self.bus.emit(Redraw(category))
        return True

    async def force_update(self, identifier: str) -> bool:
        async with self.corral.take_for_write(identifier) as working:
            if working is None:
                return False
            working.update_required = True
        return True

    # ---- persistence -----------------------------------------------------

    def load_auctions(self) -> int:
        """Index what the record store already holds, or restore the snapshot."""
        if len(self.corral):
            return self._load_from_store()
        return self.checkpointer.load(self.add_entry)

    def _load_from_store(self) -> int:
        active = self.corral.active_count()
        self.bus.emit(SplashProgress("WIDTH", active))
        self.bus.emit(SplashProgress("SET", 0))
        records = self.corral.all_records()
        for record in records:
            self.filters.add(record)
        saved = int(self.config.query("last.auctioncount", "-1"))
        if saved != -1 and saved != len(records):
            self.bus.emit(StatusText(DB_LOAD_INCOMPLETE))
        log.info("Indexed %d auctions from the record store", len(records))
        return active

    async def save_auctions(self) -> Optional[str]:
        return await self.checkpointer.save()

    async def clear_deleted(self) -> int:
        cleared = self.corral.clear_tombstones()
        await self.save_auctions()
        return cleared


def create_manager(
    settings: Settings,
    driver: UpdateDriver,
    *,
    store: Optional[ListingStore] = None,
    bus: Optional[MessageBus] = None,
    clock: Optional[Clock] = None,
    home: Optional[Path] = None,
) -> AuctionsManager:
    if store is None:
        url = settings.storage.resolved_database_url()
        if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        store = ListingStore(url)
    config = RuntimeConfig({"savefile": settings.storage.savefile, **settings.config}, store)
    return AuctionsManager(
        settings,
        store=store,
        driver=driver,
        bus=bus or MessageBus(),
        config=config,
        clock=clock or Clock(),
        home=home or SNIPR_ROOT,
    )


async def run_forever(manager: AuctionsManager) -> None:
    manager.load_auctions()
    manager.start()
    print("snipr started – Ctrl+C to quit")
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        pass
    finally:
        await manager.stop()
