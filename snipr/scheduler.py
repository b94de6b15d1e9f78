import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from snipr.bus import MessageBus, Redraw, StatusText
from snipr.clock import Clock, PauseManager
from snipr.core import UpdateDriver
from snipr.corral import EntryCorral
from snipr.persistence import Checkpointer
from snipr.pipeline import UpdatePipeline
from snipr.records import ListingState
from snipr.settings import PollingCfg

log = logging.getLogger("snipr.scheduler")


class UpdateInterrupted(Exception):
    """Raised between listings once ``Scheduler.interrupt`` has been called."""


class Scheduler:
    """Decides, once per tick, which listings to refresh, expire or snipe.

    Three buckets feed the update pipeline: a slow sweep of everything not
    checked for ``slow_minutes``, a fast sweep of listings ending soon, and
    the forced bucket of listings the user asked to refresh. Pause skips
    the first two (and snipes) but never the forced bucket or checkpoints.

    Due snipes are looked for at the start of the tick, before every
    listing and once more at the end, so a long bucket never holds a bid
    back past its window. A snipe still unfired when its auction closes is
    reported as missed.
    """

    def __init__(
        self,
        corral: EntryCorral,
        pipeline: UpdatePipeline,
        checkpointer: Checkpointer,
        driver: UpdateDriver,
        bus: MessageBus,
        clock: Clock,
        pause: PauseManager,
        polling: PollingCfg,
    ):
        self._corral = corral
        self._pipeline = pipeline
        self._checkpointer = checkpointer
        self._driver = driver
        self._bus = bus
        self._clock = clock
        self._pause = pause
        self._slow = timedelta(minutes=polling.slow_minutes)
        self._fast = timedelta(minutes=polling.fast_minutes)
        self._grace = timedelta(seconds=polling.end_grace_seconds)
        self._checkpoint_every = polling.checkpoint_minutes * 60
        self._last_checkpoint = clock.monotonic()
        self._interrupted = False

    def interrupt(self) -> None:
        """Abandon the current tick at the next gap between listings."""
        self._interrupted = True

    async def check(self) -> bool:
        """Run one tick; True if any listing went through the pipeline."""
        self._interrupted = False
        updated = False
        try:
            await self._expire_finished()
            await self._sweep_snipes()
            if not self._pause.is_paused():
                updated |= await self._update_list(self._corral.find_all_needing_update(self._slow))
                updated |= await self._update_list(self._corral.find_ending_needing_update(self._fast))
            updated |= await self._update_list(self._corral.find_manual_updates())
            await self._sweep_snipes()
        except UpdateInterrupted:
            log.debug("Tick interrupted; remaining listings wait for the next one")
            return updated

        await self._check_snapshot()
        return updated

    def _check_interrupt(self) -> None:
        if self._interrupted:
            self._interrupted = False
            raise UpdateInterrupted()

    async def _between_listings(self) -> None:
        await asyncio.sleep(0)
        self._check_interrupt()
        await self._sweep_snipes()

    async def _sweep_snipes(self) -> None:
        await self._report_missed_snipes()
        if not self._pause.is_paused():
            await self._fire_snipes()

    async def _update_list(self, identifiers: List[str]) -> bool:
        updated = False
        for identifier in identifiers:
            await self._between_listings()
            updated |= await self._pipeline.run(identifier)
        return updated

    async def _expire_finished(self) -> None:
        for identifier in self._corral.find_expired(self._grace):
            async with self._corral.take_for_write(identifier) as working:
                if working is None or not working.is_active:
                    continue
                working.state = ListingState.COMPLETED
                category = working.category
            log.info("%s has ended", identifier)
            self._bus.emit(Redraw(identifier))
            self._bus.emit(Redraw(category))

    async def _fire_snipes(self) -> None:
        for identifier in self._corral.find_snipes_due():
            await asyncio.sleep(0)
            self._check_interrupt()
            title: Optional[str] = None
            try:
                async with self._corral.take_for_write(identifier) as working:
                    if working is None or working.snipe_at is None:
                        continue
                    if self._clock.now() >= working.end_time:
                        # closed while earlier snipes went out; reported as missed
                        continue
                    title = working.title_and_comment
                    self._bus.emit(StatusText(f"Sniping on {title}"))
                    await self._driver.place_snipe(working)
                    working.snipe.fired = True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.exception("Snipe on %s failed", identifier)
                self._bus.emit(StatusText(f"ERROR Snipe failed on {title or identifier}: {exc}"))
                continue
            self._bus.emit(Redraw(identifier))
            self._bus.emit(StatusText(f"Snipe submitted on {title}"))

    async def _report_missed_snipes(self) -> None:
        for identifier in self._corral.find_snipes_missed():
            async with self._corral.take_for_write(identifier) as working:
                if working is None or working.snipe_at is None:
                    continue
                working.snipe.missed = True
                title = working.title_and_comment
                end_time = working.end_time
            log.warning("Snipe on %s missed; the auction closed at %s", identifier, end_time)
            self._bus.emit(StatusText(f"ERROR Snipe missed on {title}"))
            self._bus.emit(Redraw(identifier))

    async def _check_snapshot(self) -> None:
        now = self._clock.monotonic()
        if now - self._last_checkpoint >= self._checkpoint_every:
            self._last_checkpoint = now
            await self._checkpointer.save()
