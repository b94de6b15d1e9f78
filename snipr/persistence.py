"""
Snapshot persistence for the tracked listings.

``save`` never writes over the current snapshot. The new document goes to
``<savefile>.temp`` first; only once that is complete does the current
file get renamed to a time-stamped retain file and the temp file take its
place. A crash anywhere in between leaves the previous snapshot readable.

Retain files are remembered in ``save.file.0..4``. When the oldest of
those falls off the end it is kept once more as a per-day backup,
remembered in ``save.bydate.0..4``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from snipr.bus import MessageBus, SplashProgress, StatusText
from snipr.clock import Clock
from snipr.config import RuntimeConfig
from snipr.core import SnapshotError, SniprError
from snipr.corral import EntryCorral
from snipr.records import ListingRecord, ListingState

log = logging.getLogger("snipr.persistence")

XML_SAVE_DOCTYPE = '<!DOCTYPE jbidwatcher SYSTEM "http://www.jbidwatcher.com/auctions.dtd">'
SNAPSHOT_FORMAT = "0101"
DEFAULT_SAVEFILE = "auctions.xml"
ROTATION_SLOTS = 5
MAX_PERCENT = 100

LOAD_FAILED = "ERROR Failure to load your saved auctions.  Some or all items may be missing."
LOAD_INCOMPLETE = "NOTIFY Failed to load all auctions from XML file."


@dataclass
class Snapshot:
    format: str
    declared_count: Optional[int]
    records: List[ListingRecord] = field(default_factory=list)
    tombstones: List[str] = field(default_factory=list)
    skipped: int = 0


def render_snapshot(records: List[ListingRecord], tombstones: List[str],
                    server_name: str = "snipr") -> str:
    root = ET.Element("jbidwatcher", format=SNAPSHOT_FORMAT)
    auctions = ET.SubElement(root, "auctions", count=str(len(records)))
    active = sum(1 for r in records if r.state is ListingState.ACTIVE)
    server = ET.SubElement(
        auctions, "server", name=server_name, active=str(active), total=str(len(records))
    )
    for record in records:
        server.append(record.to_element())
    if tombstones:
        deleted = ET.SubElement(root, "deleted")
        for identifier in tombstones:
            ET.SubElement(deleted, "id").text = identifier
    ET.indent(root)
    body = ET.tostring(root, encoding="unicode")
    return f'<?xml version="1.0"?>\n\n{XML_SAVE_DOCTYPE}\n{body}'


def parse_snapshot(text: str,
                   on_progress: Optional[Callable[[SplashProgress], None]] = None) -> Snapshot:
    """Parse a snapshot document. Unparseable auctions are skipped and counted."""
    progress = on_progress or (lambda event: None)
    root = ET.fromstring(text)
    progress(SplashProgress("SET", MAX_PERCENT))

    auctions = root.find("auctions")
    if auctions is None:
        raise SnapshotError(f"<{root.tag}> requires an <auctions> tag!")
    count = auctions.get("count")
    snapshot = Snapshot(
        format=root.get("format", SNAPSHOT_FORMAT),
        declared_count=int(count) if count is not None else None,
    )
    if snapshot.declared_count is not None:
        progress(SplashProgress("SET", 0))
        progress(SplashProgress("WIDTH", snapshot.declared_count))

    snapshot.tombstones = [el.text for el in root.iterfind("deleted/id") if el.text]
    for el in auctions.iter("auction"):
        try:
            snapshot.records.append(ListingRecord.from_element(el))
        except SnapshotError as exc:
            log.warning("Skipping unreadable auction: %s", exc)
            snapshot.skipped += 1
    return snapshot


def backup_filename(filename: str, stamp: str) -> str:
    """auctions.xml + stamp -> auctions-<stamp>.xml, leaving directories alone."""
    last_sep = filename.rfind(os.sep)
    if last_sep == -1:
        log.debug("Filename has no separators: %s", filename)
        last_sep = 0
    first_dot = filename.find(".", last_sep)
    if first_dot == -1:
        log.debug("Filename has no dot/extension: %s", filename)
        first_dot = len(filename)
    return f"{filename[:first_dot]}-{stamp}{filename[first_dot:]}"


def _write_file(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(text)
        fh.write("\n")
        fh.flush()
        os.fsync(fh.fileno())


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        log.warning("Could not delete %s: %s", path, exc)


def _rename(source: str, target: str) -> bool:
    try:
        os.replace(source, target)
        return True
    except OSError as exc:
        log.warning("Renaming %s to %s failed: %s", source, target, exc)
        return False


class Checkpointer:
    def __init__(self, corral: EntryCorral, config: RuntimeConfig, bus: MessageBus,
                 clock: Clock, home: Path, server_name: str = "snipr"):
        self._corral = corral
        self._config = config
        self._bus = bus
        self._clock = clock
        self._home = Path(home)
        self._server_name = server_name
        self._lock = asyncio.Lock()

    def canonical_savefile(self) -> str:
        configured = self._config.query("savefile", DEFAULT_SAVEFILE)
        path = Path(configured).expanduser()
        if not path.is_absolute():
            path = self._home / path
        canonical = str(path)
        if canonical != configured:
            self._config.set("savefile", canonical)
        return canonical

    def render(self) -> tuple[str, int]:
        records = [r for r in self._corral.all_records() if r.state is not ListingState.DELETED]
        return (
            render_snapshot(records, self._corral.tombstones(), self._server_name),
            len(records),
        )

    # ---- save --------------------------------------------------------------

    async def save(self) -> Optional[str]:
        """Write a snapshot; returns the save path, or None if writing failed."""
        async with self._lock:
            target = self.canonical_savefile()
            text, count = self.render()

            swap = os.path.exists(target)
            temp = target + ".temp"
            _remove(temp)
            try:
                Path(target).parent.mkdir(parents=True, exist_ok=True)
                await asyncio.to_thread(_write_file, temp, text)
            except OSError:
                log.exception("Failed to save auctions to %s", temp)
                return None

            if swap:
                self._preserve_files(target, temp)
            else:
                _rename(temp, target)
            self._config.set("last.auctioncount", count)
            log.info("Saved %d auctions to %s", count, target)
            return target

    def _preserve_files(self, target: str, temp: str) -> None:
        now = self._clock.now()
        retain = backup_filename(target, now.strftime("%d%b%y_%H%M"))
        _remove(retain)

        oldest = self._config.query("save.file.4", "")
        if oldest and os.path.exists(oldest):
            self._backup_by_date(target, oldest)

        for i in range(ROTATION_SLOTS - 1, 0, -1):
            self._config.set(f"save.file.{i}", self._config.query(f"save.file.{i - 1}", ""))

        _rename(target, retain)
        self._config.set("save.file.0", retain)
        _rename(temp, target)

    def _backup_by_date(self, target: str, oldest: str) -> None:
        dated = backup_filename(target, self._clock.now().strftime("%d%b%y"))
        if os.path.exists(dated):
            # already have today's; the newer one replaces it without a shift
            _remove(dated)
            _rename(oldest, dated)
            return

        _rename(oldest, dated)
        oldest_by_date = self._config.query("save.bydate.4", "")
        for i in range(ROTATION_SLOTS - 1, 0, -1):
            self._config.set(f"save.bydate.{i}", self._config.query(f"save.bydate.{i - 1}", ""))
        self._config.set("save.bydate.0", dated)
        if oldest_by_date:
            _remove(oldest_by_date)

    # ---- load --------------------------------------------------------------

    def load(self, ingest: Callable[[ListingRecord], None]) -> int:
        """Restore the snapshot through ``ingest``; returns how many were loaded."""
        path = Path(self.canonical_savefile())
        if not path.exists() or path.stat().st_size == 0:
            # common for new users, so keep it quiet
            log.debug("Failed to load saved auctions, %s is probably not there yet.", path)
            log.debug("This is not an error, unless you're constantly getting it.")
            if self._config.query("stats.auctions") is None:
                self._config.set("stats.auctions", "0")
            return 0

        loaded = 0
        try:
            self._bus.emit(SplashProgress("WIDTH", MAX_PERCENT))
            self._bus.emit(SplashProgress("SET", MAX_PERCENT // 2))
            snapshot = parse_snapshot(path.read_text(encoding="utf-8"), self._bus.emit)
            self._config.set("savefile.format", snapshot.format)

            for identifier in snapshot.tombstones:
                self._corral.tombstone(identifier)
            for record in snapshot.records:
                try:
                    ingest(record)
                except SniprError as exc:
                    log.warning("Not restoring %s: %s", record.identifier, exc)
                    continue
                loaded += 1
                self._bus.emit(SplashProgress("SET", loaded))
        except (OSError, ET.ParseError, SnapshotError, ValueError):
            log.exception("A serious problem occurred trying to load from %s", path)
            self._bus.emit(StatusText(LOAD_FAILED))
            return loaded

        saved_count = int(self._config.query("last.auctioncount", "-1"))
        declared = snapshot.declared_count
        if (declared is not None and loaded != declared) or (
            saved_count != -1 and loaded != saved_count
        ):
            log.warning(
                "Loaded %d auctions; file declares %s, last save had %d",
                loaded, declared, saved_count,
            )
            self._bus.emit(StatusText(LOAD_INCOMPLETE))
        log.info("Loaded %d auctions from %s", loaded, path)
        return loaded
