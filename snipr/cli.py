import asyncio
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Annotated, Awaitable, Callable, Optional, TypeVar
import os
import typer

from snipr.core import SniprError
from snipr.fetchers.site_driver import SCRAPERS, SiteDriver
from snipr.manager import AuctionsManager, create_manager, run_forever
from snipr.records import ListingRecord
from snipr.settings import Settings, load_settings

if os.getenv("DEBUG_CLI", "0") == "1":
    import debugpy

    debugpy.listen(("0.0.0.0", 5679))
    if os.getenv("DEBUGPY_WAIT", "0") == "1":
        debugpy.wait_for_client()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s -- %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

T = TypeVar("T")


def configure_logging() -> None:
    level = logging.DEBUG if os.getenv("SNIPR_DEBUG", "0") == "1" else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    log_file = os.path.abspath(os.getenv("SNIPR_LOG_FILE", "./snipr.log"))
    root = logging.getLogger()  # root logger
    for handler in root.handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == log_file:
            return
    file_handler = RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root.addHandler(file_handler)


app = typer.Typer(help="snipr CLI")


@app.callback()
def main():
    """Track auction listings and snipe them."""
    configure_logging()


def _build(settings: Settings) -> AuctionsManager:
    driver = SiteDriver(settings, {code: cls() for code, cls in SCRAPERS.items()})
    return create_manager(settings, driver)


def _offline(op: Callable[[AuctionsManager], Awaitable[T]], save: bool = True) -> T:
    """Load the tracked listings, apply ``op``, and save the snapshot."""

    async def runner() -> T:
        manager = _build(load_settings())
        manager.load_auctions()
        try:
            result = await op(manager)
            if save:
                await manager.save_auctions()
            return result
        finally:
            await manager.bus.close()

    return asyncio.run(runner())


def _parse_time(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"not an ISO 8601 timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _done(ok: bool, message: str) -> None:
    if not ok:
        typer.echo(message, err=True)
        raise typer.Exit(code=1)


@app.command()
def start():
    """Run the poller."""
    asyncio.run(run_forever(_build(load_settings())))


@app.command()
def ls(
    category: Annotated[
        Optional[str], typer.Option("--category", "-c", help="Only this category.")
    ] = None,
):
    """Show tracked listings."""

    async def op(manager: AuctionsManager):
        return manager.listings(category)

    for row in _offline(op, save=False):
        price = f"{row.currency} {row.current_price:,.2f}" if row.current_price is not None else "-"
        snipe = f"snipe {row.snipe.amount:,.2f}" if row.snipe else ""
        typer.echo(
            f"{row.identifier:12} | {row.end_time:%Y-%m-%d %H:%M} | "
            f"{row.title_and_comment[:40]:40} | {price:>14} | {row.state.value:9} | {snipe}"
        )


@app.command()
def add(
    identifier: str,
    site: Annotated[str, typer.Option("--site", "-s", help="Site code of a registered scraper")],
    ends: Annotated[str, typer.Option("--ends", "-e", help="End time, ISO 8601")],
    url: Annotated[str, typer.Option("--url", "-u")] = "",
    title: Annotated[str, typer.Option("--title", "-t")] = "",
    category: Annotated[str, typer.Option("--category", "-c")] = "current",
):
    """Start tracking a listing."""
    end_time = _parse_time(ends)

    async def op(manager: AuctionsManager):
        now = manager.clock.now()
        record = ListingRecord(
            identifier=identifier,
            site=site.lower(),
            url=url,
            title=title or identifier,
            category=category,
            created_time=min(now, end_time),
            end_time=end_time,
        )
        try:
            manager.add_entry(record)
        except SniprError as exc:
            return str(exc)
        return None

    error = _offline(op)
    _done(error is None, error or "")
    typer.echo(f"Tracking {identifier}")


@app.command()
def delete(identifier: str):
    """Stop tracking a listing for good."""

    async def op(manager: AuctionsManager):
        return await manager.del_entry(identifier)

    _done(_offline(op), f"Not tracked: {identifier}")
    typer.echo(f"Deleted {identifier}")


@app.command()
def snipe(
    identifier: str,
    amount: float,
    lead_ms: Annotated[
        Optional[int], typer.Option("--lead-ms", help="Bid this many ms before the end.")
    ] = None,
):
    """Arrange a last-moment bid."""

    async def op(manager: AuctionsManager):
        return await manager.add_snipe(identifier, amount, lead_ms)

    _done(_offline(op), f"Not tracked: {identifier}")
    typer.echo(f"Snipe of {amount:,.2f} set on {identifier}")


@app.command()
def unsnipe(identifier: str):
    """Cancel a snipe."""

    async def op(manager: AuctionsManager):
        return await manager.cancel_snipe(identifier)

    _done(_offline(op), f"No snipe on {identifier}")
    typer.echo(f"Snipe cancelled on {identifier}")


@app.command()
def comment(identifier: str, text: str):
    """Attach a comment to a listing."""

    async def op(manager: AuctionsManager):
        return await manager.set_comment(identifier, text)

    _done(_offline(op), f"Not tracked: {identifier}")


@app.command()
def refresh(identifier: str):
    """Ask for a refresh on the next tick, even while paused."""

    async def op(manager: AuctionsManager):
        return await manager.force_update(identifier)

    _done(_offline(op), f"Not tracked: {identifier}")


@app.command()
def save():
    """Write the snapshot now."""

    async def op(manager: AuctionsManager):
        return await manager.save_auctions()

    path = _offline(op, save=False)
    _done(path is not None, "Save failed; see the log")
    typer.echo(f"Saved to {path}")


@app.command("clear-deleted")
def clear_deleted():
    """Forget deleted listings so their ids can be tracked again."""

    async def op(manager: AuctionsManager):
        return await manager.clear_deleted()

    typer.echo(f"Cleared {_offline(op, save=False)} deleted entries")


if __name__ == "__main__":
    app()
