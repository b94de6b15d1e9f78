# snipr/db.py

from datetime import datetime, timezone
from typing import Optional, List

from sqlmodel import SQLModel, Field, create_engine, Session, select, col
from sqlalchemy import DateTime, func, or_
from sqlalchemy.pool import StaticPool

from snipr.records import ListingRecord, ListingState

# TODO(migrations): integrate Alembic here (env.py + versions/). No runtime hacks.


class ListingRow(SQLModel, table=True):
    """Query columns plus the full record as JSON; the payload is authoritative."""

    __tablename__ = "listing"
    identifier: str = Field(primary_key=True)
    category: str = Field(default="current", index=True)
    state: str = Field(default=ListingState.ACTIVE.value, index=True)
    end_time: datetime = Field(
        index=True, sa_type=DateTime(timezone=True), description="Auction end (UTC)"
    )
    last_checked: Optional[datetime] = Field(
        default=None, index=True, sa_type=DateTime(timezone=True)
    )
    update_required: bool = Field(default=False, index=True)
    snipe_at: Optional[datetime] = Field(
        default=None, index=True, sa_type=DateTime(timezone=True)
    )
    payload: str


class DeletedEntry(SQLModel, table=True):
    __tablename__ = "deleted_entry"
    identifier: str = Field(primary_key=True)
    deleted_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )


class ConfigEntry(SQLModel, table=True):
    __tablename__ = "config_entry"
    key: str = Field(primary_key=True)
    value: str


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Every stored timestamp (and every cutoff compared with one) is aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row(record: ListingRecord) -> ListingRow:
    return ListingRow(
        identifier=record.identifier,
        category=record.category,
        state=record.state.value,
        end_time=_utc(record.end_time),
        last_checked=_utc(record.last_checked),
        update_required=record.update_required,
        snipe_at=_utc(record.snipe_at),
        payload=record.model_dump_json(),
    )


class ListingStore:
    """Durable backing store behind the entry corral."""

    def __init__(self, url: str = "sqlite://", echo: bool = False):
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, or every session would see its own empty db
            self.engine = create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(url, echo=echo)
        SQLModel.metadata.create_all(self.engine)

    # ---- listings ------------------------------------------------------

    def save(self, record: ListingRecord) -> None:
        with Session(self.engine) as s:
            s.merge(_row(record))
            s.commit()

    def get(self, identifier: str) -> Optional[ListingRecord]:
        with Session(self.engine) as s:
            row = s.get(ListingRow, identifier)
            if row is None:
                return None
            return ListingRecord.model_validate_json(row.payload)

    def remove(self, identifier: str) -> bool:
        with Session(self.engine) as s:
            row = s.get(ListingRow, identifier)
            if row is None:
                return False
            s.delete(row)
            s.commit()
            return True

    def all_records(self) -> List[ListingRecord]:
        with Session(self.engine) as s:
            stmt = select(ListingRow).order_by(ListingRow.end_time, ListingRow.identifier)
            return [ListingRecord.model_validate_json(r.payload) for r in s.exec(stmt)]

    def identifiers(self) -> List[str]:
        with Session(self.engine) as s:
            return list(s.exec(select(ListingRow.identifier).order_by(ListingRow.identifier)))

    def count(self) -> int:
        with Session(self.engine) as s:
            return s.exec(select(func.count()).select_from(ListingRow)).one()

    def active_count(self) -> int:
        with Session(self.engine) as s:
            stmt = (
                select(func.count())
                .select_from(ListingRow)
                .where(ListingRow.state == ListingState.ACTIVE.value)
            )
            return s.exec(stmt).one()

    # ---- due-listing queries --------------------------------------------

    def _ids(self, *conditions) -> List[str]:
        with Session(self.engine) as s:
            stmt = (
                select(ListingRow.identifier)
                .where(*conditions)
                .order_by(ListingRow.end_time, ListingRow.identifier)
            )
            return list(s.exec(stmt))

    def needing_update(
        self, checked_before: datetime, ending_before: Optional[datetime] = None
    ) -> List[str]:
        conditions = [
            ListingRow.state == ListingState.ACTIVE.value,
            or_(
                col(ListingRow.last_checked).is_(None),
                ListingRow.last_checked <= _utc(checked_before),
            ),
        ]
        if ending_before is not None:
            conditions.append(ListingRow.end_time <= _utc(ending_before))
        return self._ids(*conditions)

    def manual_updates(self) -> List[str]:
        return self._ids(ListingRow.update_required == True)  # noqa: E712

    def ended_before(self, cutoff: datetime) -> List[str]:
        return self._ids(
            ListingRow.state == ListingState.ACTIVE.value,
            ListingRow.end_time <= _utc(cutoff),
        )

    def snipes_due(self, now: datetime) -> List[str]:
        return self._ids(
            ListingRow.state == ListingState.ACTIVE.value,
            col(ListingRow.snipe_at).is_not(None),
            ListingRow.snipe_at <= _utc(now),
            ListingRow.end_time > _utc(now),
        )

    def snipes_missed(self, now: datetime) -> List[str]:
        """Unfired snipes whose auction has already closed."""
        return self._ids(
            col(ListingRow.snipe_at).is_not(None),
            ListingRow.end_time <= _utc(now),
        )

    # ---- tombstones ------------------------------------------------------

    def tombstone(self, identifier: str) -> None:
        with Session(self.engine) as s:
            if s.get(DeletedEntry, identifier) is None:
                s.add(DeletedEntry(identifier=identifier))
                s.commit()

    def is_tombstoned(self, identifier: str) -> bool:
        with Session(self.engine) as s:
            return s.get(DeletedEntry, identifier) is not None

    def tombstones(self) -> List[str]:
        with Session(self.engine) as s:
            stmt = select(DeletedEntry.identifier).order_by(DeletedEntry.identifier)
            return list(s.exec(stmt))

    def clear_tombstones(self) -> int:
        with Session(self.engine) as s:
            rows = s.exec(select(DeletedEntry)).all()
            for row in rows:
                s.delete(row)
            s.commit()
            return len(rows)

    # ---- runtime config ----------------------------------------------------

    def config_items(self) -> dict[str, str]:
        with Session(self.engine) as s:
            return {e.key: e.value for e in s.exec(select(ConfigEntry))}

    def set_config(self, key: str, value: str) -> None:
        with Session(self.engine) as s:
            s.merge(ConfigEntry(key=key, value=value))
            s.commit()
