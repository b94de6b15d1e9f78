from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from snipr.core import SnapshotError
from snipr.records import ListingRecord, ListingState, Snipe

from conftest import make_record


def test_end_time_cannot_precede_creation(clock):
    with pytest.raises(ValidationError):
        ListingRecord(
            identifier="bad",
            created_time=clock.now(),
            end_time=clock.now() - timedelta(seconds=1),
        )


def test_identifier_is_immutable(clock):
    record = make_record("A", clock)
    with pytest.raises(ValidationError):
        record.identifier = "B"


def test_serialized_form_ignores_bookkeeping(clock):
    record = make_record("A", clock)
    before = record.serialized_form
    record.last_checked = clock.now()
    record.next_due = clock.now() + timedelta(minutes=1)
    record.update_required = True
    assert record.serialized_form == before
    record.current_price = 12.5
    assert record.serialized_form != before


def test_element_keeps_state_bearing_fields(clock):
    record = make_record(
        "A",
        clock,
        checked_ago=30,
        comment="for dad",
        current_price=99.0,
        currency="GBP",
        total_bids=4,
        snipe=Snipe(amount=150.0, lead_ms=5000),
        state=ListingState.COMPLETED,
        update_required=True,
    )
    restored = ListingRecord.from_element(record.to_element())
    assert restored.model_dump() == record.model_dump()


def test_from_element_rejects_missing_end(clock):
    element = make_record("A", clock).to_element()
    element.remove(element.find("end"))
    with pytest.raises(SnapshotError):
        ListingRecord.from_element(element)


def test_title_and_comment(clock):
    record = make_record("A", clock, title="Lathe")
    assert record.title_and_comment == "Lathe"
    record.comment = "heavy"
    assert record.title_and_comment == "Lathe (heavy)"


def test_next_due_uses_fast_horizon_near_the_end(clock):
    record = make_record("A", clock, end_in=600)
    record.schedule_next(
        clock.now(), timedelta(minutes=69), timedelta(minutes=1), timedelta(hours=1)
    )
    assert record.next_due == clock.now() + timedelta(minutes=1)
    record.end_time = clock.now() + timedelta(hours=3)
    record.schedule_next(
        clock.now(), timedelta(minutes=69), timedelta(minutes=1), timedelta(hours=1)
    )
    assert record.next_due == clock.now() + timedelta(minutes=69)


def test_naive_times_are_read_as_utc(clock):
    created = datetime(2024, 1, 1, 9, 0)
    record = ListingRecord(identifier="A", created_time=created, end_time=created + timedelta(days=2))
    assert record.created_time == created.replace(tzinfo=timezone.utc)
    assert record.end_time.tzinfo is not None

    # drivers assign whatever the site reports
    record.end_time = datetime(2024, 1, 4, 12, 0)
    assert record.end_time == datetime(2024, 1, 4, 12, 0, tzinfo=timezone.utc)
    record.schedule_next(
        clock.now(), timedelta(minutes=69), timedelta(minutes=1), timedelta(hours=1)
    )
    assert record.next_due == clock.now() + timedelta(minutes=69)


def test_missed_snipe_survives_the_element_round_trip(clock):
    record = make_record("A", clock, snipe=Snipe(amount=20.0, lead_ms=5000, missed=True))
    assert record.snipe_at is None
    restored = ListingRecord.from_element(record.to_element())
    assert restored.snipe.missed is True
