"""
Tests for ReconciliationEngine

Tests cover:
- Rate mismatch recorded with difference = remote - local and severity
- Availability severity by direction
- Day present on one side only -> Inventory discrepancy
- Re-run updates the open discrepancy instead of duplicating it
- Resolve / ignore are terminal and not re-opened for the same values
- Corrective push of the local value
"""

import json
import pytest
from datetime import date
from decimal import Decimal

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from channel_engine.models import (
    DailyRate,
    Discrepancy,
    DiscrepancySeverity,
    DiscrepancyStatus,
    DiscrepancyType,
    InventoryDay
)
from channel_engine.services.ari_compiler import DateRange
from channel_engine.services.errors import DiscrepancyStateError, NotFoundError
from channel_engine.services.reconciliation import ReconciliationEngine, encode_value

from conftest import reply, seed_tokens

CALENDAR_PATH = "/inventory/rooms/calendar"
DAY = date(2024, 8, 1)
WINDOW = DateRange(DAY, DAY)


def remote_calendar(*entries, room_id="R1"):
    return {"data": [{"roomId": room_id, "calendar": list(entries)}]}


@pytest.fixture
def local_rate(db):
    row = DailyRate(hotel_id="hotel-1", room_type_id="rt-1", rate_plan_id="", date=DAY, rate=Decimal("120"))
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def reconciler(db, channel_client, token_manager, connection, room_mapping):
    seed_tokens(token_manager, connection)
    return ReconciliationEngine(db, channel_client)


class TestReconcile:

    @pytest.mark.asyncio
    async def test_rate_mismatch_recorded(self, reconciler, local_rate, provider):
        """Local 120, channel 110 -> difference -10, High"""
        provider.add("GET", CALENDAR_PATH, reply(200, remote_calendar(
            {"from": "2024-08-01", "to": "2024-08-01", "price1": 110, "numAvail": 3}
        )))

        found = await reconciler.reconcile("hotel-1", WINDOW)

        assert len(found) == 1
        discrepancy = found[0]
        assert discrepancy.discrepancy_type == DiscrepancyType.RATE.value
        assert discrepancy.field == "price1"
        assert discrepancy.local_value == "120"
        assert discrepancy.remote_value == "110"
        assert discrepancy.difference == -10.0
        assert discrepancy.severity == DiscrepancySeverity.HIGH.value
        assert discrepancy.status == DiscrepancyStatus.OPEN.value
        assert discrepancy.channel == "beds24"

        request = provider.calls("GET", CALENDAR_PATH)[0]
        assert request.url.params["roomId"] == "R1"
        assert request.url.params["startDate"] == "2024-08-01"
        assert request.url.params["endDate"] == "2024-08-01"

    @pytest.mark.asyncio
    async def test_matching_values_produce_nothing(self, reconciler, local_rate, provider, db):
        provider.add("GET", CALENDAR_PATH, reply(200, remote_calendar({"date": "2024-08-01", "price1": "120.00"})))

        assert await reconciler.reconcile("hotel-1", WINDOW) == []
        assert db.query(Discrepancy).count() == 0

    @pytest.mark.asyncio
    async def test_availability_and_restrictions(self, reconciler, db, provider):
        db.add(InventoryDay(
            hotel_id="hotel-1", room_type_id="rt-1", date=DAY,
            allotment=2, stop_sell=False, min_stay=1
        ))
        db.commit()
        provider.add("GET", CALENDAR_PATH, reply(200, remote_calendar(
            {"date": "2024-08-01", "numAvail": 5, "stopSell": True, "minStay": 1}
        )))

        found = await reconciler.reconcile("hotel-1", WINDOW)

        by_field = {d.field: d for d in found}
        assert set(by_field) == {"numAvail", "stopSell"}
        assert by_field["numAvail"].severity == DiscrepancySeverity.HIGH.value
        assert by_field["numAvail"].difference == 3.0
        assert by_field["stopSell"].discrepancy_type == DiscrepancyType.RESTRICTION.value
        assert by_field["stopSell"].local_value == "false"
        assert by_field["stopSell"].remote_value == "true"

    @pytest.mark.asyncio
    async def test_day_missing_remotely_is_inventory_discrepancy(self, reconciler, local_rate, provider):
        provider.add("GET", CALENDAR_PATH, reply(200, remote_calendar()))

        found = await reconciler.reconcile("hotel-1", WINDOW)

        assert len(found) == 1
        assert found[0].discrepancy_type == DiscrepancyType.INVENTORY.value
        assert found[0].severity == DiscrepancySeverity.MEDIUM.value
        assert found[0].remote_value is None

    @pytest.mark.asyncio
    async def test_merged_remote_range_expanded(self, reconciler, db, provider):
        for day in (date(2024, 8, 1), date(2024, 8, 2), date(2024, 8, 3)):
            db.add(DailyRate(hotel_id="hotel-1", room_type_id="rt-1", rate_plan_id="", date=day, rate=Decimal("100")))
        db.commit()
        provider.add("GET", CALENDAR_PATH, reply(200, remote_calendar(
            {"date": "2024-08-01:2024-08-02", "price1": 100},
            {"date": "2024-08-03", "price1": 103},
        )))

        found = await reconciler.reconcile("hotel-1", DateRange(date(2024, 8, 1), date(2024, 8, 3)))

        assert [(d.date, d.severity) for d in found] == [(date(2024, 8, 3), DiscrepancySeverity.LOW.value)]

    @pytest.mark.asyncio
    async def test_rerun_updates_open_row(self, reconciler, local_rate, provider, db):
        provider.add(
            "GET", CALENDAR_PATH,
            reply(200, remote_calendar({"date": "2024-08-01", "price1": 110})),
            reply(200, remote_calendar({"date": "2024-08-01", "price1": 118})),
        )

        await reconciler.reconcile("hotel-1", WINDOW)
        await reconciler.reconcile("hotel-1", WINDOW)

        rows = db.query(Discrepancy).all()
        assert len(rows) == 1
        assert rows[0].remote_value == "118"
        assert rows[0].severity == DiscrepancySeverity.LOW.value


class TestOperatorWorkflow:

    @pytest.mark.asyncio
    async def test_resolve_is_terminal(self, reconciler, local_rate, provider, db):
        provider.add("GET", CALENDAR_PATH, reply(200, remote_calendar({"date": "2024-08-01", "price1": 110})))
        found = await reconciler.reconcile("hotel-1", WINDOW)

        resolved = reconciler.resolve(found[0].id)

        assert resolved.status == DiscrepancyStatus.RESOLVED.value
        assert resolved.resolved_at is not None
        with pytest.raises(DiscrepancyStateError):
            reconciler.resolve(found[0].id)
        with pytest.raises(DiscrepancyStateError):
            reconciler.ignore(found[0].id)

    @pytest.mark.asyncio
    async def test_settled_mismatch_not_reopened(self, reconciler, local_rate, provider, db):
        provider.add(
            "GET", CALENDAR_PATH,
            reply(200, remote_calendar({"date": "2024-08-01", "price1": 110})),
            reply(200, remote_calendar({"date": "2024-08-01", "price1": 110})),
            reply(200, remote_calendar({"date": "2024-08-01", "price1": 90})),
        )
        found = await reconciler.reconcile("hotel-1", WINDOW)
        reconciler.ignore(found[0].id)

        assert await reconciler.reconcile("hotel-1", WINDOW) == []
        assert db.query(Discrepancy).count() == 1

        reopened = await reconciler.reconcile("hotel-1", WINDOW)
        assert len(reopened) == 1
        assert reopened[0].remote_value == "90"
        assert db.query(Discrepancy).count() == 2

    @pytest.mark.asyncio
    async def test_correct_pushes_local_value(self, reconciler, local_rate, provider, db):
        provider.add("GET", CALENDAR_PATH, reply(200, remote_calendar({"date": "2024-08-01", "price1": 110})))
        provider.add("POST", CALENDAR_PATH, reply(200, [{"success": True, "modified": 1}]))
        found = await reconciler.reconcile("hotel-1", WINDOW)

        result = await reconciler.correct(found[0].id)

        assert result.success
        body = json.loads(provider.calls("POST", CALENDAR_PATH)[0].content)
        assert body == {"propertyId": "P1", "data": [{"roomId": "R1", "date": "2024-08-01", "price1": 120}]}
        assert reconciler.get(found[0].id).status == DiscrepancyStatus.OPEN.value

    def test_unknown_discrepancy(self, reconciler):
        with pytest.raises(NotFoundError):
            reconciler.resolve("missing")

    def test_list_filters_by_status(self, reconciler, db, connection):
        for status in (DiscrepancyStatus.OPEN, DiscrepancyStatus.IGNORED):
            db.add(Discrepancy(
                hotel_id="hotel-1", connection_id=connection.id, channel="beds24",
                room_type_id="rt-1", date=DAY, discrepancy_type="Rate", field="price1",
                severity="Low", status=status.value, local_value="1", remote_value="2",
            ))
        db.commit()

        assert len(reconciler.list_discrepancies("hotel-1")) == 2
        assert len(reconciler.list_discrepancies("hotel-1", "Open")) == 1


class TestSeverity:

    def test_rate_thresholds(self, reconciler):
        assert reconciler.severity_for("price1", Decimal("100"), Decimal("112")) == DiscrepancySeverity.HIGH
        assert reconciler.severity_for("price1", Decimal("100"), Decimal("94")) == DiscrepancySeverity.MEDIUM
        assert reconciler.severity_for("price1", Decimal("100"), Decimal("101")) == DiscrepancySeverity.LOW

    def test_availability_direction(self, reconciler):
        assert reconciler.severity_for("numAvail", Decimal("2"), Decimal("4")) == DiscrepancySeverity.HIGH
        assert reconciler.severity_for("numAvail", Decimal("4"), Decimal("2")) == DiscrepancySeverity.MEDIUM

    def test_value_encoding_is_canonical(self):
        assert encode_value(Decimal("120.00")) == "120"
        assert encode_value(110) == "110"
        assert encode_value(Decimal("99.50")) == "99.5"
        assert encode_value(True) == "true"
