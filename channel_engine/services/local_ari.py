"""
Local ARI Store

Reads and writes the local daily_rates / inventory_days tables using
provider calendar field names, so pushes and reconciliation speak the
same vocabulary as the compiler.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ..models.inventory import DailyRate, InventoryDay
from ..utils.db_helpers import upsert_by_key
from .ari_compiler import DateRange, FieldUpdates

logger = logging.getLogger(__name__)

# Calendar field -> InventoryDay column
INVENTORY_COLUMNS = {
    "numAvail": "allotment",
    "stopSell": "stop_sell",
    "closedArrival": "closed_to_arrival",
    "closedDeparture": "closed_to_departure",
    "minStay": "min_stay",
    "maxStay": "max_stay",
}

SnapshotKey = Tuple[str, date]


class LocalARIStore:
    def __init__(self, db: Session):
        self.db = db

    def write(
        self,
        hotel_id: str,
        room_type_id: str,
        rate_plan_id: Optional[str],
        date_range: DateRange,
        updates_for: Callable[[date], FieldUpdates]
    ) -> int:
        """
        Upsert the requested fields for every day of the range.
        Does not commit. Returns the number of days written.
        """
        written = 0
        for day in date_range:
            fields = updates_for(day).to_calendar_fields()
            if not fields:
                continue

            if "price1" in fields:
                upsert_by_key(
                    self.db, DailyRate,
                    {"hotel_id": hotel_id, "room_type_id": room_type_id,
                     "rate_plan_id": rate_plan_id or "", "date": day},
                    {"rate": Decimal(str(fields["price1"]))}
                )

            inventory_values = {
                column: fields[name] for name, column in INVENTORY_COLUMNS.items() if name in fields
            }
            if inventory_values:
                upsert_by_key(
                    self.db, InventoryDay,
                    {"hotel_id": hotel_id, "room_type_id": room_type_id, "date": day},
                    inventory_values
                )
            written += 1

        logger.debug(f"Local ARI written for {room_type_id}: {written} days")
        return written

    def snapshot(
        self,
        hotel_id: str,
        room_type_id: str,
        rate_plan_id: Optional[str],
        date_range: DateRange
    ) -> Dict[SnapshotKey, Dict[str, Any]]:
        """
        Local state per (room type, day) as calendar fields.
        Days with no local rows are absent from the result.
        """
        result: Dict[SnapshotKey, Dict[str, Any]] = {}

        rates = self.db.query(DailyRate).filter(
            DailyRate.hotel_id == hotel_id,
            DailyRate.room_type_id == room_type_id,
            DailyRate.rate_plan_id == (rate_plan_id or ""),
            DailyRate.date >= date_range.start,
            DailyRate.date <= date_range.end
        ).all()
        for row in rates:
            result.setdefault((room_type_id, row.date), {})["price1"] = Decimal(str(row.rate))

        days = self.db.query(InventoryDay).filter(
            InventoryDay.hotel_id == hotel_id,
            InventoryDay.room_type_id == room_type_id,
            InventoryDay.date >= date_range.start,
            InventoryDay.date <= date_range.end
        ).all()
        for row in days:
            fields = result.setdefault((room_type_id, row.date), {})
            for name, column in INVENTORY_COLUMNS.items():
                value = getattr(row, column)
                if value is not None:
                    fields[name] = value

        return result
