"""
ARI Compiler

Turns a (room mapping, date range, field updates) request into push batches:
- Expands the range into one sparse CalendarLine per day
- Run-length merges consecutive days whose fields are identical into a
  single `start:end` line (exact match: one differing field breaks the run)
- Splits lines into batches no larger than the provider's line limit,
  preserving order
"""

import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from ..config import settings

import logging
logger = logging.getLogger(__name__)

# Local field name -> provider calendar field name
FIELD_MAP = {
    "rate": "price1",
    "availability": "numAvail",
    "stop_sell": "stopSell",
    "closed_to_arrival": "closedArrival",
    "closed_to_departure": "closedDeparture",
    "min_stay": "minStay",
    "max_stay": "maxStay",
}
CALENDAR_TO_LOCAL = {v: k for k, v in FIELD_MAP.items()}


def _json_number(value: Any) -> Any:
    """Decimals become int when integral, float otherwise"""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


@dataclass
class FieldUpdates:
    """
    Sparse ARI update. Fields left as None are not sent and not written.
    """
    rate: Optional[Decimal] = None
    availability: Optional[int] = None
    stop_sell: Optional[bool] = None
    closed_to_arrival: Optional[bool] = None
    closed_to_departure: Optional[bool] = None
    min_stay: Optional[int] = None
    max_stay: Optional[int] = None

    def __post_init__(self):
        if self.rate is not None:
            self.rate = Decimal(str(self.rate))
            if self.rate < 0:
                raise ValueError("rate cannot be negative")
        if self.availability is not None and self.availability < 0:
            raise ValueError("availability cannot be negative")
        if self.min_stay is not None and self.min_stay < 1:
            raise ValueError("min_stay must be at least 1")
        if self.max_stay is not None and self.min_stay is not None and self.max_stay < self.min_stay:
            raise ValueError("max_stay cannot be below min_stay")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FieldUpdates":
        """Accepts local names (rate, availability, ...) or calendar names (price1, numAvail, ...)"""
        values = {}
        for key, value in data.items():
            name = CALENDAR_TO_LOCAL.get(key, key)
            if name not in FIELD_MAP:
                raise ValueError(f"Unknown ARI field: {key}")
            values[name] = value
        return cls(**values)

    def present(self) -> Dict[str, Any]:
        """Local field names that carry a value"""
        return {name: getattr(self, name) for name in FIELD_MAP if getattr(self, name) is not None}

    def to_calendar_fields(self) -> Dict[str, Any]:
        return {FIELD_MAP[name]: _json_number(value) for name, value in self.present().items()}

    def overlay(self, other: "FieldUpdates") -> "FieldUpdates":
        """Copy of self with other's present fields on top"""
        values = self.present()
        values.update(other.present())
        return FieldUpdates(**values)

    @property
    def is_empty(self) -> bool:
        return not self.present()


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar days"""
    start: date
    end: date

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Date range ends before it starts: {self.start} > {self.end}")

    def __iter__(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def __len__(self) -> int:
        return (self.end - self.start).days + 1

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass
class CalendarLine:
    """One room's ARI fields for a single day or a merged run of days"""
    room_id: str
    date_from: date
    date_to: date
    fields: Dict[str, Any]

    @property
    def date_label(self) -> str:
        if self.date_from == self.date_to:
            return self.date_from.isoformat()
        return f"{self.date_from.isoformat()}:{self.date_to.isoformat()}"

    def to_payload(self) -> Dict[str, Any]:
        payload = {"roomId": self.room_id, "date": self.date_label}
        payload.update(self.fields)
        return payload

    def continues(self, other: "CalendarLine") -> bool:
        """True when `other` starts the day after self ends with identical fields"""
        return (
            other.room_id == self.room_id
            and other.date_from == self.date_to + timedelta(days=1)
            and other.fields == self.fields
        )


@dataclass
class PushBatch:
    """Ordered group of lines submitted in one call, plus its result"""
    index: int
    lines: List[CalendarLine]
    status: str = "pending"  # pending, succeeded, failed, skipped
    modified_count: int = 0
    errors: List[Any] = field(default_factory=list)
    warnings: List[Any] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.lines)

    def to_payload(self, remote_property_id: str) -> Dict[str, Any]:
        return {
            "propertyId": remote_property_id,
            "data": [line.to_payload() for line in self.lines],
        }


@dataclass
class CompiledPush:
    """
    Batches for one request plus what is needed to write the request back
    to local storage after execution.
    """
    remote_property_id: str
    remote_room_id: str
    hotel_id: Optional[str]
    room_type_id: Optional[str]
    rate_plan_id: Optional[str]
    date_range: DateRange
    field_updates: FieldUpdates
    overrides: Dict[date, FieldUpdates]
    batches: List[PushBatch]
    total_lines: int
    merged_lines: int

    def __iter__(self) -> Iterator[PushBatch]:
        return iter(self.batches)

    def __len__(self) -> int:
        return len(self.batches)

    def __getitem__(self, index: int) -> PushBatch:
        return self.batches[index]

    def updates_for(self, day: date) -> FieldUpdates:
        override = self.overrides.get(day)
        return self.field_updates.overlay(override) if override else self.field_updates


OverrideInput = Mapping[date, Union[FieldUpdates, Mapping[str, Any]]]


class ARICompiler:
    """
    Builds optimized batches for ARI updates.

    Deterministic: the same request always yields the same lines in the
    same order.
    """

    def __init__(self, line_limit: Optional[int] = None):
        self.line_limit = settings.ari_batch_line_limit if line_limit is None else line_limit
        if self.line_limit < 1:
            raise ValueError("line_limit must be at least 1")

    @staticmethod
    def _normalize_overrides(overrides: Optional[OverrideInput]) -> Dict[date, FieldUpdates]:
        normalized = {}
        for day, value in (overrides or {}).items():
            normalized[day] = value if isinstance(value, FieldUpdates) else FieldUpdates.from_dict(value)
        return normalized

    def expand(
        self,
        remote_room_id: str,
        date_range: DateRange,
        field_updates: FieldUpdates,
        overrides: Optional[Dict[date, FieldUpdates]] = None
    ) -> List[CalendarLine]:
        """
        One line per day carrying only the fields present in the update.
        Days whose combined update is empty produce no line.
        """
        overrides = overrides or {}
        lines = []
        for day in date_range:
            updates = field_updates.overlay(overrides[day]) if day in overrides else field_updates
            fields = updates.to_calendar_fields()
            if not fields:
                continue
            lines.append(CalendarLine(remote_room_id, day, day, fields))
        return lines

    @staticmethod
    def merge(lines: List[CalendarLine]) -> List[CalendarLine]:
        """
        Run-length merge of day-ordered lines.

        Input:  2024-01-01 {price1: 100}, 2024-01-02 {price1: 100}, 2024-01-03 {price1: 120}
        Output: 2024-01-01:2024-01-02 {price1: 100}, 2024-01-03 {price1: 120}
        """
        merged: List[CalendarLine] = []
        for line in lines:
            if merged and merged[-1].continues(line):
                merged[-1].date_to = line.date_to
            else:
                merged.append(CalendarLine(line.room_id, line.date_from, line.date_to, dict(line.fields)))
        return merged

    def batch(self, lines: List[CalendarLine]) -> List[PushBatch]:
        """Split into ceil(N / limit) batches, preserving order"""
        return [
            PushBatch(index=i, lines=lines[start:start + self.line_limit])
            for i, start in enumerate(range(0, len(lines), self.line_limit))
        ]

    def batch_count(self, line_count: int) -> int:
        return math.ceil(line_count / self.line_limit)

    def compile(
        self,
        room_mapping,
        date_range: DateRange,
        field_updates: Union[FieldUpdates, Mapping[str, Any]],
        overrides: Optional[OverrideInput] = None
    ) -> CompiledPush:
        """
        Compile a push for one mapped room.

        room_mapping is a RoomMapping (remote_room_id, local_room_type_id,
        local_rate_plan_id, property_mapping.remote_property_id / hotel_id).
        """
        if not isinstance(field_updates, FieldUpdates):
            field_updates = FieldUpdates.from_dict(field_updates)
        normalized = self._normalize_overrides(overrides)
        for day in normalized:
            if day not in date_range:
                raise ValueError(f"Override for {day} is outside {date_range.start}..{date_range.end}")
        if field_updates.is_empty and not normalized:
            raise ValueError("No ARI fields to update")

        property_mapping = room_mapping.property_mapping
        lines = self.expand(room_mapping.remote_room_id, date_range, field_updates, normalized)
        merged = self.merge(lines)
        batches = self.batch(merged)

        logger.info(
            f"Compiled ARI for room {room_mapping.remote_room_id} "
            f"{date_range.start}..{date_range.end}: {len(lines)} lines -> "
            f"{len(merged)} merged -> {len(batches)} batches"
        )

        return CompiledPush(
            remote_property_id=property_mapping.remote_property_id,
            remote_room_id=room_mapping.remote_room_id,
            hotel_id=property_mapping.hotel_id,
            room_type_id=room_mapping.local_room_type_id,
            rate_plan_id=room_mapping.local_rate_plan_id,
            date_range=date_range,
            field_updates=field_updates,
            overrides=normalized,
            batches=batches,
            total_lines=len(lines),
            merged_lines=len(merged),
        )
