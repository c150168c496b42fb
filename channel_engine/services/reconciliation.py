"""
Reconciliation Engine

Compares local ARI state with the provider's calendar for every mapped
room of a hotel and records mismatches as Discrepancy rows:
- price1 -> Rate, numAvail -> Availability, restriction fields -> Restriction
- a (room, date) present on only one side -> Inventory
- difference = remote - local for numeric fields

Re-running updates the Open discrepancy for the same key and never
re-opens a mismatch an operator already resolved or ignored with the same
values. resolve / ignore are terminal. correct() is a separate, explicit
push of the local value; it does not change the discrepancy's status.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings as default_settings
from ..models.channel_connection import ChannelConnection, ConnectionStatus, PropertyMapping, RoomMapping
from ..models.discrepancy import (
    Discrepancy,
    DiscrepancySeverity,
    DiscrepancyStatus,
    DiscrepancyType
)
from .ari_compiler import ARICompiler, CALENDAR_TO_LOCAL, DateRange, FieldUpdates
from .channel_client import ChannelClient
from .errors import DiscrepancyStateError, NotFoundError
from .local_ari import LocalARIStore
from .provider_payloads import expand_remote_calendar
from .push_executor import PushExecutor, PushResult

logger = logging.getLogger(__name__)

FIELD_TYPES = {
    "price1": DiscrepancyType.RATE,
    "numAvail": DiscrepancyType.AVAILABILITY,
    "stopSell": DiscrepancyType.RESTRICTION,
    "closedArrival": DiscrepancyType.RESTRICTION,
    "closedDeparture": DiscrepancyType.RESTRICTION,
    "minStay": DiscrepancyType.RESTRICTION,
    "maxStay": DiscrepancyType.RESTRICTION,
}
NUMERIC_FIELDS = {"price1", "numAvail", "minStay", "maxStay"}
BOOLEAN_FIELDS = {"stopSell", "closedArrival", "closedDeparture"}

# Field recorded for a (room, date) missing on one side
CALENDAR_FIELD = "calendar"


def encode_value(value: Any) -> Optional[str]:
    """Canonical text form, so equal values compare equal across runs"""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return format(Decimal(str(value)).normalize(), "f")
    return str(value)


def decode_value(field_name: str, value: Optional[str]) -> Any:
    if value is None:
        return None
    if field_name in BOOLEAN_FIELDS:
        return value == "true"
    if field_name == "price1":
        return Decimal(value)
    if field_name in NUMERIC_FIELDS:
        return int(Decimal(value))
    return value


def _normalize(field_name: str, value: Any) -> Any:
    if field_name in BOOLEAN_FIELDS:
        return bool(value)
    if field_name in NUMERIC_FIELDS:
        return Decimal(str(value))
    return value


@dataclass
class Mismatch:
    room_type_id: str
    remote_room_id: str
    day: date
    field: str
    discrepancy_type: DiscrepancyType
    severity: DiscrepancySeverity
    local_value: Optional[str]
    remote_value: Optional[str]
    difference: Optional[float]
    description: str


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        client: ChannelClient,
        settings=None,
        now: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.client = client
        self.settings = settings or default_settings
        self.now = now
        self.local_store = LocalARIStore(db)

    # ==============================================
    # Comparison
    # ==============================================

    def severity_for(self, field_name: str, local: Any, remote: Any) -> DiscrepancySeverity:
        if field_name == "price1":
            delta = abs(Decimal(str(remote)) - Decimal(str(local)))
            if delta >= Decimal(str(self.settings.reconcile_rate_high_threshold)):
                return DiscrepancySeverity.HIGH
            if delta >= Decimal(str(self.settings.reconcile_rate_medium_threshold)):
                return DiscrepancySeverity.MEDIUM
            return DiscrepancySeverity.LOW
        if field_name == "numAvail":
            # Channel selling more than we hold risks overbooking
            return DiscrepancySeverity.HIGH if Decimal(str(remote)) > Decimal(str(local)) else DiscrepancySeverity.MEDIUM
        if field_name == "stopSell":
            return DiscrepancySeverity.HIGH
        return DiscrepancySeverity.LOW

    def compare(
        self,
        room_type_id: str,
        remote_room_id: str,
        day: date,
        local: Optional[Dict[str, Any]],
        remote: Optional[Dict[str, Any]]
    ) -> List[Mismatch]:
        """
        Mismatches for one (room, date). Fields are compared only where
        both sides report a value.
        """
        if local is None and remote is None:
            return []
        if local is None or remote is None:
            side = "local" if local is None else "channel"
            return [Mismatch(
                room_type_id, remote_room_id, day, CALENDAR_FIELD,
                DiscrepancyType.INVENTORY, DiscrepancySeverity.MEDIUM,
                local_value=None if local is None else "present",
                remote_value=None if remote is None else "present",
                difference=None,
                description=f"No {side} ARI for {day.isoformat()}",
            )]

        mismatches = []
        for field_name, discrepancy_type in FIELD_TYPES.items():
            if field_name not in local or field_name not in remote:
                continue
            local_value = _normalize(field_name, local[field_name])
            remote_value = _normalize(field_name, remote[field_name])
            if local_value == remote_value:
                continue

            difference = None
            if field_name in NUMERIC_FIELDS:
                difference = float(remote_value - local_value)

            mismatches.append(Mismatch(
                room_type_id, remote_room_id, day, field_name, discrepancy_type,
                self.severity_for(field_name, local_value, remote_value),
                local_value=encode_value(local_value),
                remote_value=encode_value(remote_value),
                difference=difference,
                description=(
                    f"{discrepancy_type.value} mismatch on {field_name} for {day.isoformat()}: "
                    f"hotel {encode_value(local_value)}, channel {encode_value(remote_value)}"
                ),
            ))
        return mismatches

    # ==============================================
    # Reconcile
    # ==============================================

    def _mapped_rooms(self, hotel_id: str) -> List[RoomMapping]:
        mappings = self.db.query(RoomMapping).join(PropertyMapping).join(ChannelConnection).filter(
            PropertyMapping.hotel_id == hotel_id,
            ChannelConnection.status == ConnectionStatus.ACTIVE.value
        ).all()
        # One comparison per remote room
        seen = set()
        unique = []
        for mapping in sorted(mappings, key=lambda m: m.remote_rate_code is not None):
            key = (mapping.property_mapping_id, mapping.remote_room_id)
            if key not in seen:
                seen.add(key)
                unique.append(mapping)
        return unique

    async def _fetch_remote(
        self,
        connection: ChannelConnection,
        mapping: RoomMapping,
        window: DateRange
    ) -> Dict[date, Dict[str, Any]]:
        params = {
            "propertyId": mapping.property_mapping.remote_property_id,
            "roomId": mapping.remote_room_id,
            "startDate": window.start.isoformat(),
            "endDate": window.end.isoformat(),
            "includePrices": "true",
            "includeNumAvail": "true",
            "includeMinStay": "true",
            "includeMaxStay": "true",
        }
        data, _ = await self.client.call(
            self.settings.channel_calendar_path,
            "GET",
            connection=connection,
            params=params,
        )
        days: Dict[date, Dict[str, Any]] = {}
        for entry in expand_remote_calendar(data):
            if entry.remote_room_id and entry.remote_room_id != str(mapping.remote_room_id):
                continue
            if entry.day in window:
                days.setdefault(entry.day, {}).update(entry.fields)
        return days

    async def reconcile(self, hotel_id: str, date_window: DateRange) -> List[Discrepancy]:
        """
        Compare every mapped room of the hotel over the window.
        Returns the Open discrepancies created or updated by this run.
        """
        # All provider reads happen before any discrepancy row is written
        fetched = []
        for mapping in self._mapped_rooms(hotel_id):
            connection = mapping.property_mapping.connection
            fetched.append((mapping, connection, await self._fetch_remote(connection, mapping, date_window)))

        touched: List[Discrepancy] = []
        for mapping, connection, remote in fetched:
            local = self.local_store.snapshot(
                hotel_id, mapping.local_room_type_id, mapping.local_rate_plan_id, date_window
            )

            for day in date_window:
                for mismatch in self.compare(
                    mapping.local_room_type_id,
                    mapping.remote_room_id,
                    day,
                    local.get((mapping.local_room_type_id, day)),
                    remote.get(day),
                ):
                    record = self._record(hotel_id, connection, mismatch)
                    if record is not None:
                        touched.append(record)

        self.db.commit()
        logger.info(
            f"Reconciled hotel {hotel_id} {date_window.start}..{date_window.end}: "
            f"{len(touched)} open discrepancies"
        )
        return touched

    def _record(self, hotel_id: str, connection: ChannelConnection, mismatch: Mismatch) -> Optional[Discrepancy]:
        """Update the Open row for this key, or insert one unless already settled"""
        existing = self.db.query(Discrepancy).filter(
            Discrepancy.hotel_id == hotel_id,
            Discrepancy.connection_id == connection.id,
            Discrepancy.room_type_id == mismatch.room_type_id,
            Discrepancy.date == mismatch.day,
            Discrepancy.field == mismatch.field
        ).all()

        for row in existing:
            if row.status == DiscrepancyStatus.OPEN.value:
                row.severity = mismatch.severity.value
                row.local_value = mismatch.local_value
                row.remote_value = mismatch.remote_value
                row.difference = mismatch.difference
                row.description = mismatch.description
                row.remote_room_id = mismatch.remote_room_id
                return row

        for row in existing:
            if row.local_value == mismatch.local_value and row.remote_value == mismatch.remote_value:
                # Already resolved or ignored with these exact values
                return None

        row = Discrepancy(
            hotel_id=hotel_id,
            connection_id=connection.id,
            channel=connection.provider,
            room_type_id=mismatch.room_type_id,
            remote_room_id=mismatch.remote_room_id,
            date=mismatch.day,
            discrepancy_type=mismatch.discrepancy_type.value,
            field=mismatch.field,
            severity=mismatch.severity.value,
            status=DiscrepancyStatus.OPEN.value,
            local_value=mismatch.local_value,
            remote_value=mismatch.remote_value,
            difference=mismatch.difference,
            description=mismatch.description,
            detected_at=self.now(),
        )
        self.db.add(row)
        self.db.flush()
        return row

    # ==============================================
    # Operator workflow
    # ==============================================

    def get(self, discrepancy_id: str) -> Discrepancy:
        row = self.db.get(Discrepancy, discrepancy_id)
        if row is None:
            raise NotFoundError(f"Discrepancy {discrepancy_id} not found")
        return row

    def _close(self, discrepancy_id: str, status: DiscrepancyStatus) -> Discrepancy:
        row = self.get(discrepancy_id)
        if row.is_terminal:
            raise DiscrepancyStateError(
                f"Discrepancy {discrepancy_id} is already {row.status}"
            )
        row.status = status.value
        row.resolved_at = self.now()
        self.db.commit()
        logger.info(f"Discrepancy {discrepancy_id} -> {status.value}")
        return row

    def resolve(self, discrepancy_id: str) -> Discrepancy:
        """Accept the channel's value as authoritative. Pushes nothing."""
        return self._close(discrepancy_id, DiscrepancyStatus.RESOLVED)

    def ignore(self, discrepancy_id: str) -> Discrepancy:
        return self._close(discrepancy_id, DiscrepancyStatus.IGNORED)

    async def correct(self, discrepancy_id: str) -> PushResult:
        """
        Push the local value for this discrepancy's room/date to the channel.
        The discrepancy's status is left as is.
        """
        row = self.get(discrepancy_id)
        if row.field not in FIELD_TYPES or row.local_value is None:
            raise DiscrepancyStateError(
                f"Discrepancy {discrepancy_id} has no local value to push"
            )

        mapping = self.db.query(RoomMapping).join(PropertyMapping).filter(
            PropertyMapping.connection_id == row.connection_id,
            RoomMapping.remote_room_id == row.remote_room_id
        ).first()
        if mapping is None:
            raise NotFoundError(f"No room mapping for remote room {row.remote_room_id}")

        updates = FieldUpdates(**{CALENDAR_TO_LOCAL[row.field]: decode_value(row.field, row.local_value)})
        compiled = ARICompiler().compile(mapping, DateRange(row.date, row.date), updates)
        # No db: local state already holds this value
        executor = PushExecutor(self.client, db=None, batch_delay=0)
        result = await executor.execute(compiled, mapping.property_mapping.connection)
        logger.info(f"Corrective push for discrepancy {discrepancy_id}: success={result.success}")
        return result

    def list_discrepancies(self, hotel_id: str, status: Optional[str] = None) -> List[Discrepancy]:
        query = self.db.query(Discrepancy).filter(Discrepancy.hotel_id == hotel_id)
        if status:
            query = query.filter(Discrepancy.status == status)
        return query.order_by(Discrepancy.date, Discrepancy.room_type_id, Discrepancy.field).all()
