"""
Inbound Booking Ingestor

Pulls or receives bookings from the channel and upserts them locally:
1. Record the delivery (InboundBooking, unique per hotel + remote id)
2. Normalize the provider payload
3. Upsert the guest by hotel + email
4. Map remote room / rate codes to local ids (explicit mapping, then the
   property default, else MappingError)
5. Upsert the reservation keyed by remote booking id; charges are replaced

Failures are recorded on the InboundBooking (status `error`) and returned
as a ProcessingResult. Nothing raises past ingest(), so one bad booking
never blocks the rest of a pull.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.channel_connection import ChannelConnection, PropertyMapping, RoomMapping
from ..models.reservation import (
    Guest,
    InboundBooking,
    InboundStatus,
    Reservation,
    ReservationCharge,
    ReservationStatus
)
from ..utils.db_helpers import find_by_key
from ..utils.logging_config import get_logger
from .channel_client import ChannelClient
from .errors import MappingError, ProcessingError
from .provider_payloads import BOOKING_ID_KEYS, PROPERTY_ID_KEYS, BookingPayload, first_present, unwrap

logger = get_logger(__name__)

# Provider booking status -> local reservation status
STATUS_MAP = {
    "confirmed": ReservationStatus.CONFIRMED,
    "new": ReservationStatus.CONFIRMED,
    "request": ReservationStatus.TENTATIVE,
    "pending": ReservationStatus.TENTATIVE,
    "inquiry": ReservationStatus.TENTATIVE,
    "cancelled": ReservationStatus.CANCELLED,
    "canceled": ReservationStatus.CANCELLED,
    "no_show": ReservationStatus.NO_SHOW,
    "noshow": ReservationStatus.NO_SHOW,
    "checked_in": ReservationStatus.IN_HOUSE,
    "checked_out": ReservationStatus.CHECKED_OUT,
}

MAX_PULL_PAGES = 50


def map_reservation_status(remote_status: Optional[str]) -> str:
    """Unknown statuses are treated as confirmed"""
    return STATUS_MAP.get((remote_status or "").lower(), ReservationStatus.CONFIRMED).value


@dataclass
class ProcessingResult:
    success: bool
    action: str  # created, updated, stale, error
    remote_booking_id: Optional[str] = None
    reservation_id: Optional[str] = None
    inbound_booking_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    modified_at: Optional[datetime] = None


@dataclass
class IngestSummary:
    total: int = 0
    created: int = 0
    updated: int = 0
    stale: int = 0
    errors: int = 0
    results: List[ProcessingResult] = field(default_factory=list)

    def add(self, result: ProcessingResult) -> None:
        self.total += 1
        self.results.append(result)
        if not result.success:
            self.errors += 1
        elif result.action == "created":
            self.created += 1
        elif result.action == "updated":
            self.updated += 1
        elif result.action == "stale":
            self.stale += 1


@dataclass
class BookingFilters:
    """Filters for a booking pull (all optional)"""
    arrival_from: Optional[date] = None
    arrival_to: Optional[date] = None
    modified_from: Optional[datetime] = None
    modified_to: Optional[datetime] = None
    statuses: List[str] = field(default_factory=lambda: ["confirmed", "request", "new"])
    remote_property_id: Optional[str] = None

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "includeGuests": "true",
            "includeInvoiceItems": "true",
            "includeInfoItems": "true",
        }
        if self.statuses:
            params["status"] = ",".join(self.statuses)
        if self.remote_property_id:
            params["propertyId"] = self.remote_property_id
        if self.arrival_from:
            params["arrivalFrom"] = self.arrival_from.isoformat()
        if self.arrival_to:
            params["arrivalTo"] = self.arrival_to.isoformat()
        if self.modified_from:
            params["modifiedFrom"] = self.modified_from.isoformat()
        if self.modified_to:
            params["modifiedTo"] = self.modified_to.isoformat()
        return params


class BookingIngestor:
    """
    Idempotent booking ingest for one database session.

    Re-delivering the same booking updates the existing reservation and
    bumps the InboundBooking's delivery_count; it never creates a second
    reservation.
    """

    def __init__(
        self,
        db: Session,
        client: Optional[ChannelClient] = None,
        now: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.client = client
        self.now = now

    # ==============================================
    # Ingest
    # ==============================================

    def ingest(self, raw_booking: Mapping[str, Any], connection: ChannelConnection) -> ProcessingResult:
        remote_id = first_present(raw_booking, BOOKING_ID_KEYS) if isinstance(raw_booking, Mapping) else None
        if remote_id is None:
            logger.warning(f"[{connection.id}] Booking payload without id dropped")
            return ProcessingResult(
                success=False,
                action="error",
                error="Booking payload carries no booking id",
                error_code="processing_error",
            )
        remote_id = str(remote_id)

        try:
            property_mapping = self._find_property_mapping(connection, first_present(raw_booking, PROPERTY_ID_KEYS))
            hotel_id = property_mapping.hotel_id if property_mapping else connection.hotel_id
            inbound = self._record_delivery(hotel_id, remote_id, connection, raw_booking)
        except SQLAlchemyError as e:
            # e.g. two first deliveries of the same booking racing on the unique key
            self.db.rollback()
            logger.error(f"[{connection.id}] Could not record delivery of booking {remote_id}: {e}")
            return ProcessingResult(
                success=False,
                action="error",
                remote_booking_id=remote_id,
                error=f"Could not record delivery: {e}",
                error_code="processing_error",
            )
        inbound_id = inbound.id

        try:
            try:
                booking = BookingPayload.from_raw(raw_booking)
            except ValueError as e:
                raise ProcessingError(f"Unreadable booking payload: {e}")
            inbound.guest_payload = booking.guest_dict()
            inbound.booking_payload = booking.booking_dict()

            reservation = find_by_key(
                self.db, Reservation,
                {"hotel_id": hotel_id, "remote_booking_id": remote_id},
                lock=True
            )

            if self._is_stale(reservation, booking):
                inbound.processing_status = InboundStatus.PROCESSED.value
                inbound.reservation_id = reservation.id
                inbound.processed_at = self.now()
                inbound.error_message = None
                self.db.commit()
                logger.booking_ingested(remote_id, "stale", reservation.id)
                return ProcessingResult(
                    True, "stale", remote_id, reservation.id, inbound_id, modified_at=booking.modified_at
                )

            room_type_id, rate_plan_id = self._map_codes(property_mapping, booking)
            guest = self._upsert_guest(hotel_id, booking, reservation)
            reservation, created = self._upsert_reservation(
                hotel_id, reservation, booking, guest, room_type_id, rate_plan_id
            )

            inbound.processing_status = InboundStatus.PROCESSED.value
            inbound.reservation_id = reservation.id
            inbound.processed_at = self.now()
            inbound.error_message = None
            self.db.commit()

            action = "created" if created else "updated"
            logger.booking_ingested(remote_id, action, reservation.id)
            return ProcessingResult(
                True, action, remote_id, reservation.id, inbound_id, modified_at=booking.modified_at
            )

        except Exception as e:
            self.db.rollback()
            code = getattr(e, "code", "processing_error")
            logger.error(f"[{connection.id}] Booking {remote_id} failed: {e}")
            failed = self.db.get(InboundBooking, inbound_id)
            if failed is not None:
                failed.processing_status = InboundStatus.ERROR.value
                failed.error_message = str(e)[:1000]
                failed.processed_at = self.now()
                self.db.commit()
            return ProcessingResult(
                success=False,
                action="error",
                remote_booking_id=remote_id,
                inbound_booking_id=inbound_id,
                error=str(e),
                error_code=code,
            )

    def _record_delivery(
        self,
        hotel_id: str,
        remote_id: str,
        connection: ChannelConnection,
        raw_booking: Mapping[str, Any]
    ) -> InboundBooking:
        """Committed before processing so the receipt survives a failed ingest"""
        inbound = find_by_key(
            self.db, InboundBooking,
            {"hotel_id": hotel_id, "remote_booking_id": remote_id},
            lock=True
        )
        if inbound is None:
            inbound = InboundBooking(
                hotel_id=hotel_id,
                remote_booking_id=remote_id,
                connection_id=connection.id,
                delivery_count=1,
            )
            self.db.add(inbound)
        else:
            inbound.delivery_count = (inbound.delivery_count or 0) + 1
            inbound.received_at = self.now()
        inbound.raw_payload = dict(raw_booking)
        inbound.processing_status = InboundStatus.PENDING.value
        self.db.commit()
        return inbound

    def _find_property_mapping(self, connection: ChannelConnection, remote_property_id) -> Optional[PropertyMapping]:
        query = self.db.query(PropertyMapping).filter(PropertyMapping.connection_id == connection.id)
        if remote_property_id is not None:
            return query.filter(PropertyMapping.remote_property_id == str(remote_property_id)).first()
        mappings = query.all()
        # Without a property id the mapping is only unambiguous for single-property accounts
        return mappings[0] if len(mappings) == 1 else None

    @staticmethod
    def _is_stale(reservation: Optional[Reservation], booking: BookingPayload) -> bool:
        """An older revision arriving after a newer one"""
        return bool(
            reservation is not None
            and reservation.remote_modified_at
            and booking.modified_at
            and booking.modified_at < reservation.remote_modified_at
        )

    def _map_codes(
        self,
        property_mapping: Optional[PropertyMapping],
        booking: BookingPayload
    ) -> Tuple[str, Optional[str]]:
        """
        Remote room / rate codes -> (room_type_id, rate_plan_id).

        Explicit RoomMapping first, then the property defaults. A missing
        room type, or an unmapped rate code with no default, is a MappingError.
        """
        if property_mapping is None:
            raise MappingError(
                f"No property mapping for remote property {booking.remote_property_id}"
            )

        room_type_id = None
        rate_plan_id = None

        if booking.remote_room_id:
            room_mapping = self.db.query(RoomMapping).filter(
                RoomMapping.property_mapping_id == property_mapping.id,
                RoomMapping.remote_room_id == booking.remote_room_id
            ).first()
            if room_mapping:
                room_type_id = room_mapping.local_room_type_id
                rate_plan_id = room_mapping.local_rate_plan_id

        if booking.remote_rate_code:
            rate_mapping = self.db.query(RoomMapping).filter(
                RoomMapping.property_mapping_id == property_mapping.id,
                RoomMapping.remote_rate_code == booking.remote_rate_code
            ).first()
            if rate_mapping and rate_mapping.local_rate_plan_id:
                rate_plan_id = rate_mapping.local_rate_plan_id

        room_type_id = room_type_id or property_mapping.default_room_type_id
        rate_plan_id = rate_plan_id or property_mapping.default_rate_plan_id

        if not room_type_id:
            raise MappingError(
                f"Remote room {booking.remote_room_id} is not mapped and hotel "
                f"{property_mapping.hotel_id} has no default room type"
            )
        if booking.remote_rate_code and not rate_plan_id:
            raise MappingError(
                f"Remote rate {booking.remote_rate_code} is not mapped and hotel "
                f"{property_mapping.hotel_id} has no default rate plan"
            )
        return room_type_id, rate_plan_id

    def _upsert_guest(self, hotel_id: str, booking: BookingPayload, reservation: Optional[Reservation]) -> Guest:
        """
        Match on hotel + email, inserting a guest for an email not seen
        before. Only a delivery without email falls back to the guest
        already linked to the reservation.
        """
        guest = None
        if booking.email:
            guest = self.db.query(Guest).filter(
                Guest.hotel_id == hotel_id,
                Guest.email == booking.email
            ).first()
        elif reservation is not None and reservation.guest_id:
            guest = self.db.get(Guest, reservation.guest_id)
        if guest is None:
            guest = Guest(hotel_id=hotel_id, email=booking.email)
            self.db.add(guest)

        for name in ("first_name", "last_name", "phone", "nationality"):
            value = getattr(booking, name)
            if value:
                setattr(guest, name, value)

        self.db.flush()
        return guest

    def _upsert_reservation(
        self,
        hotel_id: str,
        reservation: Optional[Reservation],
        booking: BookingPayload,
        guest: Guest,
        room_type_id: str,
        rate_plan_id: Optional[str]
    ) -> Tuple[Reservation, bool]:
        created = reservation is None
        if created:
            reservation = Reservation(hotel_id=hotel_id, remote_booking_id=booking.remote_booking_id)
            self.db.add(reservation)

        reservation.guest_id = guest.id
        reservation.remote_property_id = booking.remote_property_id
        reservation.remote_room_id = booking.remote_room_id
        reservation.room_type_id = room_type_id
        reservation.rate_plan_id = rate_plan_id
        reservation.check_in = booking.arrival
        reservation.check_out = booking.departure
        reservation.adults = booking.adults
        reservation.children = booking.children
        reservation.status = map_reservation_status(booking.status)
        reservation.currency = (booking.currency or "USD")[:3]
        reservation.notes = booking.notes
        reservation.info_items = booking.info_items
        reservation.remote_modified_at = booking.modified_at

        # Charges are replaced on every delivery
        reservation.charges.clear()
        for charge in booking.charges:
            reservation.charges.append(ReservationCharge(
                description=charge.description,
                amount=charge.amount,
                quantity=charge.quantity,
                charge_type=charge.charge_type or "Room",
                currency=(charge.currency or reservation.currency)[:3],
            ))

        if booking.total_amount is not None:
            reservation.total_amount = booking.total_amount
        else:
            reservation.total_amount = sum(
                (c.amount * c.quantity for c in booking.charges), Decimal("0")
            )

        self.db.flush()
        return reservation, created

    # ==============================================
    # Pull
    # ==============================================

    async def pull(self, connection: ChannelConnection, filters: Optional[BookingFilters] = None) -> IngestSummary:
        """
        Fetch bookings for the connection and ingest each one.

        Without a modification or arrival window the pull is incremental:
        it asks for bookings modified since the connection's checkpoint
        (the lookback window on the first pull) and advances the checkpoint
        to the latest modification time ingested.

        Follows provider pagination while `pages.nextPageExists` is set.
        """
        if self.client is None:
            raise RuntimeError("BookingIngestor.pull needs a ChannelClient")

        filters = filters or BookingFilters()
        incremental = not (filters.modified_from or filters.arrival_from or filters.arrival_to)
        if incremental:
            filters = replace(filters, modified_from=connection.bookings_modified_checkpoint or (
                self.now() - timedelta(days=settings.booking_pull_lookback_days)
            ))
        params = filters.to_params()
        summary = IngestSummary()

        page = 1
        more = True
        while more and page <= MAX_PULL_PAGES:
            if page > 1:
                params["page"] = page
            data, _ = await self.client.call(
                settings.channel_bookings_path,
                "GET",
                connection=connection,
                params=dict(params),
            )
            bookings = unwrap(data) or []
            if isinstance(bookings, dict):
                bookings = [bookings]
            for raw in bookings:
                summary.add(self.ingest(raw, connection))

            pages = data.get("pages") if isinstance(data, dict) else None
            more = bool(isinstance(pages, dict) and pages.get("nextPageExists"))
            page += 1

        if more:
            logger.warning(
                f"[{connection.id}] Booking pull stopped at {MAX_PULL_PAGES} pages, more remain"
            )

        row = self.db.get(ChannelConnection, connection.id)
        if row is not None:
            row.last_sync_at = self.now()
            if incremental:
                seen = [r.modified_at for r in summary.results if r.success and r.modified_at]
                if row.bookings_modified_checkpoint:
                    seen.append(row.bookings_modified_checkpoint)
                if seen:
                    row.bookings_modified_checkpoint = max(seen)
            self.db.commit()

        logger.info(
            f"[{connection.id}] Booking pull: {summary.total} total, {summary.created} new, "
            f"{summary.updated} updated, {summary.errors} errors"
        )
        return summary
