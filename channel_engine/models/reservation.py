"""
Inbound Booking and Reservation Models

- InboundBooking: raw channel payload plus processing status (dedup by remote id)
- Guest: local guest record, unique per (hotel, email)
- Reservation: local reservation upserted from inbound bookings
- ReservationCharge: charge lines copied from the booking's invoice items
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, Date, DateTime, Integer, Numeric, ForeignKey, JSON, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class InboundStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"


class ReservationStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    IN_HOUSE = "in_house"
    CHECKED_OUT = "checked_out"


class InboundBooking(Base):
    """
    One row per (hotel, remote booking id).
    Re-deliveries update this row and bump delivery_count instead of inserting.
    """
    __tablename__ = "inbound_bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    hotel_id = Column(String(36), nullable=False)
    connection_id = Column(String(36), ForeignKey("channel_connections.id", ondelete="SET NULL"), nullable=True)
    remote_booking_id = Column(String(100), nullable=False)

    guest_payload = Column(JSON, nullable=True)
    booking_payload = Column(JSON, nullable=True)
    raw_payload = Column(JSON, nullable=True)

    processing_status = Column(String(20), default=InboundStatus.PENDING.value, nullable=False)
    error_message = Column(Text, nullable=True)
    reservation_id = Column(String(36), ForeignKey("reservations.id", ondelete="SET NULL"), nullable=True)

    delivery_count = Column(Integer, default=1)
    received_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('hotel_id', 'remote_booking_id', name='uq_inbound_booking_remote'),
        Index("ix_inbound_booking_status", "processing_status"),
    )

    def __repr__(self):
        return f"<InboundBooking {self.remote_booking_id} status={self.processing_status}>"


class Guest(Base):
    __tablename__ = "guests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(36), nullable=False)

    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    nationality = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    reservations = relationship("Reservation", back_populates="guest")

    __table_args__ = (
        Index("ix_guest_hotel_email", "hotel_id", "email"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def __repr__(self):
        return f"<Guest {self.full_name} hotel={self.hotel_id}>"


class Reservation(Base):
    """
    Local reservation created from a channel booking.
    (hotel_id, remote_booking_id) is the natural key for upserts.
    """
    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(36), nullable=False)
    guest_id = Column(String(36), ForeignKey("guests.id", ondelete="SET NULL"), nullable=True)

    remote_booking_id = Column(String(100), nullable=False)
    remote_property_id = Column(String(100), nullable=True)
    remote_room_id = Column(String(100), nullable=True)

    room_type_id = Column(String(36), nullable=False)
    rate_plan_id = Column(String(36), nullable=True)

    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    adults = Column(Integer, default=1)
    children = Column(Integer, default=0)

    status = Column(String(20), default=ReservationStatus.CONFIRMED.value, nullable=False)
    total_amount = Column(Numeric(10, 2), default=0)
    currency = Column(String(3), default="USD")
    notes = Column(Text, nullable=True)
    info_items = Column(JSON, nullable=True)

    source = Column(String(50), default="channel")
    remote_modified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    guest = relationship("Guest", back_populates="reservations")
    charges = relationship("ReservationCharge", back_populates="reservation", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('hotel_id', 'remote_booking_id', name='uq_reservation_remote'),
        Index("ix_reservation_dates", "hotel_id", "check_in", "check_out"),
    )

    @property
    def nights(self) -> int:
        return (self.check_out - self.check_in).days

    def __repr__(self):
        return f"<Reservation {self.remote_booking_id} {self.check_in}->{self.check_out} status={self.status}>"


class ReservationCharge(Base):
    __tablename__ = "reservation_charges"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reservation_id = Column(String(36), ForeignKey("reservations.id", ondelete="CASCADE"), nullable=False)

    description = Column(String(255), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    quantity = Column(Integer, default=1)
    charge_type = Column(String(50), default="Room")
    currency = Column(String(3), default="USD")

    created_at = Column(DateTime, default=datetime.utcnow)

    reservation = relationship("Reservation", back_populates="charges")

    def __repr__(self):
        return f"<ReservationCharge {self.description} {self.amount}>"
