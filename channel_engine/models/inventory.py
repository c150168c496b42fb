"""
Local ARI Models

Daily rate and inventory state per room type.
This is the local source of truth that ARI pushes write back to
and reconciliation compares against.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Date, DateTime, Boolean, Integer, Numeric, Index, UniqueConstraint
from ..database import Base


class DailyRate(Base):
    """Nightly rate per (hotel, room type, rate plan, date)"""
    __tablename__ = "daily_rates"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    hotel_id = Column(String(36), nullable=False)
    room_type_id = Column(String(36), nullable=False)
    # Empty string stands for the room type's default rate plan
    rate_plan_id = Column(String(36), nullable=False, default="")
    date = Column(Date, nullable=False)

    rate = Column(Numeric(10, 2), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_daily_rate_hotel_date", "hotel_id", "date"),
        UniqueConstraint('hotel_id', 'room_type_id', 'rate_plan_id', 'date', name='uq_daily_rate_key'),
    )

    def __repr__(self):
        return f"<DailyRate {self.room_type_id} {self.date} {self.rate}>"


class InventoryDay(Base):
    """
    Daily allotment and restrictions per (hotel, room type, date).
    Restriction columns follow the channel calendar fields.
    """
    __tablename__ = "inventory_days"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    hotel_id = Column(String(36), nullable=False)
    room_type_id = Column(String(36), nullable=False)
    date = Column(Date, nullable=False)

    allotment = Column(Integer, nullable=True)

    # Restrictions
    stop_sell = Column(Boolean, nullable=True)
    closed_to_arrival = Column(Boolean, nullable=True)
    closed_to_departure = Column(Boolean, nullable=True)
    min_stay = Column(Integer, nullable=True)
    max_stay = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_inventory_day_hotel_date", "hotel_id", "date"),
        UniqueConstraint('hotel_id', 'room_type_id', 'date', name='uq_inventory_day_key'),
    )

    def __repr__(self):
        return f"<InventoryDay {self.room_type_id} {self.date} allotment={self.allotment}>"
