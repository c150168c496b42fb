"""
Discrepancy Model

A detected mismatch between local and remote ARI state for one
(room, date, field). Open is initial; Resolved and Ignored are terminal.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, Date, DateTime, Float, ForeignKey, Index
from ..database import Base
import enum


class DiscrepancyType(str, enum.Enum):
    RATE = "Rate"
    AVAILABILITY = "Availability"
    RESTRICTION = "Restriction"
    INVENTORY = "Inventory"


class DiscrepancySeverity(str, enum.Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class DiscrepancyStatus(str, enum.Enum):
    OPEN = "Open"
    RESOLVED = "Resolved"
    IGNORED = "Ignored"


TERMINAL_STATUSES = {DiscrepancyStatus.RESOLVED.value, DiscrepancyStatus.IGNORED.value}


class Discrepancy(Base):
    __tablename__ = "discrepancies"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    hotel_id = Column(String(36), nullable=False)
    connection_id = Column(String(36), ForeignKey("channel_connections.id", ondelete="SET NULL"), nullable=True)
    channel = Column(String(50), nullable=False)

    room_type_id = Column(String(36), nullable=False)
    remote_room_id = Column(String(100), nullable=True)
    date = Column(Date, nullable=False)

    discrepancy_type = Column(String(20), nullable=False)
    # Calendar field name (price1, numAvail, stopSell, ...)
    field = Column(String(50), nullable=False)
    severity = Column(String(10), nullable=False)
    status = Column(String(10), default=DiscrepancyStatus.OPEN.value, nullable=False)

    # JSON-encoded scalar values; None means the side had no value
    local_value = Column(String(100), nullable=True)
    remote_value = Column(String(100), nullable=True)
    difference = Column(Float, nullable=True)
    description = Column(Text, nullable=True)

    detected_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_discrepancy_key", "hotel_id", "room_type_id", "date", "field"),
        Index("ix_discrepancy_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Discrepancy {self.discrepancy_type} {self.field} {self.date} status={self.status}>"
