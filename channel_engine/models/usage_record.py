"""
Usage Record Model

Append-only per-call telemetry parsed from the provider's rate-limit headers.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Float, ForeignKey, Index
from ..database import Base


class UsageRecord(Base):
    __tablename__ = "usage_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    connection_id = Column(String(36), ForeignKey("channel_connections.id", ondelete="CASCADE"), nullable=False)

    path = Column(String(255), nullable=False)
    method = Column(String(10), nullable=False)
    status_code = Column(Integer, nullable=True)

    remaining = Column(Integer, nullable=True)
    resets_in = Column(Float, nullable=True)
    request_cost = Column(Integer, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    recorded_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_usage_record_connection", "connection_id", "recorded_at"),
    )

    def __repr__(self):
        return f"<UsageRecord {self.method} {self.path} remaining={self.remaining}>"
