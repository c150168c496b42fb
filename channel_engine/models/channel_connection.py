"""
Channel Connection Models

Models for managing channel manager connections including:
- ChannelConnection: one authenticated link to a remote channel account
- ConnectionToken: persisted access token per operation class
- PropertyMapping: local hotel <-> remote property
- RoomMapping: local room type / rate plan <-> remote room / rate code
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, ForeignKey, DateTime, Integer, JSON, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class ConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    ERROR = "error"
    DISABLED = "disabled"


class OperationClass(str, enum.Enum):
    """Access tokens are cached separately for reads and writes"""
    READ = "read"
    WRITE = "write"


class ChannelConnection(Base):
    """
    Stores the refresh credential and status for one remote channel account.

    Created on a successful setup-code exchange. Status flips to `error`
    on unrecoverable auth failure and to `disabled` on manual unlink.
    """
    __tablename__ = "channel_connections"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Owning hotel (external entity)
    hotel_id = Column(String(36), nullable=False)

    # Provider info
    provider = Column(String(50), default="beds24", nullable=False)
    remote_account_id = Column(String(100), nullable=True)

    # Fernet-encrypted refresh credential
    refresh_credential_encrypted = Column(Text, nullable=False)
    scopes = Column(JSON, default=list)

    # Status tracking
    status = Column(String(20), default=ConnectionStatus.ACTIVE.value, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    # Latest booking modification time ingested by a pull
    bookings_modified_checkpoint = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    error_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tokens = relationship("ConnectionToken", back_populates="connection", cascade="all, delete-orphan")
    property_mappings = relationship("PropertyMapping", back_populates="connection", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_channel_connection_hotel", "hotel_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE.value

    def __repr__(self):
        return f"<ChannelConnection {self.provider} hotel={self.hotel_id} status={self.status}>"


class ConnectionToken(Base):
    """
    Last issued access token for a (connection, operation class).
    Mirrors the in-memory token cache so restarts do not force a refresh.
    """
    __tablename__ = "connection_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    connection_id = Column(String(36), ForeignKey("channel_connections.id", ondelete="CASCADE"), nullable=False)
    operation_class = Column(String(10), nullable=False)

    access_token = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    connection = relationship("ChannelConnection", back_populates="tokens")

    __table_args__ = (
        UniqueConstraint('connection_id', 'operation_class', name='uq_connection_token_class'),
    )

    def __repr__(self):
        return f"<ConnectionToken connection={self.connection_id} class={self.operation_class}>"


class PropertyMapping(Base):
    """
    Maps a local hotel to a remote property.

    default_room_type_id / default_rate_plan_id are the hotel-level
    fallbacks used when an inbound booking's remote codes are unmapped.
    """
    __tablename__ = "property_mappings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    connection_id = Column(String(36), ForeignKey("channel_connections.id", ondelete="CASCADE"), nullable=False)
    hotel_id = Column(String(36), nullable=False)

    remote_property_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=True)

    default_room_type_id = Column(String(36), nullable=True)
    default_rate_plan_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    connection = relationship("ChannelConnection", back_populates="property_mappings")
    room_mappings = relationship("RoomMapping", back_populates="property_mapping", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_property_mapping_hotel", "hotel_id"),
        UniqueConstraint('connection_id', 'remote_property_id', name='uq_property_mapping_remote'),
    )

    def __repr__(self):
        return f"<PropertyMapping hotel={self.hotel_id} remote={self.remote_property_id}>"


class RoomMapping(Base):
    """
    Maps a local room type (and optionally a rate plan) to a remote room.
    Immutable once established; only a re-link with mapping reset removes it.
    """
    __tablename__ = "room_mappings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    property_mapping_id = Column(String(36), ForeignKey("property_mappings.id", ondelete="CASCADE"), nullable=False)

    local_room_type_id = Column(String(36), nullable=False)
    remote_room_id = Column(String(100), nullable=False)

    # Optional rate code mapping
    remote_rate_code = Column(String(100), nullable=True)
    local_rate_plan_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    property_mapping = relationship("PropertyMapping", back_populates="room_mappings")

    __table_args__ = (
        Index("ix_room_mapping_local", "local_room_type_id"),
        UniqueConstraint('property_mapping_id', 'remote_room_id', name='uq_room_mapping_remote_room'),
    )

    @property
    def remote_property_id(self) -> str:
        return self.property_mapping.remote_property_id

    def __repr__(self):
        return f"<RoomMapping room_type={self.local_room_type_id} remote_room={self.remote_room_id}>"
