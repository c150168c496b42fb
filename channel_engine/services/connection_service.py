"""
Connection Service

Handles the connection lifecycle:
1. link: exchange a one-time setup code, store the encrypted refresh
   credential, seed the token cache, sync the property list
2. relink: replace the credential of an existing connection, optionally
   dropping its mappings
3. unlink: disable the connection and forget its tokens
4. map_room / set_defaults: room mappings and hotel-level fallbacks
5. health: token state and recent call telemetry
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.channel_connection import (
    ChannelConnection,
    ConnectionStatus,
    ConnectionToken,
    OperationClass,
    PropertyMapping,
    RoomMapping
)
from ..models.usage_record import UsageRecord
from .channel_client import ChannelClient
from .errors import ChannelEngineError, MappingError, NotFoundError
from .provider_payloads import TokenGrant, first_present, unwrap
from .token_manager import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class RemoteRoom:
    remote_property_id: str
    remote_room_id: str
    name: Optional[str] = None


@dataclass
class PropertySyncResult:
    success: bool
    properties: int = 0
    properties_created: int = 0
    rooms: List[RemoteRoom] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class LinkResult:
    success: bool
    connection_id: Optional[str] = None
    sync: Optional[PropertySyncResult] = None
    error: Optional[str] = None


@dataclass
class TokenHealth:
    operation_class: str
    cached: bool
    expires_at: Optional[datetime] = None
    valid: bool = False


@dataclass
class ConnectionHealth:
    connection_id: str
    status: str
    last_error: Optional[str]
    last_used_at: Optional[datetime]
    tokens: List[TokenHealth]
    window_hours: int
    calls: int
    errors: int
    rate_limited: int
    error_rate: float
    avg_duration_ms: Optional[float]
    credits_used: int
    remaining: Optional[int]


class ConnectionService:
    def __init__(
        self,
        db: Session,
        client: ChannelClient,
        token_manager: Optional[TokenManager] = None,
        now: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.client = client
        self.token_manager = token_manager or client.token_manager
        self.now = now

    def get_connection(self, connection_id: str) -> ChannelConnection:
        connection = self.db.get(ChannelConnection, connection_id)
        if connection is None:
            raise NotFoundError(f"Connection {connection_id} not found")
        return connection

    def _store_grant(self, connection: ChannelConnection, grant: TokenGrant) -> None:
        connection.refresh_credential_encrypted = self.token_manager.cipher.encrypt(grant.refresh_token)
        connection.scopes = grant.scopes
        if grant.account_id:
            connection.remote_account_id = grant.account_id
        expires_at = grant.expires_at(self.now())
        for operation_class in OperationClass:
            self.token_manager.seed(self.db, connection, operation_class, grant.access_token, expires_at)

    async def link(
        self,
        hotel_id: str,
        setup_code: str,
        device_name: Optional[str] = None
    ) -> LinkResult:
        """
        Create a connection from a one-time setup code.

        The connection is kept even when the property sync fails; the sync
        can be retried with sync_properties().
        """
        grant = await self.client.exchange_setup_code(setup_code, device_name or settings.channel_device_name)

        connection = ChannelConnection(
            hotel_id=hotel_id,
            provider=settings.channel_provider,
            status=ConnectionStatus.ACTIVE.value,
            refresh_credential_encrypted="",
        )
        self.db.add(connection)
        self.db.flush()
        self._store_grant(connection, grant)
        self.db.commit()
        logger.info(f"Linked connection {connection.id} for hotel {hotel_id}")

        sync = await self.sync_properties(connection)
        return LinkResult(success=True, connection_id=connection.id, sync=sync)

    async def relink(
        self,
        connection_id: str,
        setup_code: str,
        device_name: Optional[str] = None,
        reset_mappings: bool = False
    ) -> LinkResult:
        """Replace the credential of an existing connection and reactivate it"""
        connection = self.get_connection(connection_id)
        grant = await self.client.exchange_setup_code(setup_code, device_name or settings.channel_device_name)

        self.token_manager.invalidate(connection.id)
        if reset_mappings:
            for mapping in list(connection.property_mappings):
                self.db.delete(mapping)
            logger.info(f"Mappings of connection {connection.id} reset on relink")

        connection.status = ConnectionStatus.ACTIVE.value
        connection.last_error = None
        connection.error_count = 0
        self._store_grant(connection, grant)
        self.db.commit()
        logger.info(f"Relinked connection {connection.id}")

        sync = await self.sync_properties(connection)
        return LinkResult(success=True, connection_id=connection.id, sync=sync)

    def unlink(self, connection_id: str) -> ChannelConnection:
        connection = self.get_connection(connection_id)
        connection.status = ConnectionStatus.DISABLED.value
        self.db.query(ConnectionToken).filter(ConnectionToken.connection_id == connection.id).delete()
        self.db.commit()
        self.token_manager.invalidate(connection.id)
        logger.info(f"Unlinked connection {connection.id}")
        return connection

    async def sync_properties(self, connection: ChannelConnection) -> PropertySyncResult:
        """
        Upsert a PropertyMapping per remote property and list the remote
        rooms available for mapping.
        """
        try:
            data, _ = await self.client.call(
                settings.channel_properties_path,
                "GET",
                connection=connection,
                params={"includeAllRooms": "true"},
            )
        except ChannelEngineError as e:
            logger.error(f"Property sync failed for connection {connection.id}: {e.message}")
            connection.last_error = f"Property sync failed: {e.message}"[:1000]
            self.db.commit()
            return PropertySyncResult(success=False, error=e.message)

        result = PropertySyncResult(success=True)
        properties = unwrap(data) or []
        if isinstance(properties, dict):
            properties = [properties]

        for prop in properties:
            remote_id = first_present(prop, ("id", "propertyId", "property_id"))
            if remote_id is None:
                continue
            remote_id = str(remote_id)

            mapping = self.db.query(PropertyMapping).filter(
                PropertyMapping.connection_id == connection.id,
                PropertyMapping.remote_property_id == remote_id
            ).first()
            if mapping is None:
                mapping = PropertyMapping(
                    connection_id=connection.id,
                    hotel_id=connection.hotel_id,
                    remote_property_id=remote_id,
                )
                self.db.add(mapping)
                result.properties_created += 1
            mapping.name = prop.get("name") or mapping.name
            result.properties += 1

            for room in prop.get("roomTypes") or prop.get("rooms") or []:
                room_id = first_present(room, ("id", "roomId", "room_id"))
                if room_id is not None:
                    result.rooms.append(RemoteRoom(remote_id, str(room_id), room.get("name")))

        connection.last_sync_at = self.now()
        self.db.commit()
        logger.info(
            f"Synced {result.properties} properties ({result.properties_created} new, "
            f"{len(result.rooms)} rooms) for connection {connection.id}"
        )
        return result

    def get_property_mapping(self, property_mapping_id: str) -> PropertyMapping:
        mapping = self.db.get(PropertyMapping, property_mapping_id)
        if mapping is None:
            raise NotFoundError(f"Property mapping {property_mapping_id} not found")
        return mapping

    def map_room(
        self,
        property_mapping_id: str,
        local_room_type_id: str,
        remote_room_id: str,
        remote_rate_code: Optional[str] = None,
        local_rate_plan_id: Optional[str] = None
    ) -> RoomMapping:
        """
        Establish a room mapping. Repeating an identical mapping is a no-op;
        changing an existing one requires a relink with reset_mappings.
        """
        property_mapping = self.get_property_mapping(property_mapping_id)
        existing = self.db.query(RoomMapping).filter(
            RoomMapping.property_mapping_id == property_mapping.id,
            RoomMapping.remote_room_id == str(remote_room_id)
        ).first()

        if existing is not None:
            same = (
                existing.local_room_type_id == local_room_type_id
                and existing.remote_rate_code == remote_rate_code
                and existing.local_rate_plan_id == local_rate_plan_id
            )
            if same:
                return existing
            raise MappingError(
                f"Remote room {remote_room_id} is already mapped to room type "
                f"{existing.local_room_type_id}; relink to change it"
            )

        mapping = RoomMapping(
            property_mapping_id=property_mapping.id,
            local_room_type_id=local_room_type_id,
            remote_room_id=str(remote_room_id),
            remote_rate_code=remote_rate_code,
            local_rate_plan_id=local_rate_plan_id,
        )
        self.db.add(mapping)
        self.db.commit()
        logger.info(f"Mapped remote room {remote_room_id} -> room type {local_room_type_id}")
        return mapping

    def set_defaults(
        self,
        property_mapping_id: str,
        default_room_type_id: Optional[str] = None,
        default_rate_plan_id: Optional[str] = None
    ) -> PropertyMapping:
        """Hotel-level fallbacks used for unmapped inbound bookings"""
        mapping = self.get_property_mapping(property_mapping_id)
        if default_room_type_id is not None:
            mapping.default_room_type_id = default_room_type_id
        if default_rate_plan_id is not None:
            mapping.default_rate_plan_id = default_rate_plan_id
        self.db.commit()
        return mapping

    # ==============================================
    # Health
    # ==============================================

    def health(self, connection_id: str, window_hours: int = 24) -> ConnectionHealth:
        """Token state plus call volume, error rate and latency over the window"""
        connection = self.get_connection(connection_id)
        now = self.now()

        tokens = []
        for operation_class in OperationClass:
            cached = self.token_manager.cache.get((connection.id, operation_class.value))
            expires_at = cached.expires_at if cached else None
            if expires_at is None:
                stored = self.db.query(ConnectionToken).filter(
                    ConnectionToken.connection_id == connection.id,
                    ConnectionToken.operation_class == operation_class.value
                ).first()
                expires_at = stored.expires_at if stored else None
            tokens.append(TokenHealth(
                operation_class=operation_class.value,
                cached=cached is not None,
                expires_at=expires_at,
                valid=expires_at is not None and expires_at > now,
            ))

        records = self.db.query(UsageRecord).filter(
            UsageRecord.connection_id == connection.id,
            UsageRecord.recorded_at >= now - timedelta(hours=window_hours)
        ).order_by(UsageRecord.recorded_at).all()

        failed = [r for r in records if r.status_code is None or r.status_code >= 400]
        durations = [r.duration_ms for r in records if r.duration_ms is not None]
        latest = next((r for r in reversed(records) if r.remaining is not None), None)

        return ConnectionHealth(
            connection_id=connection.id,
            status=connection.status,
            last_error=connection.last_error,
            last_used_at=connection.last_used_at,
            tokens=tokens,
            window_hours=window_hours,
            calls=len(records),
            errors=len(failed),
            rate_limited=sum(1 for r in records if r.status_code == 429),
            error_rate=round(len(failed) / len(records), 4) if records else 0.0,
            avg_duration_ms=round(sum(durations) / len(durations), 1) if durations else None,
            credits_used=sum(r.request_cost or 0 for r in records),
            remaining=latest.remaining if latest else None,
        )
