"""
Channel Manager API Router

Endpoints for the channel manager integration:
- Connections (link, relink, unlink, property sync)
- Mappings (room mappings, hotel-level defaults)
- ARI push (compile + batched submission)
- Bookings (pull from provider, receive pushed bookings)
- Usage telemetry
- Reconciliation and discrepancy management

Errors raised by the engine are turned into JSON responses by the
handler registered in main.py.
"""

import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.channel_connection import ChannelConnection, PropertyMapping, RoomMapping
from ..models.usage_record import UsageRecord
from ..services.ari_compiler import DateRange, FieldUpdates
from ..services.booking_ingestor import BookingFilters, BookingIngestor
from ..services.channel_client import ChannelClient
from ..services.connection_service import ConnectionService
from ..services.engine import ChannelEngine
from ..services.push_executor import ARIPushService
from ..services.reconciliation import ReconciliationEngine
from ..utils.logging_config import set_request_context
from ..schemas.channel_manager import (
    ARIPushRequest,
    BookingPullRequest,
    ConnectionHealthResponse,
    ConnectionResponse,
    DiscrepancyResponse,
    IngestSummaryResponse,
    LinkRequest,
    LinkResponse,
    ProcessingResultResponse,
    PropertyDefaultsUpdate,
    PropertyMappingResponse,
    PropertySyncResponse,
    PushResultResponse,
    ReconcileRequest,
    RelinkRequest,
    RoomMappingCreate,
    RoomMappingResponse,
    UsageRecordResponse
)

router = APIRouter(prefix="/api/channel-manager", tags=["Channel Manager"])


def get_request_id(request: Request) -> str:
    """Get request_id from request state or generate one"""
    return getattr(request.state, 'request_id', str(uuid.uuid4())[:8])


def get_engine(request: Request) -> ChannelEngine:
    return request.app.state.engine


def get_client(request: Request, engine: ChannelEngine = Depends(get_engine)) -> ChannelClient:
    return engine.client(get_request_id(request))


def _connection_service(db: Session, client: ChannelClient) -> ConnectionService:
    return ConnectionService(db, client)


def _load_connection(db: Session, client: ChannelClient, connection_id: str) -> ChannelConnection:
    connection = _connection_service(db, client).get_connection(connection_id)
    set_request_context(client.request_id, connection.id)
    return connection


# ==================
# Connections
# ==================

@router.post("/connections", response_model=LinkResponse)
async def link_connection(
    payload: LinkRequest,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    """
    Link a hotel to a provider account.

    Steps:
    1. Exchanges the one-time setup code for a refresh credential
    2. Stores the credential encrypted, never returns it
    3. Syncs the property list so rooms can be mapped
    """
    result = await _connection_service(db, client).link(payload.hotel_id, payload.setup_code, payload.device_name)
    return LinkResponse(
        success=result.success,
        connection_id=result.connection_id,
        sync=PropertySyncResponse(**asdict(result.sync)) if result.sync else None
    )


@router.get("/connections", response_model=List[ConnectionResponse])
async def list_connections(
    hotel_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    query = db.query(ChannelConnection)
    if hotel_id:
        query = query.filter(ChannelConnection.hotel_id == hotel_id)
    return query.order_by(ChannelConnection.created_at.desc()).all()


@router.get("/connections/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    return _load_connection(db, client, connection_id)


@router.post("/connections/{connection_id}/relink", response_model=LinkResponse)
async def relink_connection(
    connection_id: str,
    payload: RelinkRequest,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    result = await _connection_service(db, client).relink(
        connection_id,
        payload.setup_code,
        device_name=payload.device_name,
        reset_mappings=payload.reset_mappings
    )
    return LinkResponse(
        success=result.success,
        connection_id=result.connection_id,
        sync=PropertySyncResponse(**asdict(result.sync)) if result.sync else None
    )


@router.post("/connections/{connection_id}/unlink", response_model=ConnectionResponse)
async def unlink_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    return _connection_service(db, client).unlink(connection_id)


@router.post("/connections/{connection_id}/properties/sync", response_model=PropertySyncResponse)
async def sync_properties(
    connection_id: str,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    connection = _load_connection(db, client, connection_id)
    result = await _connection_service(db, client).sync_properties(connection)
    return PropertySyncResponse(**asdict(result))


@router.get("/connections/{connection_id}/properties", response_model=List[PropertyMappingResponse])
async def list_properties(
    connection_id: str,
    db: Session = Depends(get_db)
):
    return db.query(PropertyMapping).filter(PropertyMapping.connection_id == connection_id).all()


# ==================
# Mappings
# ==================

@router.patch("/properties/{property_mapping_id}/defaults", response_model=PropertyMappingResponse)
async def set_property_defaults(
    property_mapping_id: str,
    payload: PropertyDefaultsUpdate,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    return _connection_service(db, client).set_defaults(
        property_mapping_id,
        default_room_type_id=payload.default_room_type_id,
        default_rate_plan_id=payload.default_rate_plan_id
    )


@router.post("/room-mappings", response_model=RoomMappingResponse)
async def create_room_mapping(
    payload: RoomMappingCreate,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    return _connection_service(db, client).map_room(
        payload.property_mapping_id,
        payload.local_room_type_id,
        payload.remote_room_id,
        remote_rate_code=payload.remote_rate_code,
        local_rate_plan_id=payload.local_rate_plan_id
    )


@router.get("/properties/{property_mapping_id}/room-mappings", response_model=List[RoomMappingResponse])
async def list_room_mappings(
    property_mapping_id: str,
    db: Session = Depends(get_db)
):
    return db.query(RoomMapping).filter(RoomMapping.property_mapping_id == property_mapping_id).all()


# ==================
# ARI Push
# ==================

@router.post("/ari/push", response_model=PushResultResponse)
async def push_ari(
    payload: ARIPushRequest,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    """
    Push rates, availability and restrictions for one room type.

    Batches that fail are reported in `errors`; accepted batches stand.
    """
    try:
        date_range = DateRange(payload.start_date, payload.end_date)
        updates = FieldUpdates.from_dict(payload.updates.to_dict())
        overrides = {day: FieldUpdates.from_dict(o.to_dict()) for day, o in payload.overrides.items()}
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    service = ARIPushService(db, client)
    try:
        result = await service.push(
            payload.hotel_id,
            payload.room_type_id,
            date_range,
            updates,
            overrides=overrides,
            rate_plan_id=payload.rate_plan_id,
            deadline_seconds=payload.deadline_seconds
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return PushResultResponse(**result.to_dict())


# ==================
# Bookings
# ==================

@router.post("/connections/{connection_id}/bookings/pull", response_model=IngestSummaryResponse)
async def pull_bookings(
    connection_id: str,
    payload: Optional[BookingPullRequest] = None,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    connection = _load_connection(db, client, connection_id)
    filters = BookingFilters()
    if payload is not None:
        values = payload.model_dump(exclude_none=True)
        filters = BookingFilters(**values)

    summary = await BookingIngestor(db, client).pull(connection, filters)
    return IngestSummaryResponse(**asdict(summary))


@router.post("/connections/{connection_id}/bookings", response_model=ProcessingResultResponse)
async def receive_booking(
    connection_id: str,
    raw_booking: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    """
    Ingest one booking pushed by the provider.

    Always answers 200 once the delivery is recorded; processing errors
    are reported in the body and kept on the inbound record.
    """
    connection = _load_connection(db, client, connection_id)
    result = BookingIngestor(db, client).ingest(raw_booking, connection)
    return ProcessingResultResponse(**asdict(result))


# ==================
# Usage
# ==================

@router.get("/connections/{connection_id}/usage", response_model=List[UsageRecordResponse])
async def list_usage(
    connection_id: str,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db)
):
    return db.query(UsageRecord).filter(
        UsageRecord.connection_id == connection_id
    ).order_by(UsageRecord.recorded_at.desc()).limit(limit).all()


@router.get("/connections/{connection_id}/health", response_model=ConnectionHealthResponse)
async def connection_health(
    connection_id: str,
    window_hours: int = Query(24, ge=1, le=168),
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    """Token cache state and call volume, error rate and latency for the connection"""
    health = _connection_service(db, client).health(connection_id, window_hours)
    return ConnectionHealthResponse(**asdict(health))


# ==================
# Reconciliation
# ==================

@router.post("/reconcile", response_model=List[DiscrepancyResponse])
async def reconcile(
    payload: ReconcileRequest,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    engine = ReconciliationEngine(db, client)
    return await engine.reconcile(payload.hotel_id, DateRange(payload.start_date, payload.end_date))


@router.get("/discrepancies", response_model=List[DiscrepancyResponse])
async def list_discrepancies(
    hotel_id: str,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    return ReconciliationEngine(db, client).list_discrepancies(hotel_id, status)


@router.post("/discrepancies/{discrepancy_id}/resolve", response_model=DiscrepancyResponse)
async def resolve_discrepancy(
    discrepancy_id: str,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    return ReconciliationEngine(db, client).resolve(discrepancy_id)


@router.post("/discrepancies/{discrepancy_id}/ignore", response_model=DiscrepancyResponse)
async def ignore_discrepancy(
    discrepancy_id: str,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    return ReconciliationEngine(db, client).ignore(discrepancy_id)


@router.post("/discrepancies/{discrepancy_id}/correct", response_model=PushResultResponse)
async def correct_discrepancy(
    discrepancy_id: str,
    db: Session = Depends(get_db),
    client: ChannelClient = Depends(get_client)
):
    """Push the local value for the discrepancy's room and date; status is left unchanged"""
    result = await ReconciliationEngine(db, client).correct(discrepancy_id)
    return PushResultResponse(**result.to_dict())
