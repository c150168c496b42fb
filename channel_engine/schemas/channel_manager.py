"""
Channel Manager Schemas

Pydantic models for channel manager API requests and responses.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, model_validator


# ==================
# Connection
# ==================

class LinkRequest(BaseModel):
    """Schema for linking a hotel with a one-time setup code"""
    hotel_id: str = Field(..., description="Hotel to attach the connection to")
    setup_code: str = Field(..., description="One-time setup code issued by the provider")
    device_name: Optional[str] = None


class RelinkRequest(BaseModel):
    setup_code: str
    device_name: Optional[str] = None
    reset_mappings: bool = False


class ConnectionResponse(BaseModel):
    """Schema for connection response"""
    id: str
    hotel_id: str
    provider: str
    remote_account_id: Optional[str]
    status: str
    scopes: Optional[List[str]] = None
    last_used_at: Optional[datetime]
    last_sync_at: Optional[datetime]
    last_error: Optional[str]
    error_count: int
    created_at: datetime
    # Note: the refresh credential is NOT exposed in responses

    class Config:
        from_attributes = True


class RemoteRoomResponse(BaseModel):
    remote_property_id: str
    remote_room_id: str
    name: Optional[str] = None


class PropertySyncResponse(BaseModel):
    success: bool
    properties: int
    properties_created: int
    rooms: List[RemoteRoomResponse] = []
    error: Optional[str] = None


class LinkResponse(BaseModel):
    success: bool
    connection_id: Optional[str]
    sync: Optional[PropertySyncResponse] = None


# ==================
# Mappings
# ==================

class PropertyMappingResponse(BaseModel):
    id: str
    connection_id: str
    hotel_id: str
    remote_property_id: str
    name: Optional[str]
    default_room_type_id: Optional[str]
    default_rate_plan_id: Optional[str]

    class Config:
        from_attributes = True


class PropertyDefaultsUpdate(BaseModel):
    default_room_type_id: Optional[str] = None
    default_rate_plan_id: Optional[str] = None


class RoomMappingCreate(BaseModel):
    """Schema for creating a room mapping"""
    property_mapping_id: str
    local_room_type_id: str
    remote_room_id: str
    remote_rate_code: Optional[str] = None
    local_rate_plan_id: Optional[str] = None


class RoomMappingResponse(BaseModel):
    id: str
    property_mapping_id: str
    local_room_type_id: str
    remote_room_id: str
    remote_rate_code: Optional[str]
    local_rate_plan_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# ==================
# ARI Push
# ==================

class FieldUpdatesSchema(BaseModel):
    """Any subset of ARI fields; absent fields are left untouched"""
    rate: Optional[Decimal] = None
    availability: Optional[int] = None
    stop_sell: Optional[bool] = None
    closed_to_arrival: Optional[bool] = None
    closed_to_departure: Optional[bool] = None
    min_stay: Optional[int] = None
    max_stay: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ARIPushRequest(BaseModel):
    hotel_id: str
    room_type_id: str
    rate_plan_id: Optional[str] = None
    start_date: date
    end_date: date
    updates: FieldUpdatesSchema
    overrides: Dict[date, FieldUpdatesSchema] = {}
    deadline_seconds: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class BatchErrorResponse(BaseModel):
    batch_index: int
    error: str
    error_code: str
    status: Optional[int] = None
    details: List[Any] = []
    warnings: List[Any] = []


class PushResultResponse(BaseModel):
    success: bool
    total_lines: int
    merged_lines: int
    batch_count: int
    successful_batches: int
    modified_count: int
    warnings: List[Dict[str, Any]] = []
    errors: List[BatchErrorResponse] = []
    skipped_batches: List[int] = []
    local_days_written: int = 0
    aborted: Optional[str] = None


# ==================
# Bookings
# ==================

class BookingPullRequest(BaseModel):
    arrival_from: Optional[date] = None
    arrival_to: Optional[date] = None
    modified_from: Optional[datetime] = None
    modified_to: Optional[datetime] = None
    statuses: Optional[List[str]] = None
    remote_property_id: Optional[str] = None


class ProcessingResultResponse(BaseModel):
    success: bool
    action: str
    remote_booking_id: Optional[str] = None
    reservation_id: Optional[str] = None
    inbound_booking_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    modified_at: Optional[datetime] = None


class IngestSummaryResponse(BaseModel):
    total: int
    created: int
    updated: int
    stale: int
    errors: int
    results: List[ProcessingResultResponse] = []


# ==================
# Usage
# ==================

class UsageRecordResponse(BaseModel):
    id: str
    connection_id: str
    path: str
    method: str
    status_code: Optional[int]
    remaining: Optional[int]
    resets_in: Optional[float]
    request_cost: Optional[int]
    duration_ms: Optional[int] = None
    recorded_at: datetime

    class Config:
        from_attributes = True


# ==================
# Reconciliation
# ==================

class ReconcileRequest(BaseModel):
    hotel_id: str
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def validate_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class DiscrepancyResponse(BaseModel):
    id: str
    hotel_id: str
    connection_id: Optional[str]
    channel: str
    room_type_id: str
    remote_room_id: Optional[str]
    date: date
    discrepancy_type: str
    field: str
    severity: str
    status: str
    local_value: Optional[str]
    remote_value: Optional[str]
    difference: Optional[float]
    description: Optional[str]
    detected_at: datetime
    resolved_at: Optional[datetime]

    class Config:
        from_attributes = True


class TokenHealthResponse(BaseModel):
    operation_class: str
    cached: bool
    expires_at: Optional[datetime] = None
    valid: bool


class ConnectionHealthResponse(BaseModel):
    """Token state and call telemetry over the last `window_hours`"""
    connection_id: str
    status: str
    last_error: Optional[str] = None
    last_used_at: Optional[datetime] = None
    tokens: List[TokenHealthResponse]
    window_hours: int
    calls: int
    errors: int
    rate_limited: int
    error_rate: float
    avg_duration_ms: Optional[float] = None
    credits_used: int
    remaining: Optional[int] = None
