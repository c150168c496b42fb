# Models package
from .channel_connection import (
    ChannelConnection,
    ConnectionToken,
    PropertyMapping,
    RoomMapping,
    ConnectionStatus,
    OperationClass
)
from .inventory import DailyRate, InventoryDay
from .reservation import (
    InboundBooking,
    Guest,
    Reservation,
    ReservationCharge,
    InboundStatus,
    ReservationStatus
)
from .discrepancy import (
    Discrepancy,
    DiscrepancyType,
    DiscrepancySeverity,
    DiscrepancyStatus,
    TERMINAL_STATUSES
)
from .usage_record import UsageRecord

__all__ = [
    "ChannelConnection", "ConnectionToken", "PropertyMapping", "RoomMapping",
    "ConnectionStatus", "OperationClass",
    "DailyRate", "InventoryDay",
    "InboundBooking", "Guest", "Reservation", "ReservationCharge",
    "InboundStatus", "ReservationStatus",
    "Discrepancy", "DiscrepancyType", "DiscrepancySeverity", "DiscrepancyStatus", "TERMINAL_STATUSES",
    "UsageRecord",
]
