# Services package
from .errors import (
    ChannelEngineError, AuthError, RateLimitExceeded, TransportError,
    ProviderError, MappingError, ProcessingError, DiscrepancyStateError, NotFoundError
)
from .retry_policy import RetryPolicy, RetryKind
from .token_manager import TokenManager, TokenCache
from .channel_client import ChannelClient, UsageRecorder
from .ari_compiler import ARICompiler, FieldUpdates, DateRange, CalendarLine, PushBatch, CompiledPush
from .push_executor import PushExecutor, PushResult, BatchError, ARIPushService
from .booking_ingestor import BookingIngestor, BookingFilters, ProcessingResult, IngestSummary
from .reconciliation import ReconciliationEngine
from .connection_service import ConnectionService, LinkResult, PropertySyncResult
from .engine import ChannelEngine

__all__ = [
    "ChannelEngineError", "AuthError", "RateLimitExceeded", "TransportError",
    "ProviderError", "MappingError", "ProcessingError", "DiscrepancyStateError", "NotFoundError",
    "RetryPolicy", "RetryKind",
    "TokenManager", "TokenCache",
    "ChannelClient", "UsageRecorder",
    "ARICompiler", "FieldUpdates", "DateRange", "CalendarLine", "PushBatch", "CompiledPush",
    "PushExecutor", "PushResult", "BatchError", "ARIPushService",
    "BookingIngestor", "BookingFilters", "ProcessingResult", "IngestSummary",
    "ReconciliationEngine",
    "ConnectionService", "LinkResult", "PropertySyncResult",
    "ChannelEngine",
]
