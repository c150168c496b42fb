"""
Channel Engine Errors

Taxonomy surfaced by the engine:
- AuthError: credential invalid/expired, unrecoverable without re-link
- RateLimitExceeded: rate-limit retries exhausted
- TransportError: network failure or timeout after retries
- ProviderError: any other non-2xx answer, never retried
- MappingError: no local entity for a remote code
- ProcessingError: booking-level failure during ingest
- DiscrepancyStateError: action on a discrepancy already in a terminal status
- NotFoundError: referenced connection, mapping or discrepancy does not exist
"""

from typing import Any, Dict, Optional


class ChannelEngineError(Exception):
    """Base class for all engine errors"""
    code = "channel_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class AuthError(ChannelEngineError):
    code = "auth_error"
    status_code = 401

    def __init__(self, message: str, connection_id: Optional[str] = None):
        super().__init__(message)
        self.connection_id = connection_id


class RateLimitExceeded(ChannelEngineError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class TransportError(ChannelEngineError):
    code = "transport_error"
    status_code = 502


class ProviderError(ChannelEngineError):
    code = "provider_error"
    status_code = 502

    def __init__(self, status: int, body: Any, message: Optional[str] = None):
        super().__init__(message or describe_status(status, body))
        self.status = status
        self.body = body

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status
        return data


class MappingError(ChannelEngineError):
    code = "mapping_error"
    status_code = 422


class ProcessingError(ChannelEngineError):
    code = "processing_error"
    status_code = 422


class DiscrepancyStateError(ChannelEngineError):
    code = "discrepancy_state"
    status_code = 409


class NotFoundError(ChannelEngineError):
    code = "not_found"
    status_code = 404


# Known provider statuses, used to describe ProviderError
ERROR_MAP = {
    400: "Malformed request",
    403: "Access denied to this resource",
    404: "Resource not found",
    409: "Conflicting update",
    422: "Invalid request data",
    500: "Provider server error",
    502: "Provider gateway error",
    503: "Provider service unavailable",
}


def describe_status(status: int, body: Any = None) -> str:
    """Human message for a provider status, preferring the body's own message"""
    if isinstance(body, dict):
        error = body.get("error")
        msg = (error.get("message") if isinstance(error, dict) else error) or body.get("message")
        if msg:
            return f"Provider error {status}: {msg}"

    known = ERROR_MAP.get(status)
    if known:
        return f"Provider error {status}: {known}"
    return f"Provider error {status}"
