"""
Structured Logging Configuration

Every record carries the current request id and channel connection id
(set per request by the middleware, narrowed to a connection by the
router once it is loaded). Two output formats:
- text: `time level logger [request_id/connection_id] message`
- JSON: one object per line, with the engine event name and its fields
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar('request_id', default='')
connection_id_var: ContextVar[str] = ContextVar('connection_id', default='')

TEXT_FORMAT = '%(asctime)s %(levelname)-7s %(name)s [%(request_id)s/%(connection_id)s] %(message)s'

# Chatty libraries kept at WARNING unless the engine itself runs at DEBUG
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


class ContextFilter(logging.Filter):
    """Stamps request / connection ids on every record"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or '-'
        if not getattr(record, 'connection_id', None):
            record.connection_id = connection_id_var.get() or '-'
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in ("request_id", "connection_id"):
            value = getattr(record, name, '-')
            if value and value != '-':
                entry[name] = value

        event = getattr(record, 'event', None)
        if event:
            entry["event"] = event
            entry.update(getattr(record, 'fields', {}))
        if getattr(record, 'duration_ms', None) is not None:
            entry["duration_ms"] = record.duration_ms
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """Adds named engine events on top of the plain logging methods"""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs

    def event(
        self,
        level: int,
        event: str,
        msg: str,
        connection_id: Optional[str] = None,
        duration_ms: Optional[int] = None,
        **fields
    ):
        extra: Dict[str, Any] = {"event": event, "fields": fields}
        if connection_id:
            extra["connection_id"] = connection_id
        if duration_ms is not None:
            extra["duration_ms"] = duration_ms
        self.log(level, msg, extra=extra)

    def token_refreshed(self, connection_id: str, operation_class: str, expires_in: int):
        self.event(
            logging.INFO, "token.refreshed",
            f"{operation_class} token refreshed, valid {expires_in}s",
            connection_id=connection_id,
            operation_class=operation_class,
            expires_in=expires_in
        )

    def batch_pushed(self, connection_id: str, batch_index: int, lines: int, modified: int, duration_ms: Optional[int] = None):
        self.event(
            logging.INFO, "ari.batch_pushed",
            f"Batch {batch_index}: {lines} lines sent, {modified} modified",
            connection_id=connection_id,
            duration_ms=duration_ms,
            batch_index=batch_index,
            lines=lines,
            modified=modified
        )

    def booking_ingested(self, remote_booking_id: str, action: str, reservation_id: Optional[str] = None):
        self.event(
            logging.INFO, "booking.ingested",
            f"Booking {remote_booking_id} {action}",
            remote_booking_id=remote_booking_id,
            action=action,
            reservation_id=reservation_id
        )

    def api_request(self, method: str, path: str, status_code: int, duration_ms: int):
        self.event(
            logging.INFO, "http.request",
            f"{method} {path} -> {status_code}",
            duration_ms=duration_ms,
            method=method,
            path=path,
            status=status_code
        )


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure the root handler for the engine process.

    Args:
        level: engine log level (DEBUG, INFO, WARNING, ERROR)
        json_format: one JSON object per line instead of text
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers = [handler]
        logging.getLogger(name).propagate = False

    library_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), {})


def set_request_context(request_id: str, connection_id: Optional[str] = None):
    """Bind the current request (and optionally its connection) to log records"""
    request_id_var.set(request_id)
    if connection_id:
        connection_id_var.set(connection_id)


def clear_request_context():
    request_id_var.set('')
    connection_id_var.set('')
