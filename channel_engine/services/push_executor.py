"""
Push Executor

Submits compiled ARI batches to the provider:
- Batches run one after another with a fixed delay in between
- Each batch ends up succeeded, failed or skipped; failures are collected
  as BatchError entries and do not stop later batches
- An AuthError stops submission (the connection is unusable) and marks
  the remaining batches skipped
- An optional deadline bounds the whole run; batches already accepted stand
- After the loop the requested updates are written to local storage once
"""

import asyncio
import time
from datetime import datetime
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from ..config import settings
from ..models.channel_connection import ChannelConnection, ConnectionStatus, PropertyMapping, RoomMapping
from ..utils.logging_config import get_logger
from .ari_compiler import ARICompiler, CompiledPush, DateRange, FieldUpdates, PushBatch
from .channel_client import ChannelClient
from .errors import AuthError, ChannelEngineError, MappingError, ProviderError
from .local_ari import LocalARIStore
from .provider_payloads import PushResponse

logger = get_logger(__name__)


@dataclass
class BatchError:
    """Failure of one batch"""
    batch_index: int
    error: str
    error_code: str
    status: Optional[int] = None
    details: List[Any] = field(default_factory=list)
    warnings: List[Any] = field(default_factory=list)


@dataclass
class PushResult:
    total_lines: int
    merged_lines: int
    batch_count: int
    successful_batches: int = 0
    modified_count: int = 0
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[BatchError] = field(default_factory=list)
    skipped_batches: List[int] = field(default_factory=list)
    local_days_written: int = 0
    aborted: Optional[str] = None  # "auth" or "deadline"

    @property
    def success(self) -> bool:
        return self.successful_batches == self.batch_count

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        return data


class PushExecutor:
    """
    Sequential batch submitter.

    Batches share the connection's rate-limit window, so they are never
    sent concurrently.
    """

    def __init__(
        self,
        client: ChannelClient,
        db: Optional[Session] = None,
        batch_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.client = client
        self.db = db
        self.batch_delay = settings.ari_batch_delay_seconds if batch_delay is None else batch_delay
        self.sleep = sleep
        self.calendar_path = client.settings.channel_calendar_path

    async def execute(
        self,
        batches: Union[CompiledPush, Iterable[PushBatch]],
        connection: ChannelConnection,
        remote_property_id: Optional[str] = None,
        deadline_seconds: Optional[float] = None
    ) -> PushResult:
        compiled = batches if isinstance(batches, CompiledPush) else None
        batch_list = list(batches)
        property_id = remote_property_id or (compiled.remote_property_id if compiled else None)
        if not property_id:
            raise ValueError("remote_property_id is required for plain batch lists")

        line_count = sum(len(b) for b in batch_list)
        result = PushResult(
            total_lines=compiled.total_lines if compiled else line_count,
            merged_lines=compiled.merged_lines if compiled else line_count,
            batch_count=len(batch_list),
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + deadline_seconds if deadline_seconds is not None else None

        for position, batch in enumerate(batch_list):
            if result.aborted:
                self._skip(result, batch)
                continue

            if position > 0 and self.batch_delay > 0:
                await self.sleep(self.batch_delay)

            remaining = deadline - loop.time() if deadline is not None else None
            if remaining is not None and remaining <= 0:
                result.aborted = "deadline"
                self._skip(result, batch)
                continue

            await self._submit(result, batch, connection, property_id, remaining)

        if result.aborted:
            logger.warning(
                f"[{connection.id}] Push aborted ({result.aborted}); "
                f"{len(result.skipped_batches)} batches not submitted"
            )

        if compiled is not None and self.db is not None and compiled.hotel_id:
            store = LocalARIStore(self.db)
            result.local_days_written = store.write(
                compiled.hotel_id,
                compiled.room_type_id,
                compiled.rate_plan_id,
                compiled.date_range,
                compiled.updates_for,
            )
            self.db.commit()

        logger.info(
            f"[{connection.id}] Push complete: {result.successful_batches}/{result.batch_count} batches, "
            f"{result.modified_count} modified, {len(result.errors)} errors"
        )
        return result

    async def _submit(
        self,
        result: PushResult,
        batch: PushBatch,
        connection: ChannelConnection,
        property_id: str,
        timeout: Optional[float]
    ) -> None:
        start_time = time.monotonic()
        try:
            call = self.client.call(
                self.calendar_path,
                "POST",
                batch.to_payload(property_id),
                connection,
            )
            if timeout is not None:
                data, _ = await asyncio.wait_for(call, timeout)
            else:
                data, _ = await call
        except asyncio.TimeoutError:
            result.aborted = "deadline"
            batch.status = "skipped"
            result.skipped_batches.append(batch.index)
            result.errors.append(BatchError(batch.index, "Deadline reached during submission", "deadline"))
            return
        except AuthError as e:
            result.aborted = "auth"
            self._fail(result, batch, e)
            return
        except ChannelEngineError as e:
            self._fail(result, batch, e)
            return

        response = PushResponse.from_payload(data)
        batch.modified_count = response.modified_count
        batch.errors = response.errors
        batch.warnings = response.warnings
        for warning in response.warnings:
            result.warnings.append({"batch": batch.index, "warning": warning})

        if response.success:
            batch.status = "succeeded"
            result.successful_batches += 1
            result.modified_count += response.modified_count
            logger.batch_pushed(
                connection.id, batch.index, len(batch), response.modified_count,
                duration_ms=int((time.monotonic() - start_time) * 1000)
            )
        else:
            batch.status = "failed"
            result.errors.append(BatchError(
                batch_index=batch.index,
                error="Provider reported errors for batch",
                error_code="batch_rejected",
                details=response.errors,
                warnings=response.warnings,
            ))
            logger.warning(f"[{connection.id}] Batch {batch.index} rejected: {response.errors}")

    @staticmethod
    def _fail(result: PushResult, batch: PushBatch, error: ChannelEngineError) -> None:
        batch.status = "failed"
        batch.errors = [error.message]
        result.errors.append(BatchError(
            batch_index=batch.index,
            error=error.message,
            error_code=error.code,
            status=error.status if isinstance(error, ProviderError) else None,
        ))
        logger.warning(f"Batch {batch.index} failed: {error.message}")

    @staticmethod
    def _skip(result: PushResult, batch: PushBatch) -> None:
        batch.status = "skipped"
        result.skipped_batches.append(batch.index)


class ARIPushService:
    """
    End-to-end ARI push for a local room type: resolve mapping, compile, execute.
    """

    def __init__(
        self,
        db: Session,
        client: ChannelClient,
        compiler: Optional[ARICompiler] = None,
        executor: Optional[PushExecutor] = None
    ):
        self.db = db
        self.client = client
        self.compiler = compiler or ARICompiler()
        self.executor = executor or PushExecutor(client, db)

    def resolve_mapping(self, hotel_id: str, room_type_id: str, rate_plan_id: Optional[str] = None) -> RoomMapping:
        query = self.db.query(RoomMapping).join(PropertyMapping).join(ChannelConnection).filter(
            PropertyMapping.hotel_id == hotel_id,
            RoomMapping.local_room_type_id == room_type_id,
            ChannelConnection.status == ConnectionStatus.ACTIVE.value
        )
        mappings = query.all()
        if not mappings:
            raise MappingError(f"Room type {room_type_id} of hotel {hotel_id} is not mapped to an active connection")

        if rate_plan_id:
            for mapping in mappings:
                if mapping.local_rate_plan_id == rate_plan_id:
                    return mapping
            raise MappingError(f"Rate plan {rate_plan_id} of room type {room_type_id} is not mapped")

        # Prefer the room-level mapping over rate-code mappings
        mappings.sort(key=lambda m: (m.remote_rate_code is not None, m.created_at or datetime.min))
        return mappings[0]

    async def push(
        self,
        hotel_id: str,
        room_type_id: str,
        date_range: DateRange,
        field_updates: Union[FieldUpdates, Dict[str, Any]],
        overrides: Optional[Dict] = None,
        rate_plan_id: Optional[str] = None,
        deadline_seconds: Optional[float] = None
    ) -> PushResult:
        mapping = self.resolve_mapping(hotel_id, room_type_id, rate_plan_id)
        compiled = self.compiler.compile(mapping, date_range, field_updates, overrides)
        connection = mapping.property_mapping.connection
        return await self.executor.execute(compiled, connection, deadline_seconds=deadline_seconds)
