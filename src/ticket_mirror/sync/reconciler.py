"""Delta reconciliation from the remote system into the record repository.

A run pulls the records changed inside the delta window through the failure
gate, then works through them in sequential batches. Records inside a batch
are reconciled concurrently on a bounded pool, each one isolated: a record
that keeps failing is reported in the batch result and never stops its
siblings. Writes to the same key are serialized, and a stored copy is only
overwritten by a strictly newer remote timestamp.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from ticket_mirror.config import SyncSettings
from ticket_mirror.domain.records import (
    BatchSyncResult,
    CanonicalRecord,
    RecordFailure,
    UNKNOWN_EXTERNAL_ID,
    RecordType,
    SyncStatus,
)
from ticket_mirror.events.bus import EventBus, record_topic
from ticket_mirror.gate.breaker import FailureGate
from ticket_mirror.remote.client import RawRecord, RemoteClient
from ticket_mirror.remote.filters import build_delta_filter
from ticket_mirror.storage.repository import (
    NotFoundError,
    RecordRepository,
    ValidationError,
    WriteResult,
)
from ticket_mirror.sync.transform import extract_value, transform_record
from ticket_mirror.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)

# Deterministic errors: retrying cannot change the outcome.
_NON_RETRYABLE = (ValidationError, NotFoundError)

_DEGRADED_ERROR_RATE = 0.1
_UNHEALTHY_ERROR_RATE = 0.3

Transform = Callable[[RawRecord, RecordType], CanonicalRecord]


class SyncAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SyncOptions:
    batch_size: int = 100
    max_attempts: int = 3
    window: timedelta = timedelta(hours=1)
    # Explicit window start; overrides ``window`` when set.
    since: datetime | None = None
    # Overrides the active states of the record type when set.
    states: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "SyncOptions":
        return cls(
            batch_size=settings.batch_size,
            max_attempts=settings.max_attempts,
            window=timedelta(minutes=settings.window_minutes),
        )


@dataclass
class _Outcome:
    action: SyncAction | None = None
    failure: RecordFailure | None = None


@dataclass
class _RunState:
    last_results: dict[RecordType, BatchSyncResult] = field(default_factory=dict)
    last_sync_at: datetime | None = None
    active_runs: int = 0
    full_sync_running: bool = False


class Reconciler:
    def __init__(
        self,
        remote: RemoteClient,
        repository: RecordRepository,
        gate: FailureGate,
        *,
        event_bus: EventBus | None = None,
        transform: Transform = transform_record,
        options: SyncOptions | None = None,
        max_workers: int = 8,
        actor: str = "reconciler",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._remote = remote
        self._repository = repository
        self._gate = gate
        self._event_bus = event_bus
        self._transform = transform
        self._options = options or SyncOptions()
        self._actor = actor
        self._clock = clock
        self._workers = asyncio.Semaphore(max_workers)
        self._key_locks: weakref.WeakValueDictionary[tuple[str, RecordType], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._state = _RunState()
        self._continuous_task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def options(self) -> SyncOptions:
        return self._options

    @property
    def last_results(self) -> dict[RecordType, BatchSyncResult]:
        return dict(self._state.last_results)

    @property
    def is_running(self) -> bool:
        return self._state.active_runs > 0

    @property
    def is_continuous(self) -> bool:
        return self._continuous_task is not None and not self._continuous_task.done()

    async def sync_type(
        self, record_type: RecordType, options: SyncOptions | None = None
    ) -> BatchSyncResult:
        """Reconcile the delta window of one record type."""
        return await self._run_type(record_type, options or self._options, stop=None)

    async def _run_type(
        self,
        record_type: RecordType,
        options: SyncOptions,
        *,
        stop: asyncio.Event | None,
    ) -> BatchSyncResult:
        result = BatchSyncResult(record_type=record_type, started_at=self._clock())
        started = time.monotonic()
        self._state.active_runs += 1
        try:
            await self._run_batches(record_type, options, result, stop)
        finally:
            self._state.active_runs -= 1
            result.duration_ms = int((time.monotonic() - started) * 1000)
            self._state.last_results[record_type] = result
            self._state.last_sync_at = self._clock()

        log = logger.warning if result.failed else logger.info
        log(
            "Sync %s finished: processed=%d created=%d updated=%d skipped=%d failed=%d (%dms)",
            record_type.value,
            result.processed,
            result.created,
            result.updated,
            result.skipped,
            result.failed,
            result.duration_ms,
        )
        return result

    async def _run_batches(
        self,
        record_type: RecordType,
        options: SyncOptions,
        result: BatchSyncResult,
        stop: asyncio.Event | None,
    ) -> None:
        states = options.states or tuple(
            self._repository.rules.for_type(record_type).active_states
        )
        filter_expression = build_delta_filter(states)
        window_start = options.since or (self._clock() - options.window)

        try:
            raw_records = await self._gate.execute(
                lambda: self._remote.query(record_type, filter_expression, window_start)
            )
        except Exception as exc:
            # Nothing was fetched, so there is no record to blame.
            logger.error("Sync %s aborted: %s", record_type.value, exc)
            result.aborted = True
            result.failed = 1
            result.failures.append(RecordFailure(None, str(exc)))
            return

        total = len(raw_records)
        logger.info(
            "Sync %s: %d candidates since %s", record_type.value, total, to_iso(window_start)
        )
        for offset in range(0, total, options.batch_size):
            batch = raw_records[offset : offset + options.batch_size]
            outcomes = await asyncio.gather(
                *(self._process_record(raw, record_type, options.max_attempts) for raw in batch)
            )
            for outcome in outcomes:
                result.processed += 1
                if outcome.failure is not None:
                    result.failed += 1
                    result.failures.append(outcome.failure)
                elif outcome.action is SyncAction.CREATED:
                    result.created += 1
                elif outcome.action is SyncAction.UPDATED:
                    result.updated += 1
                else:
                    result.skipped += 1
            logger.debug(
                "Sync %s progress: %d/%d", record_type.value, result.processed, total
            )
            if stop is not None and stop.is_set() and result.processed < total:
                logger.info(
                    "Sync %s stopped after %d/%d records", record_type.value, result.processed, total
                )
                return

    async def _process_record(
        self, raw: Any, record_type: RecordType, max_attempts: int
    ) -> _Outcome:
        if not isinstance(raw, dict):
            message = f"Malformed remote record: expected an object, got {type(raw).__name__}"
            logger.warning("Record %s skipped: %s", record_type.value, message)
            return _Outcome(failure=RecordFailure(UNKNOWN_EXTERNAL_ID, message))

        external_id = extract_value(raw.get("sys_id")) or UNKNOWN_EXTERNAL_ID
        action: SyncAction | None = None
        written: WriteResult | None = None
        last_error: Exception | None = None
        # The key lock spans every attempt and the error mark.
        async with self._workers, self._lock_for((external_id, record_type)):
            for attempt in range(1, max_attempts + 1):
                try:
                    action, written = await self._write(self._transform(raw, record_type))
                    break
                except _NON_RETRYABLE as exc:
                    last_error = exc
                    break
                except Exception as exc:
                    last_error = exc
                    logger.debug(
                        "Record %s attempt %d/%d failed: %s",
                        external_id,
                        attempt,
                        max_attempts,
                        exc,
                    )

            if action is None:
                message = str(last_error) or type(last_error).__name__
                logger.warning("Record %s %s failed: %s", record_type.value, external_id, message)
                if external_id != UNKNOWN_EXTERNAL_ID:
                    await self._mark_error(external_id, record_type, message)
                return _Outcome(failure=RecordFailure(external_id, message))

        if written is not None:
            await self._publish(written)
        return _Outcome(action=action)

    def _lock_for(self, key: tuple[str, RecordType]) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    async def _write(self, record: CanonicalRecord) -> tuple[SyncAction, WriteResult | None]:
        """Check-then-write one record; the caller holds its key lock."""
        existing = await self._repository.get(record.external_id, record.record_type)
        if existing is not None and not _should_overwrite(record, existing):
            return SyncAction.SKIPPED, None
        written = await self._repository.save(record, actor=self._actor)
        if existing is None:
            return SyncAction.CREATED, written
        if written.action is None:
            # Rewritten for recovery only; nothing in the audit trail changed.
            return SyncAction.SKIPPED, written
        return SyncAction.UPDATED, written

    async def _publish(self, written: WriteResult) -> None:
        if self._event_bus is None or written.action is None:
            return
        record = written.record
        event: dict[str, Any] = {
            "external_id": record.external_id,
            "record_type": record.record_type.value,
            "display_number": record.display_number,
            "action": written.action.value,
            "changes": written.changes,
            "occurred_at": to_iso(self._clock()),
        }
        try:
            await self._event_bus.publish(record_topic(record.record_type, written.action), event)
        except Exception as exc:
            logger.warning("Event publish failed for %s: %s", record.external_id, exc)

    async def _mark_error(self, external_id: str, record_type: RecordType, message: str) -> None:
        try:
            await self._repository.mark_sync_status(
                external_id, record_type, SyncStatus.ERROR, message
            )
        except NotFoundError:
            pass
        except Exception as exc:
            logger.warning("Could not mark %s %s as error: %s", record_type.value, external_id, exc)

    async def sync_one(self, external_id: str, record_type: RecordType) -> bool:
        """Fetch and reconcile one record by id, outside any delta window."""
        async with self._lock_for((external_id, record_type)):
            try:
                raw = await self._gate.execute(
                    lambda: self._remote.fetch_one(record_type, external_id)
                )
                if raw is None:
                    raise LookupError(f"{record_type.value} {external_id} not found on remote")
                action, written = await self._write(self._transform(raw, record_type))
            except Exception as exc:
                logger.error("Sync of %s %s failed: %s", record_type.value, external_id, exc)
                await self._mark_error(external_id, record_type, str(exc) or type(exc).__name__)
                return False

        if written is not None:
            await self._publish(written)
        logger.info("Synced %s %s (%s)", record_type.value, external_id, action.value)
        return True

    async def sync_all(
        self,
        record_types: Iterable[RecordType] | None = None,
        options: SyncOptions | None = None,
    ) -> dict[RecordType, BatchSyncResult]:
        return await self._sync_all(record_types, options or self._options, stop=None)

    async def _sync_all(
        self,
        record_types: Iterable[RecordType] | None,
        options: SyncOptions,
        *,
        stop: asyncio.Event | None,
    ) -> dict[RecordType, BatchSyncResult]:
        if self._state.full_sync_running:
            logger.warning("Full sync already in progress, skipping")
            return {}

        self._state.full_sync_running = True
        results: dict[RecordType, BatchSyncResult] = {}
        try:
            for record_type in list(record_types or RecordType):
                results[record_type] = await self._run_type(record_type, options, stop=stop)
                if stop is not None and stop.is_set():
                    break
        finally:
            self._state.full_sync_running = False
        return results

    def start_continuous_sync(
        self,
        record_types: Iterable[RecordType] | None = None,
        *,
        interval: float = 300.0,
        options: SyncOptions | None = None,
    ) -> bool:
        """Start the recurring sync task; returns False if it is already running."""
        if self.is_continuous:
            logger.warning("Continuous sync already running")
            return False

        types = tuple(record_types or RecordType)
        self._stop_event = asyncio.Event()
        self._continuous_task = asyncio.get_running_loop().create_task(
            self._continuous_loop(types, interval, options or self._options, self._stop_event),
            name="ticket-mirror-continuous-sync",
        )
        logger.info(
            "Continuous sync started: types=%s interval=%.1fs",
            ",".join(rt.value for rt in types),
            interval,
        )
        return True

    async def _continuous_loop(
        self,
        record_types: tuple[RecordType, ...],
        interval: float,
        options: SyncOptions,
        stop: asyncio.Event,
    ) -> None:
        while not stop.is_set():
            try:
                await self._sync_all(record_types, options, stop=stop)
            except Exception:
                logger.exception("Continuous sync cycle failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Continuous sync stopped")

    def stop_continuous_sync(self) -> None:
        """Cancel the timer; a run in flight finishes its current batch."""
        if not self.is_continuous or self._stop_event is None:
            logger.info("Continuous sync is not running")
            return
        self._stop_event.set()

    async def drain(self) -> None:
        """Wait for the continuous task to wind down after a stop."""
        task = self._continuous_task
        if task is None:
            return
        await task
        self._continuous_task = None

    async def get_stats(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "continuous": self.is_continuous,
            "repository": await self._repository.get_stats(),
            "last_sync_at": to_iso(self._state.last_sync_at),
            "last_results": {
                record_type.value: result.to_dict()
                for record_type, result in self._state.last_results.items()
            },
            "gate": self._gate.get_health_status(),
        }

    def get_health_status(self) -> dict[str, Any]:
        processed = sum(r.processed for r in self._state.last_results.values())
        failed = sum(r.failed for r in self._state.last_results.values())
        error_rate = failed / max(processed, 1) if failed else 0.0

        if error_rate < _DEGRADED_ERROR_RATE:
            status = "healthy"
        elif error_rate < _UNHEALTHY_ERROR_RATE:
            status = "degraded"
        else:
            status = "unhealthy"

        gate_health = self._gate.get_health_status()
        if status == "healthy" and not gate_health["healthy"]:
            status = "degraded"

        return {
            "status": status,
            "error_rate": round(error_rate, 3),
            "last_sync_at": to_iso(self._state.last_sync_at),
            "gate": gate_health,
        }


def _should_overwrite(incoming: CanonicalRecord, stored: CanonicalRecord) -> bool:
    """Last writer wins by remote timestamp; an equal timestamp keeps the stored copy.

    A stored copy left in error by a failed write is rewritten on an equal
    timestamp so the record can recover.
    """
    if stored.remote_updated_at is None:
        return True
    if incoming.remote_updated_at is None:
        return False
    if incoming.remote_updated_at > stored.remote_updated_at:
        return True
    return (
        incoming.remote_updated_at == stored.remote_updated_at
        and stored.sync_status is SyncStatus.ERROR
    )
