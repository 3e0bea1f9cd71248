"""Validated, audited record repository.

The repository is the only writer of canonical records and audit entries.
Every write is validated against the record rules first; a failed validation
writes nothing. A write and its audit entry share one store transaction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ticket_mirror.domain.records import (
    BOOKKEEPING_FIELDS,
    DATETIME_FIELDS,
    AuditAction,
    AuditEntry,
    CanonicalRecord,
    RecordType,
    SyncStatus,
)
from ticket_mirror.rules.models import RecordRules
from ticket_mirror.rules.schema import build_record_schema
from ticket_mirror.storage.document_store import DocumentStore, Filter, SortSpec
from ticket_mirror.utils.jsonschema import validate_payload_structured
from ticket_mirror.utils.time import from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

_KEY_FIELDS = frozenset({"external_id", "record_type"})

_RECORD_INDEXES: list[tuple[list[tuple[str, Any]], bool]] = [
    ([("external_id", 1), ("record_type", 1)], True),
    ([("state", 1)], False),
    ([("priority", 1)], False),
    ([("assignment_group", 1)], False),
    ([("assigned_to", 1)], False),
    ([("remote_updated_at", -1)], False),
    ([("opened_at", -1)], False),
    ([("last_synced_at", -1)], False),
    ([("sync_status", 1)], False),
    ([("state", 1), ("assignment_group", 1)], False),
    ([("short_description", "text"), ("description", "text"), ("notes", "text")], False),
]

_AUDIT_INDEXES: list[list[tuple[str, Any]]] = [
    [("external_id", 1), ("performed_at", -1)],
    [("record_type", 1), ("action", 1), ("performed_at", -1)],
    [("performed_by", 1), ("performed_at", -1)],
]


class RepositoryError(Exception):
    """Base exception for repository operations."""

    pass


class ValidationError(RepositoryError):
    """Raised when a record violates the record rules."""

    def __init__(self, field: str | None, message: str):
        self.field = field
        super().__init__(f"{field}: {message}" if field else message)


class NotFoundError(RepositoryError):
    """Raised when the target record does not exist."""

    def __init__(self, external_id: str, record_type: RecordType):
        self.external_id = external_id
        self.record_type = record_type
        super().__init__(f"{record_type.value} record {external_id!r} not found")


@dataclass(frozen=True)
class WriteResult:
    record: CanonicalRecord
    action: AuditAction | None
    changes: dict[str, dict[str, Any]] = field(default_factory=dict)


def compute_diff(old: dict[str, Any] | None, new: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Field-level diff of two stored documents.

    A field missing from ``old`` has no ``"old"`` key, which keeps "absent"
    distinct from an explicit ``None`` or empty string.
    """
    old = old or {}
    changes: dict[str, dict[str, Any]] = {}
    for name in sorted(set(old) | set(new)):
        if name in BOOKKEEPING_FIELDS:
            continue
        if name not in old:
            changes[name] = {"new": new[name]}
        elif name not in new:
            changes[name] = {"old": old[name]}
        elif old[name] != new[name]:
            changes[name] = {"old": old[name], "new": new[name]}
    return changes


def _normalize_patch_value(name: str, value: Any) -> Any:
    if name in DATETIME_FIELDS:
        if isinstance(value, datetime):
            return to_iso(value)
        if value is not None:
            try:
                return to_iso(from_iso(str(value)))
            except ValueError as exc:
                raise ValidationError(name, f"invalid datetime {value!r}") from exc
    if isinstance(value, Enum):
        return value.value
    return value


class RecordRepository:
    def __init__(
        self,
        store: DocumentStore,
        rules: RecordRules,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._rules = rules
        self._clock = clock
        self._schemas = {
            record_type: build_record_schema(rules, record_type) for record_type in RecordType
        }

    @property
    def rules(self) -> RecordRules:
        return self._rules

    def collection_for(self, record_type: RecordType) -> str:
        return self._rules.for_type(record_type).collection

    async def initialize(self) -> None:
        await asyncio.to_thread(self._initialize_sync)

    def _initialize_sync(self) -> None:
        for record_type in RecordType:
            collection = self.collection_for(record_type)
            for spec, unique in _RECORD_INDEXES:
                self._store.create_index(collection, spec, unique=unique)
        for spec in _AUDIT_INDEXES:
            self._store.create_index(self._rules.audit_collection, spec)
        logger.info("Record repository initialized (%d collections)", len(RecordType) + 1)

    def validate(self, record: CanonicalRecord) -> None:
        """Raise ``ValidationError`` for the first rule the record breaks."""
        document = record.to_document()
        violations = validate_payload_structured(self._schemas[record.record_type], document)
        if violations:
            first = violations[0]
            raise ValidationError(first.field, first.message)
        if record.sync_status is SyncStatus.ERROR and not record.sync_error:
            raise ValidationError("sync_error", "required when sync_status is error")

    async def save(self, record: CanonicalRecord, actor: str = "reconciler") -> WriteResult:
        return await asyncio.to_thread(self._save_sync, record, actor)

    def _save_sync(self, record: CanonicalRecord, actor: str) -> WriteResult:
        record = replace(
            record,
            sync_status=SyncStatus.SYNCED,
            sync_error=None,
            last_synced_at=self._clock(),
        )
        self.validate(record)

        collection = self.collection_for(record.record_type)
        document = record.to_document()
        with self._store.atomic():
            existing = self._store.find_one(
                collection,
                {"external_id": record.external_id, "record_type": record.record_type.value},
            )
            changes = compute_diff(existing, document)
            self._store.upsert(collection, record.external_id, document)
            if existing is None:
                action: AuditAction | None = AuditAction.CREATED
            elif changes:
                action = AuditAction.UPDATED
            else:
                action = None
            if action is not None:
                self._append_audit(record, action, changes, actor)

        logger.debug(
            "Saved %s %s (%s)",
            record.record_type.value,
            record.external_id,
            action.value if action else "unchanged",
        )
        return WriteResult(record=record, action=action, changes=changes)

    async def update(
        self,
        external_id: str,
        record_type: RecordType,
        patch: dict[str, Any],
        actor: str,
    ) -> WriteResult:
        return await asyncio.to_thread(self._update_sync, external_id, record_type, patch, actor)

    def _update_sync(
        self,
        external_id: str,
        record_type: RecordType,
        patch: dict[str, Any],
        actor: str,
    ) -> WriteResult:
        known = set(CanonicalRecord.__dataclass_fields__)
        for name in patch:
            if name not in known:
                raise ValidationError(name, "unknown field")
            if name in _KEY_FIELDS:
                raise ValidationError(name, "key fields cannot be patched")

        collection = self.collection_for(record_type)
        with self._store.atomic():
            existing = self._find_document(collection, external_id, record_type)
            if existing is None:
                raise NotFoundError(external_id, record_type)

            merged = dict(existing)
            for name, value in patch.items():
                merged[name] = _normalize_patch_value(name, value)
            try:
                record = CanonicalRecord.from_document(merged)
            except ValueError as exc:
                raise ValidationError(None, str(exc)) from exc
            record.sync_status = SyncStatus.SYNCED
            record.sync_error = None
            record.last_synced_at = self._clock()
            self.validate(record)

            document = record.to_document()
            changes = compute_diff(existing, document)
            self._store.upsert(collection, external_id, document)
            self._append_audit(record, AuditAction.UPDATED, changes, actor)

        logger.info(
            "Updated %s %s by %s (%d fields changed)",
            record_type.value,
            external_id,
            actor,
            len(changes),
        )
        return WriteResult(record=record, action=AuditAction.UPDATED, changes=changes)

    async def mark_sync_status(
        self,
        external_id: str,
        record_type: RecordType,
        status: SyncStatus,
        error: str | None = None,
    ) -> None:
        if status is SyncStatus.ERROR and not error:
            raise ValueError("An error message is required when marking a record as error")
        await asyncio.to_thread(self._mark_sync_status_sync, external_id, record_type, status, error)

    def _mark_sync_status_sync(
        self,
        external_id: str,
        record_type: RecordType,
        status: SyncStatus,
        error: str | None,
    ) -> None:
        collection = self.collection_for(record_type)
        with self._store.atomic():
            document = self._find_document(collection, external_id, record_type)
            if document is None:
                raise NotFoundError(external_id, record_type)
            document["sync_status"] = status.value
            if status is SyncStatus.ERROR:
                document["sync_error"] = error
            else:
                document.pop("sync_error", None)
            self._store.upsert(collection, external_id, document)

    async def get(self, external_id: str, record_type: RecordType) -> CanonicalRecord | None:
        collection = self.collection_for(record_type)
        document = await asyncio.to_thread(
            self._find_document, collection, external_id, record_type
        )
        if document is None:
            return None
        return CanonicalRecord.from_document(document)

    async def find(
        self,
        record_type: RecordType,
        filter: Filter | None = None,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[CanonicalRecord]:
        documents = await asyncio.to_thread(
            self._store.find,
            self.collection_for(record_type),
            filter,
            sort=sort,
            skip=skip,
            limit=limit,
        )
        return [CanonicalRecord.from_document(document) for document in documents]

    async def count(self, record_type: RecordType, filter: Filter | None = None) -> int:
        return await asyncio.to_thread(self._store.count, self.collection_for(record_type), filter)

    async def search(
        self, record_type: RecordType, text: str, *, limit: int = 50
    ) -> list[CanonicalRecord]:
        return await self.find(
            record_type,
            {"$text": {"$search": text}},
            sort=[("remote_updated_at", -1)],
            limit=limit,
        )

    async def records_needing_sync(
        self, record_type: RecordType, *, limit: int | None = None
    ) -> list[CanonicalRecord]:
        return await self.find(
            record_type,
            {"sync_status": {"$in": [SyncStatus.PENDING.value, SyncStatus.ERROR.value]}},
            sort=[("remote_updated_at", 1)],
            limit=limit,
        )

    async def audit_history(
        self,
        external_id: str,
        record_type: RecordType | None = None,
        *,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        filter: dict[str, Any] = {"external_id": external_id}
        if record_type is not None:
            filter["record_type"] = record_type.value
        documents = await asyncio.to_thread(
            self._store.find,
            self._rules.audit_collection,
            filter,
            sort=[("performed_at", -1)],
            limit=limit,
        )
        return [AuditEntry.from_document(document) for document in documents]

    async def get_stats(self) -> dict[str, Any]:
        return await asyncio.to_thread(self._get_stats_sync)

    def _get_stats_sync(self) -> dict[str, Any]:
        stats: dict[str, Any] = {}
        for record_type in RecordType:
            collection = self.collection_for(record_type)
            stats[record_type.value] = {
                "collection": collection,
                "total": self._store.count(collection),
                "sync_pending": self._store.count(
                    collection, {"sync_status": SyncStatus.PENDING.value}
                ),
                "sync_error": self._store.count(
                    collection, {"sync_status": SyncStatus.ERROR.value}
                ),
            }
        stats["audit_entries"] = self._store.count(self._rules.audit_collection)
        return stats

    def _find_document(
        self, collection: str, external_id: str, record_type: RecordType
    ) -> dict[str, Any] | None:
        return self._store.find_one(
            collection, {"external_id": external_id, "record_type": record_type.value}
        )

    def _append_audit(
        self,
        record: CanonicalRecord,
        action: AuditAction,
        changes: dict[str, dict[str, Any]],
        actor: str,
    ) -> None:
        entry = AuditEntry(
            external_id=record.external_id,
            record_type=record.record_type,
            action=action,
            changes=changes,
            performed_by=actor,
            performed_at=self._clock(),
            display_number=record.display_number,
        )
        self._store.insert(self._rules.audit_collection, entry.to_document())
