"""Canonical record, audit entry and batch result models."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum

from ticket_mirror.utils.time import from_iso, to_iso, utc_now


class RecordType(str, Enum):
    """Remote record kinds; the value is the remote table name."""

    INCIDENT = "incident"
    CHANGE_TASK = "change_task"
    SERVICE_TASK = "sc_task"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"


DATETIME_FIELDS = frozenset({"opened_at", "remote_updated_at", "last_synced_at"})

# Written only by the repository, never carried in a patch diff.
BOOKKEEPING_FIELDS = frozenset({"last_synced_at", "sync_status", "sync_error"})

UNKNOWN_EXTERNAL_ID = "unknown"


@dataclass
class CanonicalRecord:
    """Reconciled representation of one remote ticket-like entity.

    Relational fields (``assigned_to``, ``assignment_group``, ``caller``,
    ``parent_ref``, ``requested_for``) are opaque reference strings.
    """

    external_id: str
    display_number: str
    record_type: RecordType
    state: str
    priority: str
    short_description: str = ""
    description: str = ""
    notes: str = ""
    assigned_to: str = ""
    assignment_group: str = ""
    caller: str = ""
    parent_ref: str = ""
    requested_for: str = ""
    category: str = ""
    opened_at: datetime | None = None
    remote_updated_at: datetime | None = None
    last_synced_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_error: str | None = None

    @property
    def key(self) -> tuple[str, RecordType]:
        return (self.external_id, self.record_type)

    def to_document(self) -> dict[str, object]:
        document: dict[str, object] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name in DATETIME_FIELDS:
                value = to_iso(value)
            elif isinstance(value, Enum):
                value = value.value
            document[item.name] = value
        if document["sync_error"] is None:
            del document["sync_error"]
        return document

    @classmethod
    def from_document(cls, document: dict[str, object]) -> "CanonicalRecord":
        known = {item.name for item in fields(cls)}
        data = {key: value for key, value in document.items() if key in known}
        for name in DATETIME_FIELDS:
            if name in data:
                data[name] = from_iso(data[name])  # type: ignore[arg-type]
        data["record_type"] = RecordType(data["record_type"])
        if "sync_status" in data:
            data["sync_status"] = SyncStatus(data["sync_status"])
        return cls(**data)  # type: ignore[arg-type]


@dataclass(frozen=True)
class AuditEntry:
    external_id: str
    record_type: RecordType
    action: AuditAction
    changes: dict[str, dict[str, object]]
    performed_by: str
    performed_at: datetime
    display_number: str | None = None

    def to_document(self) -> dict[str, object]:
        return {
            "external_id": self.external_id,
            "record_type": self.record_type.value,
            "action": self.action.value,
            "changes": self.changes,
            "performed_by": self.performed_by,
            "performed_at": to_iso(self.performed_at),
            "display_number": self.display_number,
        }

    @classmethod
    def from_document(cls, document: dict[str, object]) -> "AuditEntry":
        return cls(
            external_id=str(document["external_id"]),
            record_type=RecordType(document["record_type"]),
            action=AuditAction(document["action"]),
            changes=dict(document.get("changes") or {}),  # type: ignore[arg-type]
            performed_by=str(document["performed_by"]),
            performed_at=from_iso(str(document["performed_at"])),  # type: ignore[arg-type]
            display_number=document.get("display_number"),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class RecordFailure:
    """One failed unit of a run.

    ``external_id`` is None for run-level failures and ``UNKNOWN_EXTERNAL_ID``
    for a remote row that carries no usable ``sys_id``.
    """

    external_id: str | None
    error: str


@dataclass
class BatchSyncResult:
    record_type: RecordType
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    duration_ms: int = 0
    failures: list[RecordFailure] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    aborted: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "record_type": self.record_type.value,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "duration_ms": self.duration_ms,
            "failures": [
                {"external_id": failure.external_id, "error": failure.error}
                for failure in self.failures
            ],
            "started_at": to_iso(self.started_at),
            "aborted": self.aborted,
        }
