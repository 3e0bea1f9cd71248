"""Raw remote payload to canonical record conversion."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ticket_mirror.domain.records import CanonicalRecord, RecordType, SyncStatus
from ticket_mirror.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

_REMOTE_DATETIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d")

# Field on the raw payload holding the parent reference, per record type.
_PARENT_FIELDS: dict[RecordType, str | None] = {
    RecordType.INCIDENT: None,
    RecordType.CHANGE_TASK: "change_request",
    RecordType.SERVICE_TASK: "request",
}


def extract_value(field: Any, prefer: str = "value") -> str:
    """Unwrap a ``{"value", "display_value"}`` pair into a plain string.

    ``prefer`` picks which half wins when both are present; the other half is
    the fallback. Missing or null fields become ``""``.
    """
    if field is None:
        return ""
    if isinstance(field, dict):
        fallback = "display_value" if prefer == "value" else "value"
        for key in (prefer, fallback):
            candidate = field.get(key)
            if candidate not in (None, ""):
                return str(candidate)
        return ""
    return str(field)


def parse_remote_datetime(
    field: Any,
    *,
    now: Callable[[], datetime] = utc_now,
) -> datetime:
    """Parse a remote timestamp; anything missing or unparsable yields ``now()``."""
    text = extract_value(field).strip()
    if not text:
        return now()
    for fmt in _REMOTE_DATETIME_FORMATS:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    try:
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        logger.debug("Unparsable remote timestamp %r, using current time", text)
        return now()


def transform_record(raw: dict[str, Any], record_type: RecordType) -> CanonicalRecord:
    """Build a pending canonical record from one raw Table API row.

    Codes, identifiers and references keep the remote ``value``; free text
    keeps the ``display_value``.
    """
    external_id = extract_value(raw.get("sys_id"))
    if not external_id:
        raise ValueError("Remote record has no sys_id")

    parent_field = _PARENT_FIELDS[record_type]
    return CanonicalRecord(
        external_id=external_id,
        display_number=extract_value(raw.get("number"), prefer="display_value"),
        record_type=record_type,
        state=extract_value(raw.get("state")),
        priority=extract_value(raw.get("priority")),
        short_description=extract_value(raw.get("short_description"), prefer="display_value"),
        description=extract_value(raw.get("description"), prefer="display_value"),
        notes=extract_value(raw.get("work_notes"), prefer="display_value"),
        assigned_to=extract_value(raw.get("assigned_to")),
        assignment_group=extract_value(raw.get("assignment_group")),
        caller=extract_value(raw.get("caller_id")),
        parent_ref=extract_value(raw.get(parent_field)) if parent_field else "",
        requested_for=extract_value(raw.get("requested_for")),
        category=extract_value(raw.get("category")),
        opened_at=parse_remote_datetime(raw.get("opened_at")),
        remote_updated_at=parse_remote_datetime(raw.get("sys_updated_on")),
        sync_status=SyncStatus.PENDING,
    )
