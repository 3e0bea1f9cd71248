"""Compile record rule tables into JSON Schemas."""

from __future__ import annotations

from ticket_mirror.domain.records import RecordType, SyncStatus
from ticket_mirror.rules.models import RecordRules

_STRING_FIELDS = (
    "external_id",
    "display_number",
    "short_description",
    "description",
    "notes",
    "assigned_to",
    "assignment_group",
    "caller",
    "parent_ref",
    "requested_for",
    "category",
    "opened_at",
    "remote_updated_at",
    "last_synced_at",
    "sync_error",
)


def build_record_schema(rules: RecordRules, record_type: RecordType) -> dict[str, object]:
    """Return the Draft 2020-12 schema a stored document of *record_type* must satisfy."""
    type_rules = rules.for_type(record_type)
    required = rules.required_fields(record_type)

    properties: dict[str, object] = {}
    for name in _STRING_FIELDS:
        if name in required:
            properties[name] = {"type": "string", "minLength": 1}
        else:
            properties[name] = {"type": ["string", "null"]}

    properties["record_type"] = {"const": record_type.value}
    properties["state"] = {"enum": list(type_rules.states)}
    properties["priority"] = {"enum": list(rules.priorities)}
    properties["sync_status"] = {"enum": [status.value for status in SyncStatus]}

    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": required,
        "properties": properties,
    }
