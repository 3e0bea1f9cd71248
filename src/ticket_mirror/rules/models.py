"""Validation rule tables keyed by record type."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from ticket_mirror.domain.records import RecordType


def _ensure_list(v: Any) -> list:
    """Convert None to empty list, pass through lists."""
    if v is None:
        return []
    return v


class RecordTypeRules(BaseModel):
    collection: str
    required: list[str] = Field(default_factory=list)
    states: list[str]
    active_states: list[str] = Field(default_factory=list)

    @field_validator("required", "active_states", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)

    @model_validator(mode="after")
    def _active_states_are_legal(self) -> "RecordTypeRules":
        illegal = [state for state in self.active_states if state not in self.states]
        if illegal:
            raise ValueError(f"Active states not in legal states: {', '.join(illegal)}")
        return self


def _default_types() -> dict[RecordType, RecordTypeRules]:
    return {
        # New, In Progress, On Hold, Resolved, Closed, Canceled
        RecordType.INCIDENT: RecordTypeRules(
            collection="incidents",
            required=["caller"],
            states=["1", "2", "3", "6", "7", "8"],
            active_states=["1", "2", "3", "6"],
        ),
        # Pending, Open, Work in Progress, Closed Complete, Closed Incomplete, Closed Skipped
        RecordType.CHANGE_TASK: RecordTypeRules(
            collection="change_tasks",
            required=["parent_ref"],
            states=["-5", "1", "2", "3", "4", "7"],
            active_states=["-5", "1", "2", "3"],
        ),
        # Pending, Open, Work in Progress, Closed Complete, Closed Incomplete
        RecordType.SERVICE_TASK: RecordTypeRules(
            collection="service_request_tasks",
            required=["parent_ref", "requested_for"],
            states=["1", "2", "3", "4", "7"],
            active_states=["1", "2", "3"],
        ),
    }


class RecordRules(BaseModel):
    version: int = Field(default=1)
    required: list[str] = Field(
        default_factory=lambda: [
            "external_id",
            "display_number",
            "record_type",
            "state",
            "short_description",
            "priority",
            "opened_at",
        ]
    )
    # Critical, High, Moderate, Low, Planning
    priorities: list[str] = Field(default_factory=lambda: ["1", "2", "3", "4", "5"])
    types: dict[RecordType, RecordTypeRules] = Field(default_factory=_default_types)
    audit_collection: str = Field(default="record_audit_log")

    @field_validator("required", "priorities", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)

    @model_validator(mode="after")
    def _all_types_present(self) -> "RecordRules":
        missing = [rt.value for rt in RecordType if rt not in self.types]
        if missing:
            raise ValueError(f"Missing rules for record types: {', '.join(missing)}")
        return self

    def for_type(self, record_type: RecordType) -> RecordTypeRules:
        return self.types[record_type]

    def required_fields(self, record_type: RecordType) -> list[str]:
        extra = [name for name in self.types[record_type].required if name not in self.required]
        return [*self.required, *extra]

    @classmethod
    def from_yaml(cls, data: dict[str, object]) -> "RecordRules":
        defaults = _default_types()
        raw_types = data.get("types")
        if isinstance(raw_types, dict):
            # Types absent from the file keep their built-in rules.
            merged: dict[str, object] = {rt.value: rules for rt, rules in defaults.items()}
            merged.update(raw_types)
            data = {**data, "types": merged}
        return cls.model_validate(data)
