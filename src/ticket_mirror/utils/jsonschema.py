"""JSON Schema validation wrapper."""

from __future__ import annotations

from dataclasses import dataclass

from jsonschema import Draft202012Validator


@dataclass
class SchemaViolation:
    """Structured validation error for one offending field.

    Attributes:
        type: Error category (missing_required, invalid_type, enum_violation,
              min_length_violation, etc.)
        message: Human-readable error message.
        field: Top-level field the error belongs to, when known.
        allowed_values: List of valid values for enum violations.
    """

    type: str
    message: str
    field: str | None = None
    allowed_values: list[str] | None = None


def validate_payload_structured(
    schema: dict[str, object],
    payload: dict[str, object],
) -> list[SchemaViolation]:
    """Validate payload and return structured violations.

    Missing-field violations come first, then the rest ordered by field name,
    so the first entry is stable for a given payload.
    """
    validator = Draft202012Validator(schema)
    violations: list[SchemaViolation] = []

    for error in validator.iter_errors(payload):
        error_type = _classify_error(error)
        field = str(error.absolute_path[0]) if error.absolute_path else None
        allowed_values = None

        if error.validator == "required":
            # "'caller' is a required property"
            if "'" in error.message:
                field = error.message.split("'")[1]
        elif error.validator == "enum":
            allowed_values = [str(v) for v in error.validator_value or []] or None

        violations.append(
            SchemaViolation(
                type=error_type,
                message=error.message,
                field=field,
                allowed_values=allowed_values,
            )
        )

    violations.sort(key=lambda v: (v.type != "missing_required", v.field or ""))
    return violations


def _classify_error(error) -> str:
    """Classify a jsonschema error into a human-readable type."""
    validator_to_type = {
        "required": "missing_required",
        "type": "invalid_type",
        "enum": "enum_violation",
        "const": "const_mismatch",
        "pattern": "pattern_mismatch",
        "minLength": "min_length_violation",
        "maxLength": "max_length_violation",
        "format": "format_error",
    }
    return validator_to_type.get(error.validator, "validation_error")
