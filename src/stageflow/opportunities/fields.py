"""Typed field accessor for opportunities.

Condition evaluation reads fields through ``get_field_value``; actions and
manual edits write through ``apply_field_write``. Neither reflects over
arbitrary attributes: a name resolves to a known OpportunityField first and
to the ``custom_fields`` map second.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from src.stageflow.core.clock import ensure_utc
from src.stageflow.core.errors import ValidationError
from src.stageflow.opportunities.schemas import (
    BUILTIN_FIELD_DEFINITIONS,
    CUSTOM_FIELD_PREFIX,
    FieldDefinition,
    FieldType,
    Opportunity,
    OpportunityField,
)

_NOT_NULLABLE = {OpportunityField.VALUE.value, OpportunityField.PROBABILITY.value}


def resolve_field(name: str) -> tuple[OpportunityField | None, str | None]:
    """Split a field reference into (known field, custom field name)."""
    if name.startswith(CUSTOM_FIELD_PREFIX):
        return None, name[len(CUSTOM_FIELD_PREFIX):]
    try:
        return OpportunityField(name), None
    except ValueError:
        return None, name


def get_field_value(opportunity: Opportunity, name: str) -> Any:
    """Read a field value; unknown custom fields read as None."""
    known, custom = resolve_field(name)
    if known is not None:
        return getattr(opportunity, known.value)
    return opportunity.custom_fields.get(custom)


def field_definition_for(
    name: str, custom_definitions: dict[str, FieldDefinition]
) -> tuple[FieldDefinition, bool]:
    """Return (definition, is_custom) for a writable field.

    Raises:
        ValidationError: If the field is read-only or an undeclared custom field.
    """
    known, custom = resolve_field(name)
    if known is not None:
        definition = BUILTIN_FIELD_DEFINITIONS.get(known.value)
        if definition is None:
            raise ValidationError(f"Field '{name}' is not writable")
        return definition, False

    definition = custom_definitions.get(custom)
    if definition is None:
        raise ValidationError(f"Custom field '{custom}' is not declared on the pipeline")
    return definition, True


def coerce_value(definition: FieldDefinition, value: Any) -> Any:
    """Coerce ``value`` to the declared type or raise ValidationError."""
    if value is None:
        if definition.name in _NOT_NULLABLE:
            raise ValidationError(f"Field '{definition.name}' cannot be cleared")
        return None

    if definition.type == FieldType.NUMBER:
        if isinstance(value, bool):
            raise ValidationError(f"Field '{definition.name}' expects a number, got bool")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(
                f"Field '{definition.name}' expects a number, got {value!r}"
            ) from None
        if not math.isfinite(number):
            raise ValidationError(
                f"Field '{definition.name}' must be a finite number, got {value!r}"
            )
        if definition.minimum is not None and number < definition.minimum:
            raise ValidationError(
                f"Field '{definition.name}' must be >= {definition.minimum}, got {number}"
            )
        if definition.maximum is not None and number > definition.maximum:
            raise ValidationError(
                f"Field '{definition.name}' must be <= {definition.maximum}, got {number}"
            )
        return number

    if definition.type == FieldType.STRING:
        if not isinstance(value, str):
            raise ValidationError(
                f"Field '{definition.name}' expects a string, got {type(value).__name__}"
            )
        return value

    if definition.type == FieldType.ENUM:
        text = str(value)
        if text not in definition.options:
            raise ValidationError(
                f"Field '{definition.name}' must be one of {definition.options}, got {text!r}"
            )
        return text

    if definition.type == FieldType.DATE:
        if isinstance(value, datetime):
            return ensure_utc(value)
        if isinstance(value, str):
            try:
                return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
            except ValueError:
                raise ValidationError(
                    f"Field '{definition.name}' expects an ISO-8601 timestamp, got {value!r}"
                ) from None
        raise ValidationError(f"Field '{definition.name}' expects a timestamp")

    # FieldType.BOOLEAN
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValidationError(f"Field '{definition.name}' expects a boolean, got {value!r}")


def apply_field_write(
    opportunity: Opportunity,
    name: str,
    value: Any,
    custom_definitions: dict[str, FieldDefinition],
    now: datetime,
) -> tuple[Any, Any]:
    """Validate and apply a single field write.

    Nothing is written when validation fails.

    Returns:
        Tuple of (old_value, new_value).
    """
    definition, is_custom = field_definition_for(name, custom_definitions)
    coerced = coerce_value(definition, value)
    old = get_field_value(opportunity, name)

    if is_custom:
        opportunity.custom_fields[definition.name] = coerced
    else:
        setattr(opportunity, definition.name, coerced)
    opportunity.updated_at = now
    return old, coerced


def is_empty_value(value: Any) -> bool:
    """Empty means None, blank string, or empty collection."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False
