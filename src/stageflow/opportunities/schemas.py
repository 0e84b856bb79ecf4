"""Opportunity aggregate as seen by the engine, and its typed field catalogue.

The opportunity store is external; the engine only reads opportunities and
updates them through defined actions. Condition evaluation and field writes
go through a closed catalogue of known fields (OpportunityField) plus a
free-form ``custom_fields`` map whose types are declared per pipeline.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.stageflow.core.clock import ensure_utc, utc_now


class FieldType(str, Enum):
    """Declared type of a writable opportunity field."""

    STRING = "string"
    NUMBER = "number"
    ENUM = "enum"
    DATE = "date"
    BOOLEAN = "boolean"


class OpportunityField(str, Enum):
    """Closed set of known opportunity fields conditions may reference."""

    TITLE = "title"
    VALUE = "value"
    PROBABILITY = "probability"
    STAGE = "current_stage_id"
    OWNER_ID = "owner_id"
    PRIORITY = "priority"
    INDUSTRY = "industry"
    LEAD_SOURCE = "lead_source"
    TAGS = "tags"
    EXPECTED_CLOSE_DATE = "expected_close_date"
    COMPANY_ID = "company_id"
    CONTACT_ID = "contact_id"
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FieldDefinition(BaseModel):
    """Declared type of a field, used to validate ``update_field`` writes."""

    name: str
    type: FieldType
    options: list[str] = Field(
        default_factory=list, description="Allowed values for enum fields"
    )
    minimum: float | None = None
    maximum: float | None = None


# Built-in writable fields. current_stage_id, tags and timestamps are not
# writable here: stage changes go through move_stage only.
BUILTIN_FIELD_DEFINITIONS: dict[str, FieldDefinition] = {
    OpportunityField.TITLE.value: FieldDefinition(name="title", type=FieldType.STRING),
    OpportunityField.VALUE.value: FieldDefinition(
        name="value", type=FieldType.NUMBER, minimum=0.0
    ),
    OpportunityField.PROBABILITY.value: FieldDefinition(
        name="probability", type=FieldType.NUMBER, minimum=0.0, maximum=100.0
    ),
    OpportunityField.OWNER_ID.value: FieldDefinition(name="owner_id", type=FieldType.STRING),
    OpportunityField.PRIORITY.value: FieldDefinition(
        name="priority",
        type=FieldType.ENUM,
        options=[p.value for p in Priority],
    ),
    OpportunityField.INDUSTRY.value: FieldDefinition(name="industry", type=FieldType.STRING),
    OpportunityField.LEAD_SOURCE.value: FieldDefinition(
        name="lead_source", type=FieldType.STRING
    ),
    OpportunityField.EXPECTED_CLOSE_DATE.value: FieldDefinition(
        name="expected_close_date", type=FieldType.DATE
    ),
}

CUSTOM_FIELD_PREFIX = "custom_fields."


class Opportunity(BaseModel):
    """Subset of the CRM opportunity the engine reads and updates."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = "default"
    pipeline_id: str
    current_stage_id: str
    title: str = ""
    value: float = 0.0
    probability: float = 0.0
    owner_id: str | None = None
    priority: str | None = None
    industry: str | None = None
    lead_source: str | None = None
    tags: list[str] = Field(default_factory=list)
    company_id: str | None = None
    contact_id: str | None = None
    expected_close_date: datetime | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("expected_close_date", "created_at", "updated_at")
    @classmethod
    def _normalise_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class OpportunityCreate(BaseModel):
    """Payload for registering an opportunity with the engine."""

    id: str | None = None
    pipeline_id: str | None = None
    current_stage_id: str | None = None
    title: str = ""
    value: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    probability: float | None = Field(default=None, ge=0, le=100, allow_inf_nan=False)
    owner_id: str | None = None
    priority: str | None = None
    industry: str | None = None
    lead_source: str | None = None
    tags: list[str] = Field(default_factory=list)
    expected_close_date: datetime | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
