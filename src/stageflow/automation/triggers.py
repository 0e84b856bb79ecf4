"""Trigger matching.

A rule is eligible for an event when its trigger type equals the event
type and the trigger configuration accepts the event payload. Value and
field triggers only match real changes: an update that writes the same
value again does not fire them.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from src.stageflow.automation.conditions import to_number
from src.stageflow.automation.schemas import AutomationEvent
from src.stageflow.core.clock import ensure_utc
from src.stageflow.opportunities.fields import get_field_value
from src.stageflow.opportunities.schemas import Opportunity
from src.stageflow.stages.schemas import (
    PipelineConfiguration,
    StageAutomationRule,
    TriggerType,
)


def values_differ(old: Any, new: Any) -> bool:
    """True when a write actually changed the value (numbers compared numerically)."""
    old_num, new_num = to_number(old), to_number(new)
    if old_num is not None and new_num is not None:
        return old_num != new_num
    return old != new


def _parse_instant(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def date_trigger_target(rule: StageAutomationRule, opportunity: Opportunity) -> datetime | None:
    """Instant at which a date_reached rule becomes due for ``opportunity``.

    Either an absolute ``date`` or an opportunity date ``field`` shifted
    back by ``days_before``. None when the date is missing or unparseable.
    """
    config = rule.trigger.configuration
    if "date" in config:
        base = _parse_instant(config["date"])
    else:
        base = _parse_instant(get_field_value(opportunity, str(config.get("field", ""))))
    if base is None:
        return None
    days_before = to_number(config.get("days_before", 0)) or 0.0
    return base - timedelta(days=days_before)


def _stage_filter_matches(
    config: PipelineConfiguration, wanted: Any, actual: str | None
) -> bool:
    if wanted is None:
        return True
    if actual is None:
        return False
    stage = config.resolve_stage(str(wanted))
    return stage is not None and stage.id == actual


def trigger_matches(
    rule: StageAutomationRule,
    event: AutomationEvent,
    opportunity: Opportunity,
    config: PipelineConfiguration,
) -> bool:
    """Check whether ``rule``'s trigger accepts ``event``."""
    trigger = rule.trigger
    if trigger.type != event.type:
        return False

    settings = trigger.configuration
    payload = event.payload

    if trigger.type == TriggerType.DEAL_CREATED:
        return True

    if trigger.type == TriggerType.STAGE_CHANGED:
        to_stage = payload.get("to_stage_id") or opportunity.current_stage_id
        return _stage_filter_matches(
            config, settings.get("from_stage"), payload.get("from_stage_id")
        ) and _stage_filter_matches(config, settings.get("to_stage"), to_stage)

    if trigger.type == TriggerType.VALUE_CHANGED:
        return values_differ(payload.get("old_value"), payload.get("new_value"))

    if trigger.type == TriggerType.FIELD_UPDATED:
        wanted = settings.get("field")
        if wanted is not None and wanted != payload.get("field"):
            return False
        return values_differ(payload.get("old_value"), payload.get("new_value"))

    if trigger.type == TriggerType.DATE_REACHED:
        if payload.get("rule_id") not in (None, rule.id):
            return False
        target = date_trigger_target(rule, opportunity)
        return target is not None and ensure_utc(event.occurred_at) >= target

    # TriggerType.MANUAL
    return payload.get("rule_id") in (None, rule.id)
