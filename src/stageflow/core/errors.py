"""Error taxonomy for the pipeline engine.

Structural errors (ValidationError, InvalidOperation, NotFoundError) abort
the single action or request that raised them and are returned to the
caller. CascadeLimitExceeded is reported on the event result after the
chain is aborted. DispatchError is logged and never stops a rule.

Insufficient analytics data is not an exception: it is surfaced as the
``insufficient_data`` flag on StageMetrics.
"""

from __future__ import annotations


class StageflowError(Exception):
    """Base class for all engine errors."""


class ValidationError(StageflowError, ValueError):
    """Malformed configuration or field write, rejected before any mutation.

    Distinct from ``pydantic.ValidationError``; the API layer maps both to 422.
    """

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        self.problems = problems or [message]
        super().__init__(message)


class InvalidOperation(StageflowError):
    """Operation not allowed in the current state (e.g. deleting a default stage)."""


class ExitCriteriaNotMet(InvalidOperation):
    """Raised under the strict exit-criteria policy when required fields are empty."""

    def __init__(self, stage_id: str, missing_fields: list[str]) -> None:
        self.stage_id = stage_id
        self.missing_fields = missing_fields
        super().__init__(
            f"Cannot leave stage '{stage_id}': required fields not set: "
            f"{', '.join(missing_fields)}"
        )


class NotFoundError(StageflowError, LookupError):
    """Unknown pipeline, stage, rule or opportunity identifier."""


class CascadeLimitExceeded(StageflowError):
    """An automated move chain hit the configured cascade limit and was aborted."""

    def __init__(self, limit: int, opportunity_id: str, origin_event_id: str) -> None:
        self.limit = limit
        self.opportunity_id = opportunity_id
        self.origin_event_id = origin_event_id
        super().__init__(
            f"Cascade limit of {limit} automated moves exceeded for opportunity "
            f"'{opportunity_id}' (origin event {origin_event_id})"
        )


class DispatchError(StageflowError):
    """A side-effect request could not be handed to the dispatcher."""

    def __init__(self, request_type: str, reason: str) -> None:
        self.request_type = request_type
        self.reason = reason
        super().__init__(f"Dispatch of {request_type} request failed: {reason}")
