"""Built-in pipeline templates.

Three starting configurations: a long-cycle enterprise B2B pipeline, a
fast SMB transactional pipeline and the default PEAK pipeline
(Prospect, Engage, Acquire, Keep). Templates are returned as
``PipelineCreate`` payloads so they go through the same write-time
validation as any other configuration.
"""

from __future__ import annotations

from typing import NamedTuple

from src.stageflow.core.errors import NotFoundError
from src.stageflow.stages.schemas import PipelineCreate, PipelineStage, transition_key


class _StageSpec(NamedTuple):
    id: str
    name: str
    description: str
    probability: float
    dwell_days: float
    required_fields: tuple[str, ...]
    exit_criteria: tuple[str, ...]


class _TemplateSpec(NamedTuple):
    id: str
    name: str
    description: str
    stages: tuple[_StageSpec, ...]
    conversion_targets: tuple[float, ...]  # one per consecutive pair of stages


ENTERPRISE_B2B = _TemplateSpec(
    id="enterprise-b2b",
    name="Enterprise B2B Sales",
    description="Complex sales process for large enterprise deals with long sales cycles",
    stages=(
        _StageSpec(
            "lead-qualification", "Lead Qualification",
            "Initial qualification and BANT assessment", 10, 3,
            ("company", "contact", "budget"),
            ("BANT qualified", "Decision maker identified"),
        ),
        _StageSpec(
            "discovery", "Discovery & Needs Analysis",
            "Deep dive into customer needs and pain points", 25, 14,
            ("pain_points", "decision_criteria", "timeline"),
            ("Needs documented", "Stakeholders mapped", "Champion identified"),
        ),
        _StageSpec(
            "solution-design", "Solution Design",
            "Custom solution development and presentation", 40, 21,
            ("solution_requirements", "technical_specs"),
            ("Solution approved", "Technical validation complete"),
        ),
        _StageSpec(
            "proposal", "Proposal & Negotiation",
            "Formal proposal submission and contract negotiation", 65, 14,
            ("proposal_sent", "pricing_approved"),
            ("Proposal reviewed", "Terms negotiated", "Legal approval obtained"),
        ),
        _StageSpec(
            "contracting", "Contracting & Legal",
            "Final contract review and execution", 85, 7,
            ("contract_terms", "legal_review"),
            ("Contract signed", "Payment terms agreed"),
        ),
        _StageSpec(
            "closed-won", "Closed Won",
            "Deal successfully closed and implementation initiated", 100, 1,
            ("implementation_plan", "success_criteria"),
            ("Deal closed", "Implementation started"),
        ),
    ),
    conversion_targets=(40, 60, 70, 80, 90),
)

SMB_TRANSACTIONAL = _TemplateSpec(
    id="smb-transactional",
    name="SMB Transactional Sales",
    description="Fast-moving sales process for small to medium business deals",
    stages=(
        _StageSpec(
            "inbound-lead", "Inbound Lead",
            "New leads from marketing campaigns and referrals", 15, 1,
            ("lead_source", "contact_info"),
            ("Lead qualified", "Initial contact made"),
        ),
        _StageSpec(
            "qualification-call", "Qualification Call",
            "Quick qualification and needs assessment", 35, 3,
            ("budget_range", "timeline", "decision_maker"),
            ("Needs confirmed", "Budget qualified", "Timeline established"),
        ),
        _StageSpec(
            "demo-presentation", "Demo & Presentation",
            "Product demonstration and value proposition", 55, 7,
            ("demo_completed", "value_proposition"),
            ("Demo delivered", "Value demonstrated", "Next steps defined"),
        ),
        _StageSpec(
            "proposal-quote", "Proposal & Quote",
            "Formal quote and proposal delivery", 75, 5,
            ("quote_sent", "pricing_confirmed"),
            ("Quote approved", "Terms accepted"),
        ),
        _StageSpec(
            "closed-won-smb", "Closed Won",
            "Deal closed and onboarding initiated", 100, 1,
            ("payment_received", "onboarding_scheduled"),
            ("Payment processed", "Customer onboarded"),
        ),
    ),
    conversion_targets=(70, 65, 60, 85),
)

DEFAULT_PEAK = _TemplateSpec(
    id="default-pipeline",
    name="PEAK Sales Pipeline",
    description="Default pipeline based on PEAK methodology",
    stages=(
        _StageSpec(
            "stage-prospect", "Prospect",
            "Identifying and qualifying potential customers", 25, 7, (), (),
        ),
        _StageSpec(
            "stage-engage", "Engage",
            "Building relationships and understanding needs", 50, 14, (), (),
        ),
        _StageSpec(
            "stage-acquire", "Acquire",
            "Negotiating and closing the deal", 75, 21, (), (),
        ),
        _StageSpec(
            "stage-keep", "Keep",
            "Retention, expansion, and customer success", 90, 90, (), (),
        ),
    ),
    conversion_targets=(60, 40, 80),
)

PIPELINE_TEMPLATES: dict[str, _TemplateSpec] = {
    t.id: t for t in (ENTERPRISE_B2B, SMB_TRANSACTIONAL, DEFAULT_PEAK)
}


def _build(template: _TemplateSpec, pipeline_id: str | None) -> PipelineCreate:
    stages = [
        PipelineStage(
            id=spec.id,
            name=spec.name,
            description=spec.description,
            position=position,
            probability=spec.probability,
            is_default=position == 0,
            required_fields=list(spec.required_fields),
            exit_criteria=list(spec.exit_criteria),
        )
        for position, spec in enumerate(template.stages)
    ]
    conversion_targets = {
        transition_key(a.id, b.id): target
        for a, b, target in zip(
            template.stages, template.stages[1:], template.conversion_targets
        )
    }
    return PipelineCreate(
        id=pipeline_id,
        name=template.name,
        description=template.description,
        stages=stages,
        default_probabilities={s.id: s.probability for s in template.stages},
        sales_cycle_targets={s.id: s.dwell_days for s in template.stages},
        conversion_targets=conversion_targets,
    )


def get_pipeline_template(template_id: str, pipeline_id: str | None = None) -> PipelineCreate:
    """Return a fresh creation payload for a built-in template.

    Args:
        template_id: One of ``PIPELINE_TEMPLATES``.
        pipeline_id: Id for the new pipeline; generated when None.

    Raises:
        NotFoundError: If the template id is unknown.
    """
    template = PIPELINE_TEMPLATES.get(template_id)
    if template is None:
        raise NotFoundError(f"Pipeline template '{template_id}' not found")
    return _build(template, pipeline_id)


def list_pipeline_templates() -> list[dict[str, str]]:
    return [
        {"id": t.id, "name": t.name, "description": t.description}
        for t in PIPELINE_TEMPLATES.values()
    ]
