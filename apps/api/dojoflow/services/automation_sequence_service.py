"""Automation sequence service - trigger lookup and thin CRUD for sequences and steps.

Sequences with organization_id NULL are platform defaults. An organization
customizes a default by copying it (copy-on-customize); the copy's
source_sequence_id hides the default from that organization's lookups.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.orm import Session, aliased

from dojoflow.core.structured_logging import build_log_context
from dojoflow.db.enums import AutomationActionType, AutomationTriggerKey
from dojoflow.db.models import AutomationSequence, AutomationStep
from dojoflow.services import automation_templates, automation_variables, credit_costs

logger = logging.getLogger(__name__)


class SequenceValidationError(Exception):
    """Invalid sequence or step definition."""


class SequenceNotFoundError(Exception):
    """Sequence or template does not exist (or is not visible to the org)."""


@dataclass(frozen=True)
class StepCostEstimate:
    step_order: int
    action_type: str
    task_type: str | None
    credits: int


@dataclass(frozen=True)
class SequenceCostEstimate:
    sequence_id: UUID
    step_count: int
    steps: list[StepCostEstimate] = field(default_factory=list)
    automation_credits: int = 0

    @property
    def total_step_credits(self) -> int:
        return sum(step.credits for step in self.steps)


# =============================================================================
# Validation
# =============================================================================


def _validate_steps(steps: list[dict]) -> list[dict]:
    """Normalize step dicts; assign 1..n ordinals when none are given."""
    if not steps:
        raise SequenceValidationError("A sequence needs at least one step")

    normalized: list[dict] = []
    previous_order = 0
    for index, step in enumerate(steps, start=1):
        try:
            action_type = AutomationActionType(step.get("action_type"))
        except ValueError as exc:
            raise SequenceValidationError(
                f"Unknown action type: {step.get('action_type')!r}"
            ) from exc

        step_order = step.get("step_order", index)
        if step_order <= previous_order:
            raise SequenceValidationError("Step order must be strictly increasing")
        previous_order = step_order

        delay_minutes = step.get("delay_minutes") or 0
        if delay_minutes < 0:
            raise SequenceValidationError("delay_minutes cannot be negative")

        if action_type == AutomationActionType.SEND_EMAIL and not step.get("subject"):
            raise SequenceValidationError("Email steps need a subject")
        if action_type != AutomationActionType.WAIT and not step.get("message"):
            raise SequenceValidationError(f"{action_type.value} steps need a message")

        unknown = (
            automation_variables.extract_template_variables(step.get("message"))
            | automation_variables.extract_template_variables(step.get("subject"))
        ) - automation_variables.SUPPORTED_VARIABLES
        if unknown:
            raise SequenceValidationError(
                f"Unknown template variables: {', '.join(sorted(unknown))}"
            )

        normalized.append(
            {
                "step_order": step_order,
                "name": step.get("name"),
                "action_type": action_type.value,
                "delay_minutes": delay_minutes,
                "subject": step.get("subject"),
                "message": step.get("message"),
                "call_duration_seconds": step.get("call_duration_seconds"),
            }
        )
    return normalized


# =============================================================================
# Lookup
# =============================================================================


def _visible_to_org(org_id: UUID):
    """Org-owned sequences plus defaults the org has not customized."""
    copies = aliased(AutomationSequence)
    customized = select(copies.source_sequence_id).where(
        copies.organization_id == org_id,
        copies.source_sequence_id.is_not(None),
    )
    return or_(
        AutomationSequence.organization_id == org_id,
        and_(
            AutomationSequence.organization_id.is_(None),
            AutomationSequence.id.not_in(customized),
        ),
    )


def find_sequences_for_trigger(
    db: Session,
    trigger_key: AutomationTriggerKey | str,
    org_id: UUID,
) -> list[AutomationSequence]:
    """
    Active sequences with at least one step for a trigger, oldest first.

    Soft-disabled sequences are excluded, and so is any default the org
    has customized (its copy takes the default's place).
    """
    has_steps = exists().where(AutomationStep.sequence_id == AutomationSequence.id)
    return (
        db.query(AutomationSequence)
        .filter(
            AutomationSequence.trigger_key == AutomationTriggerKey(trigger_key).value,
            AutomationSequence.is_active.is_(True),
            has_steps,
            _visible_to_org(org_id),
        )
        .order_by(AutomationSequence.created_at, AutomationSequence.id)
        .all()
    )


def get_sequence(
    db: Session, sequence_id: UUID, org_id: UUID | None = None
) -> AutomationSequence | None:
    """Get a sequence by ID, optionally limited to what the org can see."""
    query = db.query(AutomationSequence).filter(AutomationSequence.id == sequence_id)
    if org_id:
        query = query.filter(
            or_(
                AutomationSequence.organization_id == org_id,
                AutomationSequence.organization_id.is_(None),
            )
        )
    return query.first()


def list_sequences(
    db: Session,
    org_id: UUID,
    trigger_key: AutomationTriggerKey | None = None,
    include_inactive: bool = True,
) -> list[AutomationSequence]:
    """Sequences the organization sees in its automation list."""
    query = db.query(AutomationSequence).filter(_visible_to_org(org_id))
    if trigger_key:
        query = query.filter(AutomationSequence.trigger_key == trigger_key.value)
    if not include_inactive:
        query = query.filter(AutomationSequence.is_active.is_(True))
    return query.order_by(AutomationSequence.created_at, AutomationSequence.id).all()


def get_ordered_steps(db: Session, sequence_id: UUID) -> list[AutomationStep]:
    return (
        db.query(AutomationStep)
        .filter(AutomationStep.sequence_id == sequence_id)
        .order_by(AutomationStep.step_order)
        .all()
    )


def get_step(db: Session, step_id: UUID) -> AutomationStep | None:
    return db.query(AutomationStep).filter(AutomationStep.id == step_id).first()


def get_first_step(db: Session, sequence_id: UUID) -> AutomationStep | None:
    return (
        db.query(AutomationStep)
        .filter(AutomationStep.sequence_id == sequence_id)
        .order_by(AutomationStep.step_order)
        .first()
    )


def get_next_step(db: Session, sequence_id: UUID, step_order: int) -> AutomationStep | None:
    """Step with the next higher ordinal, or None after the last step."""
    return (
        db.query(AutomationStep)
        .filter(
            AutomationStep.sequence_id == sequence_id,
            AutomationStep.step_order > step_order,
        )
        .order_by(AutomationStep.step_order)
        .first()
    )


# =============================================================================
# Writes
# =============================================================================


def create_sequence(
    db: Session,
    org_id: UUID | None,
    name: str,
    trigger_key: AutomationTriggerKey | str,
    steps: list[dict],
    description: str | None = None,
    is_active: bool = True,
    created_by_user_id: UUID | None = None,
    source_sequence_id: UUID | None = None,
) -> AutomationSequence:
    """
    Create a sequence with its steps.

    org_id None creates a platform default.

    Raises:
        SequenceValidationError: no steps, bad ordinals, unknown trigger/action.
    """
    try:
        trigger = AutomationTriggerKey(trigger_key)
    except ValueError as exc:
        raise SequenceValidationError(f"Unknown trigger: {trigger_key!r}") from exc

    normalized = _validate_steps(steps)

    sequence = AutomationSequence(
        organization_id=org_id,
        source_sequence_id=source_sequence_id,
        name=name,
        description=description,
        trigger_key=trigger.value,
        is_active=is_active,
        created_by_user_id=created_by_user_id,
    )
    sequence.steps = [AutomationStep(**step) for step in normalized]
    db.add(sequence)
    db.commit()
    db.refresh(sequence)

    logger.info(
        "Created automation sequence %r (%s steps)",
        name,
        len(normalized),
        extra=build_log_context(org_id=org_id, sequence_id=sequence.id),
    )
    return sequence


def customize_default_sequence(
    db: Session,
    org_id: UUID,
    default_id: UUID,
    user_id: UUID | None = None,
) -> AutomationSequence:
    """
    Copy a platform default into the organization.

    Idempotent: returns the existing copy if the org already customized it.
    """
    existing = (
        db.query(AutomationSequence)
        .filter(
            AutomationSequence.organization_id == org_id,
            AutomationSequence.source_sequence_id == default_id,
        )
        .first()
    )
    if existing:
        return existing

    default = get_sequence(db, default_id)
    if not default or default.organization_id is not None:
        raise SequenceNotFoundError(f"Default sequence {default_id} not found")

    return create_sequence(
        db,
        org_id,
        name=default.name,
        trigger_key=default.trigger_key,
        steps=[
            {
                "step_order": step.step_order,
                "name": step.name,
                "action_type": step.action_type,
                "delay_minutes": step.delay_minutes,
                "subject": step.subject,
                "message": step.message,
                "call_duration_seconds": step.call_duration_seconds,
            }
            for step in default.steps
        ],
        description=default.description,
        is_active=default.is_active,
        created_by_user_id=user_id,
        source_sequence_id=default.id,
    )


def set_sequence_active(
    db: Session,
    sequence_id: UUID,
    org_id: UUID,
    is_active: bool,
) -> AutomationSequence:
    """
    Soft-enable or soft-disable a sequence for an organization.

    Toggling a platform default customizes it first, so other organizations
    are unaffected.
    """
    sequence = get_sequence(db, sequence_id, org_id=org_id)
    if not sequence:
        raise SequenceNotFoundError(f"Sequence {sequence_id} not found")

    if sequence.organization_id is None:
        sequence = customize_default_sequence(db, org_id, sequence.id)

    if is_active and not sequence.steps:
        raise SequenceValidationError("A sequence needs at least one step to be active")

    sequence.is_active = is_active
    db.commit()
    db.refresh(sequence)
    return sequence


def install_template(
    db: Session,
    org_id: UUID,
    template_name: str,
    user_id: UUID | None = None,
) -> AutomationSequence:
    """
    Install a built-in template for an organization.

    Idempotent: returns the org's existing sequence created from the same
    template (matched by name and trigger).
    """
    template = automation_templates.get_template(template_name)
    if not template:
        raise SequenceNotFoundError(f'Template "{template_name}" not found')

    existing = (
        db.query(AutomationSequence)
        .filter(
            AutomationSequence.organization_id == org_id,
            AutomationSequence.name == template["name"],
            AutomationSequence.trigger_key == template["trigger_key"],
        )
        .first()
    )
    if existing:
        return existing

    return create_sequence(
        db,
        org_id,
        name=template["name"],
        trigger_key=template["trigger_key"],
        steps=template["steps"],
        description=template["description"],
        created_by_user_id=user_id,
    )


def estimate_sequence_cost(db: Session, sequence: AutomationSequence) -> SequenceCostEstimate:
    """Credits a full run of the sequence would consume, step by step."""
    steps = get_ordered_steps(db, sequence.id)
    estimates = []
    for step in steps:
        task_type, credits = credit_costs.cost_for_action(
            step.action_type, call_duration_seconds=step.call_duration_seconds
        )
        estimates.append(
            StepCostEstimate(
                step_order=step.step_order,
                action_type=step.action_type,
                task_type=task_type.value if task_type else None,
                credits=credits,
            )
        )
    return SequenceCostEstimate(
        sequence_id=sequence.id,
        step_count=len(steps),
        steps=estimates,
        automation_credits=credit_costs.automation_cost(len(steps)),
    )
