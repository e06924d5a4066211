"""Automations router - sequences, templates, enrollments and scheduler status."""

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from dojoflow.core.deps import get_db, get_dispatcher, get_org_id
from dojoflow.db.enums import AutomationTriggerKey, EntityType, EnrollmentStatus
from dojoflow.schemas.automations import (
    AutomationStatsRead,
    CancelRequest,
    CancelResponse,
    EnrollmentCancelRequest,
    EnrollmentRead,
    InstallTemplateRequest,
    SchedulerStatusRead,
    SequenceActiveUpdate,
    SequenceCostRead,
    SequenceRead,
    SendNowRequest,
    SendNowResponse,
    TemplateSummary,
    TriggerRequest,
    TriggerResponse,
)
from dojoflow.services import (
    automation_sequence_service,
    automation_templates,
    crm_service,
    enrollment_service,
)
from dojoflow.services.action_dispatcher import ActionDispatcher

router = APIRouter(prefix="/automations", tags=["Automations"])


def _get_visible_sequence(db: Session, sequence_id: UUID, org_id: UUID):
    sequence = automation_sequence_service.get_sequence(db, sequence_id, org_id=org_id)
    if not sequence:
        raise HTTPException(status_code=404, detail="Sequence not found")
    return sequence


def _get_org_entity(db: Session, org_id: UUID, entity_type: EntityType, entity_id: UUID):
    entity = crm_service.get_entity(db, entity_type, entity_id)
    if not entity or entity.organization_id != org_id:
        raise HTTPException(status_code=404, detail=f"{entity_type.value.title()} not found")
    return entity


# =============================================================================
# Sequences
# =============================================================================


@router.get("/templates", response_model=list[TemplateSummary])
def list_templates():
    """Built-in sequence templates an organization can install."""
    return automation_templates.list_templates()


@router.get("/sequences", response_model=list[SequenceRead])
def list_sequences(
    trigger_key: AutomationTriggerKey | None = None,
    include_inactive: bool = True,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Sequences visible to the organization (its own plus uncustomized defaults)."""
    return automation_sequence_service.list_sequences(
        db, org_id, trigger_key=trigger_key, include_inactive=include_inactive
    )


@router.get("/sequences/{sequence_id}", response_model=SequenceRead)
def get_sequence(
    sequence_id: UUID,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    return _get_visible_sequence(db, sequence_id, org_id)


@router.post("/sequences/install-template", response_model=SequenceRead, status_code=201)
def install_template(
    body: InstallTemplateRequest,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Install a built-in template. Installing the same template twice is a no-op."""
    try:
        return automation_sequence_service.install_template(db, org_id, body.template_name)
    except automation_sequence_service.SequenceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except automation_sequence_service.SequenceValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.patch("/sequences/{sequence_id}/active", response_model=SequenceRead)
def set_sequence_active(
    sequence_id: UUID,
    body: SequenceActiveUpdate,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Enable or disable a sequence. Toggling a platform default customizes it first."""
    try:
        return automation_sequence_service.set_sequence_active(
            db, sequence_id, org_id, body.is_active
        )
    except automation_sequence_service.SequenceNotFoundError:
        raise HTTPException(status_code=404, detail="Sequence not found")
    except automation_sequence_service.SequenceValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/sequences/{sequence_id}/estimate", response_model=SequenceCostRead)
def estimate_sequence_cost(
    sequence_id: UUID,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Credits one full run of the sequence would consume."""
    sequence = _get_visible_sequence(db, sequence_id, org_id)
    estimate = automation_sequence_service.estimate_sequence_cost(db, sequence)
    return SequenceCostRead(
        sequence_id=estimate.sequence_id,
        step_count=estimate.step_count,
        steps=[
            {
                "step_order": step.step_order,
                "action_type": step.action_type,
                "task_type": step.task_type,
                "credits": step.credits,
            }
            for step in estimate.steps
        ],
        total_step_credits=estimate.total_step_credits,
        automation_credits=estimate.automation_credits,
    )


@router.post("/sequences/{sequence_id}/send-now", response_model=SendNowResponse)
async def send_now(
    sequence_id: UUID,
    body: SendNowRequest,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
    dispatcher: ActionDispatcher = Depends(get_dispatcher),
):
    """Send every message of a sequence to one lead or student right away, skipping waits."""
    sequence = _get_visible_sequence(db, sequence_id, org_id)
    steps = automation_sequence_service.get_ordered_steps(db, sequence.id)
    if not steps:
        raise HTTPException(status_code=422, detail="Sequence has no steps")
    entity = _get_org_entity(db, org_id, body.entity_type, body.entity_id)

    result = await dispatcher.send_now(db, steps, entity)
    return SendNowResponse(
        success=not result.errors,
        sent_count=result.sent_count,
        credits_charged=result.credits_charged,
        errors=result.errors,
    )


@router.get("/sequences/{sequence_id}/enrollments", response_model=list[EnrollmentRead])
def list_sequence_enrollments(
    sequence_id: UUID,
    status: EnrollmentStatus | None = None,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """The organization's enrollments in one sequence, oldest first."""
    sequence = _get_visible_sequence(db, sequence_id, org_id)
    return enrollment_service.list_enrollments_for_sequence(
        db, org_id, sequence.id, status=status
    )


# =============================================================================
# Enrollments
# =============================================================================


@router.post("/trigger", response_model=TriggerResponse)
def trigger(
    body: TriggerRequest,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Fire a trigger for one lead or student (manual or custom triggers)."""
    entity = _get_org_entity(db, org_id, body.entity_type, body.entity_id)
    enrollment_ids = crm_service.fire_trigger(db, entity, body.trigger_key)
    return TriggerResponse(enrollment_ids=enrollment_ids)


@router.post("/cancel", response_model=CancelResponse)
def cancel(
    body: CancelRequest,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Cancel every active enrollment of a lead or student."""
    cancelled = enrollment_service.cancel(
        db, org_id, body.entity_type, body.entity_id, body.reason
    )
    return CancelResponse(cancelled=cancelled)


@router.get("/enrollments", response_model=list[EnrollmentRead])
def list_enrollments(
    entity_type: EntityType,
    entity_id: UUID,
    status: EnrollmentStatus | None = None,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Enrollment history for one lead or student."""
    return enrollment_service.list_enrollments_for_entity(
        db, org_id, entity_type, entity_id, status=status
    )


@router.post("/enrollments/{enrollment_id}/cancel", response_model=EnrollmentRead)
def cancel_enrollment(
    enrollment_id: UUID,
    body: EnrollmentCancelRequest,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Cancel one active enrollment. 409 if it already completed, failed or was cancelled."""
    enrollment = enrollment_service.get_enrollment(db, enrollment_id)
    if not enrollment or enrollment.organization_id != org_id:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    if not enrollment_service.cancel_enrollment(db, org_id, enrollment_id, body.reason):
        raise HTTPException(status_code=409, detail="Enrollment is not active")
    return enrollment_service.get_enrollment(db, enrollment_id)


@router.get("/stats", response_model=AutomationStatsRead)
def automation_stats(
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Sequence and enrollment counts for the dashboard."""
    return AutomationStatsRead(**asdict(enrollment_service.get_automation_stats(db, org_id)))


# =============================================================================
# Scheduler
# =============================================================================


@router.get("/scheduler/status", response_model=list[SchedulerStatusRead])
def scheduler_status(request: Request):
    """Status of the background jobs hosted by this process."""
    jobs = getattr(request.app.state, "scheduler_jobs", [])
    return [job.status().to_dict() for job in jobs]
