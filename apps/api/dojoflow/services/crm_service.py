"""CRM lifecycle hooks that fire automation triggers and cancellations.

Only the parts of lead/student management that touch automations live here.
Enrollments reference entities weakly, so every path that takes an entity out
of eligibility (conversion, loss, withdrawal, opt-out, deletion) cancels its
active enrollments first.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from dojoflow.db.enums import (
    LEAD_TERMINAL_STATUSES,
    AutomationTriggerKey,
    EntityType,
    LeadStatus,
    StudentStatus,
)
from dojoflow.db.models import Lead, Student
from dojoflow.services import enrollment_service

logger = logging.getLogger(__name__)


class LeadNotEligibleError(Exception):
    """Lead cannot make the requested transition."""


def get_entity(
    db: Session, entity_type: EntityType | str, entity_id: UUID
) -> Lead | Student | None:
    model = Lead if EntityType(entity_type) == EntityType.LEAD else Student
    return db.get(model, entity_id)


def entity_type_of(entity: Lead | Student) -> EntityType:
    return EntityType.LEAD if isinstance(entity, Lead) else EntityType.STUDENT


def fire_trigger(
    db: Session,
    entity: Lead | Student,
    trigger_key: AutomationTriggerKey,
) -> list[UUID]:
    """Enroll an entity for a trigger unless it has opted out."""
    if entity.opted_out:
        return []
    return enrollment_service.enroll(
        db, entity.organization_id, entity_type_of(entity), entity.id, trigger_key
    )


def create_lead(
    db: Session,
    org_id: UUID,
    first_name: str,
    last_name: str | None = None,
    email: str | None = None,
    phone: str | None = None,
    source: str | None = None,
) -> Lead:
    lead = Lead(
        organization_id=org_id,
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=phone,
        source=source,
        status=LeadStatus.NEW.value,
    )
    db.add(lead)
    db.commit()
    db.refresh(lead)

    fire_trigger(db, lead, AutomationTriggerKey.NEW_LEAD)
    return lead


def update_lead_status(db: Session, lead: Lead, status: LeadStatus) -> Lead:
    """
    Change a lead's pipeline status.

    trial_scheduled fires its trigger; lost cancels running automations.
    Conversion goes through convert_lead_to_student.
    """
    if status == LeadStatus.CONVERTED:
        raise LeadNotEligibleError("Use convert_lead_to_student to convert a lead")

    lead.status = status.value
    db.commit()

    if status == LeadStatus.TRIAL_SCHEDULED:
        fire_trigger(db, lead, AutomationTriggerKey.TRIAL_SCHEDULED)
    elif status == LeadStatus.LOST:
        enrollment_service.cancel(
            db, lead.organization_id, EntityType.LEAD, lead.id, "Lead marked lost"
        )
    return lead


def record_trial_outcome(db: Session, lead: Lead, attended: bool) -> list[UUID]:
    """Fire trial_completed or trial_no_show; the reminder sequence is over either way."""
    enrollment_service.cancel(
        db, lead.organization_id, EntityType.LEAD, lead.id, "Trial class took place"
    )
    trigger = (
        AutomationTriggerKey.TRIAL_COMPLETED if attended else AutomationTriggerKey.TRIAL_NO_SHOW
    )
    return fire_trigger(db, lead, trigger)


def convert_lead_to_student(db: Session, lead: Lead) -> Student:
    """Cancel the lead's automations, create the student and fire ``enrollment``."""
    if LeadStatus(lead.status) in LEAD_TERMINAL_STATUSES:
        raise LeadNotEligibleError(f"Lead is already {lead.status}")

    enrollment_service.cancel(
        db, lead.organization_id, EntityType.LEAD, lead.id, "Lead converted to student"
    )

    student = Student(
        organization_id=lead.organization_id,
        lead_id=lead.id,
        first_name=lead.first_name,
        last_name=lead.last_name,
        email=lead.email,
        phone=lead.phone,
        status=StudentStatus.ACTIVE.value,
        opted_out=lead.opted_out,
    )
    lead.status = LeadStatus.CONVERTED.value
    db.add(student)
    db.commit()
    db.refresh(student)

    fire_trigger(db, student, AutomationTriggerKey.ENROLLMENT)
    logger.info("Lead %s converted to student %s", lead.id, student.id)
    return student


def update_student_status(db: Session, student: Student, status: StudentStatus) -> Student:
    """Withdrawn cancels everything; inactive fires the re-engagement trigger."""
    student.status = status.value
    db.commit()

    if status == StudentStatus.WITHDRAWN:
        enrollment_service.cancel(
            db, student.organization_id, EntityType.STUDENT, student.id, "Student withdrew"
        )
    elif status == StudentStatus.INACTIVE:
        fire_trigger(db, student, AutomationTriggerKey.INACTIVE_STUDENT)
    return student


def record_missed_class(db: Session, student: Student) -> list[UUID]:
    return fire_trigger(db, student, AutomationTriggerKey.MISSED_CLASS)


def opt_out(db: Session, entity: Lead | Student) -> int:
    """Stop all automated outreach to an entity. Returns enrollments cancelled."""
    entity.opted_out = True
    db.commit()
    return enrollment_service.cancel(
        db, entity.organization_id, entity_type_of(entity), entity.id, "Opted out"
    )


def _delete_entity(db: Session, entity: Lead | Student) -> None:
    enrollment_service.cancel(
        db, entity.organization_id, entity_type_of(entity), entity.id, "Entity deleted"
    )
    db.delete(entity)
    db.commit()


def delete_lead(db: Session, lead: Lead) -> None:
    _delete_entity(db, lead)


def delete_student(db: Session, student: Student) -> None:
    _delete_entity(db, student)
