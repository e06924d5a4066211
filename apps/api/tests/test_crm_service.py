"""Tests for CRM lifecycle hooks (triggers and cancellations)."""

import pytest

from dojoflow.db.enums import EnrollmentStatus, EntityType, LeadStatus, StudentStatus
from dojoflow.services import automation_sequence_service as seq_service
from dojoflow.services import crm_service, enrollment_service


def _sequence_for(db, org_id, trigger):
    return seq_service.create_sequence(
        db,
        org_id,
        name=f"On {trigger}",
        trigger_key=trigger,
        steps=[{"action_type": "send_sms", "message": "Hi {{firstName}}"}],
    )


def _active(db, org_id, entity_type, entity_id):
    return enrollment_service.list_enrollments_for_entity(
        db, org_id, entity_type, entity_id, status=EnrollmentStatus.ACTIVE
    )


def test_create_lead_fires_new_lead(db, test_org):
    _sequence_for(db, test_org.id, "new_lead")

    lead = crm_service.create_lead(db, test_org.id, "Ava", email="ava@example.com")

    assert lead.status == LeadStatus.NEW.value
    assert len(_active(db, test_org.id, EntityType.LEAD, lead.id)) == 1


def test_trial_scheduled_fires_trigger(db, test_org, test_lead):
    _sequence_for(db, test_org.id, "trial_scheduled")

    crm_service.update_lead_status(db, test_lead, LeadStatus.TRIAL_SCHEDULED)

    [enrollment] = _active(db, test_org.id, EntityType.LEAD, test_lead.id)
    assert enrollment.sequence.trigger_key == "trial_scheduled"


def test_lost_lead_cancels_automations(db, test_org, test_lead):
    _sequence_for(db, test_org.id, "new_lead")
    crm_service.fire_trigger(db, test_lead, "new_lead")

    crm_service.update_lead_status(db, test_lead, LeadStatus.LOST)

    assert _active(db, test_org.id, EntityType.LEAD, test_lead.id) == []
    [cancelled] = enrollment_service.list_enrollments_for_entity(
        db, test_org.id, EntityType.LEAD, test_lead.id
    )
    assert cancelled.cancel_reason == "Lead marked lost"


def test_converted_status_requires_conversion(db, test_lead):
    with pytest.raises(crm_service.LeadNotEligibleError):
        crm_service.update_lead_status(db, test_lead, LeadStatus.CONVERTED)


@pytest.mark.parametrize(
    "attended,trigger",
    [(True, "trial_completed"), (False, "trial_no_show")],
)
def test_trial_outcome_replaces_reminders(db, test_org, test_lead, attended, trigger):
    _sequence_for(db, test_org.id, "trial_scheduled")
    _sequence_for(db, test_org.id, trigger)
    crm_service.update_lead_status(db, test_lead, LeadStatus.TRIAL_SCHEDULED)

    crm_service.record_trial_outcome(db, test_lead, attended=attended)

    [enrollment] = _active(db, test_org.id, EntityType.LEAD, test_lead.id)
    assert enrollment.sequence.trigger_key == trigger


def test_conversion_moves_automations_to_student(db, test_org, test_lead):
    _sequence_for(db, test_org.id, "new_lead")
    _sequence_for(db, test_org.id, "enrollment")
    crm_service.fire_trigger(db, test_lead, "new_lead")

    student = crm_service.convert_lead_to_student(db, test_lead)

    assert test_lead.status == LeadStatus.CONVERTED.value
    assert student.lead_id == test_lead.id
    assert student.email == "maya@example.com"
    assert _active(db, test_org.id, EntityType.LEAD, test_lead.id) == []
    [enrollment] = _active(db, test_org.id, EntityType.STUDENT, student.id)
    assert enrollment.sequence.trigger_key == "enrollment"

    with pytest.raises(crm_service.LeadNotEligibleError):
        crm_service.convert_lead_to_student(db, test_lead)


def test_student_status_hooks(db, test_org, test_student):
    _sequence_for(db, test_org.id, "inactive_student")

    crm_service.update_student_status(db, test_student, StudentStatus.INACTIVE)
    assert len(_active(db, test_org.id, EntityType.STUDENT, test_student.id)) == 1

    crm_service.update_student_status(db, test_student, StudentStatus.WITHDRAWN)
    assert _active(db, test_org.id, EntityType.STUDENT, test_student.id) == []


def test_missed_class_fires_trigger(db, test_org, test_student):
    _sequence_for(db, test_org.id, "missed_class")

    assert len(crm_service.record_missed_class(db, test_student)) == 1


def test_opt_out_cancels_and_blocks_new_triggers(db, test_org, test_lead):
    _sequence_for(db, test_org.id, "new_lead")
    _sequence_for(db, test_org.id, "trial_scheduled")
    crm_service.fire_trigger(db, test_lead, "new_lead")

    assert crm_service.opt_out(db, test_lead) == 1
    assert test_lead.opted_out is True

    assert crm_service.fire_trigger(db, test_lead, "trial_scheduled") == []
    assert _active(db, test_org.id, EntityType.LEAD, test_lead.id) == []


def test_delete_lead_cancels_enrollments(db, test_org, test_lead):
    _sequence_for(db, test_org.id, "new_lead")
    [enrollment_id] = crm_service.fire_trigger(db, test_lead, "new_lead")
    lead_id = test_lead.id

    crm_service.delete_lead(db, test_lead)

    assert crm_service.get_entity(db, EntityType.LEAD, lead_id) is None
    enrollment = enrollment_service.get_enrollment(db, enrollment_id)
    assert enrollment.status == EnrollmentStatus.CANCELLED.value
    assert enrollment.cancel_reason == "Entity deleted"


def test_delete_student_cancels_enrollments(db, test_org, test_student):
    _sequence_for(db, test_org.id, "missed_class")
    crm_service.record_missed_class(db, test_student)
    student_id = test_student.id

    crm_service.delete_student(db, test_student)

    assert _active(db, test_org.id, EntityType.STUDENT, student_id) == []


def test_get_entity_resolves_both_types(db, test_lead, test_student):
    assert crm_service.get_entity(db, "lead", test_lead.id).id == test_lead.id
    assert crm_service.get_entity(db, EntityType.STUDENT, test_student.id).id == test_student.id
    assert crm_service.get_entity(db, EntityType.STUDENT, test_lead.id) is None
