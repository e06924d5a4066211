"""Tests for the enrollment manager."""

from datetime import datetime, timedelta, timezone

from dojoflow.db.enums import AutomationTriggerKey, EnrollmentStatus, EntityType
from dojoflow.db.models import AutomationSequence
from dojoflow.services import automation_sequence_service as seq_service
from dojoflow.services import enrollment_service

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def _sequence(db, org_id, trigger="new_lead", delays=(0, 60, 1440)):
    return seq_service.create_sequence(
        db,
        org_id,
        name=f"Seq {trigger}",
        trigger_key=trigger,
        steps=[
            {"action_type": "send_sms", "message": f"Step {i}", "delay_minutes": delay}
            for i, delay in enumerate(delays, start=1)
        ],
    )


def _enroll_lead(db, lead, trigger=AutomationTriggerKey.NEW_LEAD, now=NOW):
    return enrollment_service.enroll(
        db, lead.organization_id, EntityType.LEAD, lead.id, trigger, now=now
    )


def test_enroll_creates_enrollment_at_first_step(db, test_org, test_lead):
    sequence = _sequence(db, test_org.id, delays=(30, 60))

    ids = _enroll_lead(db, test_lead)

    assert len(ids) == 1
    enrollment = enrollment_service.get_enrollment(db, ids[0])
    assert enrollment.sequence_id == sequence.id
    assert enrollment.status == EnrollmentStatus.ACTIVE.value
    assert enrollment.current_step_order == 1
    assert enrollment.next_execution_at == NOW + timedelta(minutes=30)
    assert enrollment.attempt_count == 0

    db.refresh(sequence)
    assert sequence.enrollment_count == 1


def test_enroll_is_idempotent(db, test_org, test_lead):
    sequence = _sequence(db, test_org.id)

    first = _enroll_lead(db, test_lead)
    second = _enroll_lead(db, test_lead)

    assert len(first) == 1
    assert second == []
    assert db.get(AutomationSequence, sequence.id).enrollment_count == 1


def test_enroll_without_matching_sequence(db, test_org, test_lead):
    _sequence(db, test_org.id, trigger="missed_class")

    assert _enroll_lead(db, test_lead) == []


def test_enroll_into_every_matching_sequence(db, test_org, test_lead):
    _sequence(db, test_org.id)
    _sequence(db, None)

    assert len(_enroll_lead(db, test_lead)) == 2


def test_reenroll_after_completion(db, test_org, test_lead):
    _sequence(db, test_org.id, delays=(0,))
    [enrollment_id] = _enroll_lead(db, test_lead)
    enrollment_service.advance(db, enrollment_id, now=NOW)

    assert len(_enroll_lead(db, test_lead)) == 1


def test_advance_moves_to_next_step(db, test_org, test_lead):
    _sequence(db, test_org.id, delays=(0, 60, 1440))
    [enrollment_id] = _enroll_lead(db, test_lead)
    enrollment_service.schedule_retry(db, enrollment_id, NOW, "flaky")

    enrollment = enrollment_service.advance(db, enrollment_id, now=NOW)

    assert enrollment.current_step_order == 2
    assert enrollment.next_execution_at == NOW + timedelta(minutes=60)
    assert enrollment.attempt_count == 0
    assert enrollment.last_error is None

    later = NOW + timedelta(hours=1)
    enrollment = enrollment_service.advance(db, enrollment_id, now=later)
    assert enrollment.current_step_order == 3
    assert enrollment.next_execution_at == later + timedelta(minutes=1440)


def test_advance_past_last_step_completes(db, test_org, test_lead):
    sequence = _sequence(db, test_org.id, delays=(0,))
    [enrollment_id] = _enroll_lead(db, test_lead)

    enrollment = enrollment_service.advance(db, enrollment_id, now=NOW)

    assert enrollment.status == EnrollmentStatus.COMPLETED.value
    assert enrollment.completed_at == NOW
    assert enrollment.next_execution_at is None
    db.refresh(sequence)
    assert sequence.completed_count == 1


def test_advance_cancelled_enrollment_is_noop(db, test_org, test_lead):
    _sequence(db, test_org.id)
    [enrollment_id] = _enroll_lead(db, test_lead)
    enrollment_service.cancel(db, test_org.id, EntityType.LEAD, test_lead.id, "Lead lost")

    assert enrollment_service.advance(db, enrollment_id, now=NOW) is None

    enrollment = enrollment_service.get_enrollment(db, enrollment_id)
    assert enrollment.status == EnrollmentStatus.CANCELLED.value
    assert enrollment.current_step_order == 1


def test_cancel_stops_all_active_enrollments(db, test_org, test_lead):
    _sequence(db, test_org.id)
    _sequence(db, None)
    ids = _enroll_lead(db, test_lead)

    cancelled = enrollment_service.cancel(
        db, test_org.id, EntityType.LEAD, test_lead.id, "Converted"
    )

    assert cancelled == 2
    for enrollment_id in ids:
        enrollment = enrollment_service.get_enrollment(db, enrollment_id)
        assert enrollment.status == EnrollmentStatus.CANCELLED.value
        assert enrollment.cancel_reason == "Converted"
        assert enrollment.next_execution_at is None
    assert enrollment_service.cancel(db, test_org.id, EntityType.LEAD, test_lead.id, "x") == 0


def test_cancel_single_enrollment_is_guarded(db, test_org, other_org, test_lead):
    _sequence(db, test_org.id)
    other = _sequence(db, test_org.id, trigger="trial_scheduled")
    [first_id] = _enroll_lead(db, test_lead)
    [second_id] = _enroll_lead(db, test_lead, trigger=AutomationTriggerKey.TRIAL_SCHEDULED)

    assert enrollment_service.cancel_enrollment(db, other_org.id, first_id, "x") is False
    assert enrollment_service.cancel_enrollment(db, test_org.id, first_id, "Asked to stop") is True
    assert enrollment_service.cancel_enrollment(db, test_org.id, first_id, "again") is False

    enrollment = enrollment_service.get_enrollment(db, first_id)
    assert enrollment.status == EnrollmentStatus.CANCELLED.value
    assert enrollment.cancel_reason == "Asked to stop"
    assert enrollment.claimed_at is None
    # Other enrollments of the same lead keep running
    second = enrollment_service.get_enrollment(db, second_id)
    assert second.sequence_id == other.id
    assert second.status == EnrollmentStatus.ACTIVE.value


def test_mark_failed_only_affects_active(db, test_org, test_lead):
    _sequence(db, test_org.id)
    [enrollment_id] = _enroll_lead(db, test_lead)

    assert enrollment_service.mark_failed(db, enrollment_id, "No phone number") is True
    assert enrollment_service.mark_failed(db, enrollment_id, "again") is False

    enrollment = enrollment_service.get_enrollment(db, enrollment_id)
    assert enrollment.status == EnrollmentStatus.FAILED.value
    assert enrollment.last_error == "No phone number"


def test_claim_is_exclusive_until_lease_expires(db, test_org, test_lead):
    _sequence(db, test_org.id)
    [enrollment_id] = _enroll_lead(db, test_lead)

    claims = enrollment_service.claim_due_enrollments(db, NOW, limit=10, lease_seconds=900)
    assert [c.enrollment_id for c in claims] == [enrollment_id]
    assert claims[0].due_at == NOW

    assert enrollment_service.claim_due_enrollments(db, NOW, limit=10, lease_seconds=900) == []

    expired = NOW + timedelta(seconds=901)
    reclaimed = enrollment_service.claim_due_enrollments(
        db, expired, limit=10, lease_seconds=900
    )
    assert [c.enrollment_id for c in reclaimed] == [enrollment_id]


def test_claim_skips_future_and_inactive(db, test_org, test_lead, test_student):
    _sequence(db, test_org.id, delays=(120,))
    _sequence(db, test_org.id, trigger="missed_class", delays=(0,))
    _enroll_lead(db, test_lead)
    [student_enrollment] = enrollment_service.enroll(
        db, test_org.id, EntityType.STUDENT, test_student.id, "missed_class", now=NOW
    )
    enrollment_service.mark_failed(db, student_enrollment, "gone")

    assert enrollment_service.claim_due_enrollments(db, NOW, limit=10, lease_seconds=900) == []


def test_release_claim_restores_due_time(db, test_org, test_lead):
    _sequence(db, test_org.id)
    [enrollment_id] = _enroll_lead(db, test_lead)
    [claim] = enrollment_service.claim_due_enrollments(db, NOW, limit=10, lease_seconds=900)

    assert enrollment_service.release_claim(db, enrollment_id, claim.due_at) is True

    enrollment = enrollment_service.get_enrollment(db, enrollment_id)
    assert enrollment.next_execution_at == NOW
    assert enrollment.claimed_at is None
    assert len(enrollment_service.claim_due_enrollments(db, NOW, limit=10, lease_seconds=900)) == 1


def test_schedule_retry_counts_attempts_optionally(db, test_org, test_lead):
    _sequence(db, test_org.id)
    [enrollment_id] = _enroll_lead(db, test_lead)

    enrollment_service.schedule_retry(db, enrollment_id, NOW + timedelta(minutes=5), "timeout")
    enrollment_service.schedule_retry(
        db, enrollment_id, NOW + timedelta(hours=1), "no credits", count_attempt=False
    )

    enrollment = enrollment_service.get_enrollment(db, enrollment_id)
    assert enrollment.attempt_count == 1
    assert enrollment.last_error == "no credits"
    assert enrollment.next_execution_at == NOW + timedelta(hours=1)


def test_list_enrollments_for_entity(db, test_org, test_lead):
    _sequence(db, test_org.id)
    [enrollment_id] = _enroll_lead(db, test_lead)

    active = enrollment_service.list_enrollments_for_entity(
        db, test_org.id, EntityType.LEAD, test_lead.id, status=EnrollmentStatus.ACTIVE
    )
    assert [e.id for e in active] == [enrollment_id]
    assert (
        enrollment_service.list_enrollments_for_entity(
            db, test_org.id, EntityType.LEAD, test_lead.id, status=EnrollmentStatus.FAILED
        )
        == []
    )


def test_list_enrollments_for_sequence_and_stats(db, test_org, other_org, test_lead, test_student):
    sequence = _sequence(db, test_org.id, delays=(0,))
    _sequence(db, test_org.id, trigger="missed_class")
    [lead_enrollment] = _enroll_lead(db, test_lead)
    [student_enrollment] = enrollment_service.enroll(
        db, test_org.id, EntityType.STUDENT, test_student.id, "new_lead", now=NOW
    )
    enrollment_service.advance(db, lead_enrollment, now=NOW)
    enrollment_service.mark_failed(db, student_enrollment, "No phone number")

    listed = enrollment_service.list_enrollments_for_sequence(db, test_org.id, sequence.id)
    assert {e.id for e in listed} == {lead_enrollment, student_enrollment}
    completed = enrollment_service.list_enrollments_for_sequence(
        db, test_org.id, sequence.id, status=EnrollmentStatus.COMPLETED
    )
    assert [e.id for e in completed] == [lead_enrollment]
    assert enrollment_service.list_enrollments_for_sequence(db, other_org.id, sequence.id) == []

    stats = enrollment_service.get_automation_stats(db, test_org.id)
    assert stats.total_sequences == 2
    assert stats.active_sequences == 2
    assert stats.total_enrollments == 2
    assert stats.active_enrollments == 0
    assert stats.completed_enrollments == 1
    assert stats.failed_enrollments == 1
