"""Enrollment service - entity progress through automation sequences.

State changes are conditional updates on ``status = 'active'`` so a
cancellation that lands while a step is being dispatched always wins: the
scheduler's later advance/retry becomes a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dojoflow.core.structured_logging import build_log_context
from dojoflow.db.enums import AutomationTriggerKey, EnrollmentStatus, EntityType
from dojoflow.db.models import AutomationEnrollment, AutomationSequence
from dojoflow.db.types import utcnow
from dojoflow.services import automation_sequence_service

logger = logging.getLogger(__name__)

_ACTIVE = EnrollmentStatus.ACTIVE.value


@dataclass(frozen=True)
class ClaimedEnrollment:
    enrollment_id: UUID
    due_at: datetime


def get_enrollment(db: Session, enrollment_id: UUID) -> AutomationEnrollment | None:
    return db.get(AutomationEnrollment, enrollment_id, populate_existing=True)


def list_enrollments_for_entity(
    db: Session,
    org_id: UUID,
    entity_type: EntityType,
    entity_id: UUID,
    status: EnrollmentStatus | None = None,
) -> list[AutomationEnrollment]:
    query = db.query(AutomationEnrollment).filter(
        AutomationEnrollment.organization_id == org_id,
        AutomationEnrollment.entity_type == EntityType(entity_type).value,
        AutomationEnrollment.entity_id == entity_id,
    )
    if status:
        query = query.filter(AutomationEnrollment.status == status.value)
    return query.order_by(AutomationEnrollment.enrolled_at).all()


def list_enrollments_for_sequence(
    db: Session,
    org_id: UUID,
    sequence_id: UUID,
    status: EnrollmentStatus | None = None,
) -> list[AutomationEnrollment]:
    query = db.query(AutomationEnrollment).filter(
        AutomationEnrollment.organization_id == org_id,
        AutomationEnrollment.sequence_id == sequence_id,
    )
    if status:
        query = query.filter(AutomationEnrollment.status == status.value)
    return query.order_by(AutomationEnrollment.enrolled_at).all()


@dataclass(frozen=True)
class AutomationStats:
    total_sequences: int
    active_sequences: int
    total_enrollments: int
    active_enrollments: int
    completed_enrollments: int
    failed_enrollments: int


def get_automation_stats(db: Session, org_id: UUID) -> AutomationStats:
    """Sequence and enrollment counts for the automations dashboard."""
    sequences = automation_sequence_service.list_sequences(db, org_id, include_inactive=True)
    counts = dict(
        db.query(AutomationEnrollment.status, func.count(AutomationEnrollment.id))
        .filter(AutomationEnrollment.organization_id == org_id)
        .group_by(AutomationEnrollment.status)
        .all()
    )
    return AutomationStats(
        total_sequences=len(sequences),
        active_sequences=sum(1 for s in sequences if s.is_active),
        total_enrollments=sum(counts.values()),
        active_enrollments=counts.get(_ACTIVE, 0),
        completed_enrollments=counts.get(EnrollmentStatus.COMPLETED.value, 0),
        failed_enrollments=counts.get(EnrollmentStatus.FAILED.value, 0),
    )


def _has_active_enrollment(
    db: Session, sequence_id: UUID, entity_type: str, entity_id: UUID
) -> bool:
    return (
        db.query(AutomationEnrollment.id)
        .filter(
            AutomationEnrollment.sequence_id == sequence_id,
            AutomationEnrollment.entity_type == entity_type,
            AutomationEnrollment.entity_id == entity_id,
            AutomationEnrollment.status == _ACTIVE,
        )
        .first()
        is not None
    )


def enroll(
    db: Session,
    org_id: UUID,
    entity_type: EntityType | str,
    entity_id: UUID,
    trigger_key: AutomationTriggerKey | str,
    now: datetime | None = None,
) -> list[UUID]:
    """
    Enroll an entity in every active sequence for the trigger.

    Idempotent per (sequence, entity): an existing active enrollment is left
    alone. The partial unique index backs the check up when two enroll calls
    race; the loser is skipped.

    Returns:
        IDs of newly created enrollments (empty when nothing matched).
    """
    now = now or utcnow()
    entity = EntityType(entity_type).value
    trigger = AutomationTriggerKey(trigger_key)

    created: list[UUID] = []
    for sequence in automation_sequence_service.find_sequences_for_trigger(db, trigger, org_id):
        sequence_id = sequence.id
        if _has_active_enrollment(db, sequence_id, entity, entity_id):
            continue

        first_step = automation_sequence_service.get_first_step(db, sequence_id)
        if not first_step:
            continue

        enrollment = AutomationEnrollment(
            organization_id=org_id,
            sequence_id=sequence_id,
            entity_type=entity,
            entity_id=entity_id,
            current_step_id=first_step.id,
            current_step_order=first_step.step_order,
            status=_ACTIVE,
            next_execution_at=now + timedelta(minutes=first_step.delay_minutes),
            attempt_count=0,
            enrolled_at=now,
        )
        db.add(enrollment)
        sequence.enrollment_count = AutomationSequence.enrollment_count + 1
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(
                "Skipped duplicate enrollment for %s %s",
                entity,
                entity_id,
                extra=build_log_context(org_id=org_id, sequence_id=sequence_id),
            )
            continue

        created.append(enrollment.id)
        logger.info(
            "Enrolled %s in sequence on trigger %s",
            entity,
            trigger.value,
            extra=build_log_context(
                org_id=org_id, sequence_id=sequence_id, enrollment_id=enrollment.id
            ),
        )

    return created


def cancel(
    db: Session,
    org_id: UUID,
    entity_type: EntityType | str,
    entity_id: UUID,
    reason: str,
) -> int:
    """
    Cancel every active enrollment of an entity.

    The next scheduler tick skips them; a dispatch already in flight may
    finish but cannot advance a cancelled enrollment.

    Returns:
        Number of enrollments cancelled.
    """
    now = utcnow()
    result = db.execute(
        update(AutomationEnrollment)
        .where(
            AutomationEnrollment.organization_id == org_id,
            AutomationEnrollment.entity_type == EntityType(entity_type).value,
            AutomationEnrollment.entity_id == entity_id,
            AutomationEnrollment.status == _ACTIVE,
        )
        .values(
            status=EnrollmentStatus.CANCELLED.value,
            cancelled_at=now,
            cancel_reason=reason,
            next_execution_at=None,
            claimed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount:
        logger.info(
            "Cancelled %s enrollment(s) for %s %s: %s",
            result.rowcount,
            entity_type,
            entity_id,
            reason,
            extra=build_log_context(org_id=org_id),
        )
    return result.rowcount


def cancel_enrollment(db: Session, org_id: UUID, enrollment_id: UUID, reason: str) -> bool:
    """Cancel one enrollment. False if it is not the organization's or no longer active."""
    now = utcnow()
    result = db.execute(
        update(AutomationEnrollment)
        .where(
            AutomationEnrollment.id == enrollment_id,
            AutomationEnrollment.organization_id == org_id,
            AutomationEnrollment.status == _ACTIVE,
        )
        .values(
            status=EnrollmentStatus.CANCELLED.value,
            cancelled_at=now,
            cancel_reason=reason,
            next_execution_at=None,
            claimed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount:
        logger.info(
            "Cancelled enrollment: %s",
            reason,
            extra=build_log_context(org_id=org_id, enrollment_id=enrollment_id),
        )
    return bool(result.rowcount)


def advance(
    db: Session, enrollment_id: UUID, now: datetime | None = None
) -> AutomationEnrollment | None:
    """
    Move an enrollment past its current step after a successful dispatch.

    Completes the enrollment after the last step; otherwise points it at the
    next ordinal, due after that step's delay. No-op (returns None) when the
    enrollment is no longer active.
    """
    now = now or utcnow()
    enrollment = get_enrollment(db, enrollment_id)
    if not enrollment or enrollment.status != _ACTIVE:
        return None

    next_step = automation_sequence_service.get_next_step(
        db, enrollment.sequence_id, enrollment.current_step_order or 0
    )
    if next_step:
        values = {
            "current_step_id": next_step.id,
            "current_step_order": next_step.step_order,
            "next_execution_at": now + timedelta(minutes=next_step.delay_minutes),
        }
    else:
        values = {
            "status": EnrollmentStatus.COMPLETED.value,
            "completed_at": now,
            "next_execution_at": None,
        }

    result = db.execute(
        update(AutomationEnrollment)
        .where(
            AutomationEnrollment.id == enrollment_id,
            AutomationEnrollment.status == _ACTIVE,
        )
        .values(
            attempt_count=0,
            last_error=None,
            claimed_at=None,
            updated_at=now,
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        return None

    if not next_step:
        db.execute(
            update(AutomationSequence)
            .where(AutomationSequence.id == enrollment.sequence_id)
            .values(completed_count=AutomationSequence.completed_count + 1)
            .execution_options(synchronize_session=False)
        )
    db.commit()

    logger.info(
        "Enrollment %s",
        "completed" if not next_step else f"advanced to step {next_step.step_order}",
        extra=build_log_context(
            org_id=enrollment.organization_id, enrollment_id=enrollment_id
        ),
    )
    return get_enrollment(db, enrollment_id)


def mark_failed(db: Session, enrollment_id: UUID, reason: str) -> bool:
    """Stop an active enrollment for good. Returns False if it was not active."""
    now = utcnow()
    result = db.execute(
        update(AutomationEnrollment)
        .where(
            AutomationEnrollment.id == enrollment_id,
            AutomationEnrollment.status == _ACTIVE,
        )
        .values(
            status=EnrollmentStatus.FAILED.value,
            last_error=reason,
            next_execution_at=None,
            claimed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.warning(
            "Enrollment failed: %s", reason, extra=build_log_context(enrollment_id=enrollment_id)
        )
    return bool(result.rowcount)


# =============================================================================
# Scheduler primitives
# =============================================================================


def claim_due_enrollments(
    db: Session,
    now: datetime,
    limit: int,
    lease_seconds: int,
) -> list[ClaimedEnrollment]:
    """
    Claim up to ``limit`` due enrollments for execution.

    Each claim pushes next_execution_at out to the end of a lease, guarded by
    the due time we read, so only one claimer wins a given enrollment. If the
    worker dies mid-dispatch the lease expires and the enrollment is due again.
    """
    candidates = (
        db.query(AutomationEnrollment.id, AutomationEnrollment.next_execution_at)
        .filter(
            AutomationEnrollment.status == _ACTIVE,
            AutomationEnrollment.next_execution_at <= now,
        )
        .order_by(AutomationEnrollment.next_execution_at)
        .limit(limit)
        .all()
    )

    lease_until = now + timedelta(seconds=lease_seconds)
    claimed: list[ClaimedEnrollment] = []
    for enrollment_id, due_at in candidates:
        result = db.execute(
            update(AutomationEnrollment)
            .where(
                AutomationEnrollment.id == enrollment_id,
                AutomationEnrollment.status == _ACTIVE,
                AutomationEnrollment.next_execution_at == due_at,
            )
            .values(next_execution_at=lease_until, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(ClaimedEnrollment(enrollment_id=enrollment_id, due_at=due_at))
    db.commit()
    return claimed


def release_claim(db: Session, enrollment_id: UUID, next_execution_at: datetime) -> bool:
    """Hand a claimed enrollment back, due at ``next_execution_at``."""
    result = db.execute(
        update(AutomationEnrollment)
        .where(
            AutomationEnrollment.id == enrollment_id,
            AutomationEnrollment.status == _ACTIVE,
        )
        .values(next_execution_at=next_execution_at, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return bool(result.rowcount)


def schedule_retry(
    db: Session,
    enrollment_id: UUID,
    next_execution_at: datetime,
    error: str,
    count_attempt: bool = True,
) -> bool:
    """Keep the enrollment on its current step and try again later."""
    values = {
        "next_execution_at": next_execution_at,
        "last_error": error,
        "claimed_at": None,
        "updated_at": utcnow(),
    }
    if count_attempt:
        values["attempt_count"] = AutomationEnrollment.attempt_count + 1

    result = db.execute(
        update(AutomationEnrollment)
        .where(
            AutomationEnrollment.id == enrollment_id,
            AutomationEnrollment.status == _ACTIVE,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return bool(result.rowcount)
