"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dojoflow.db.base import Base
from dojoflow.db.enums import DEFAULT_ENROLLMENT_STATUS
from dojoflow.db.types import utcnow


class AutomationSequence(Base):
    """
    Trigger-bound multi-step automation.

    organization_id NULL marks a platform-wide default. An organization
    customizes a default by copying it; the copy points back through
    source_sequence_id and hides the default for that organization.
    """

    __tablename__ = "automation_sequences"
    __table_args__ = (
        Index("idx_seq_trigger_active", "organization_id", "trigger_key", "is_active"),
        Index("idx_seq_source", "source_sequence_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True
    )
    source_sequence_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("automation_sequences.id", ondelete="SET NULL"), nullable=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_key: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )

    # Stats
    enrollment_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    completed_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )

    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    steps: Mapped[list["AutomationStep"]] = relationship(
        back_populates="sequence",
        order_by="AutomationStep.step_order",
        cascade="all, delete-orphan",
    )


class AutomationStep(Base):
    """One action in a sequence, executed delay_minutes after the previous step."""

    __tablename__ = "automation_steps"
    __table_args__ = (
        UniqueConstraint("sequence_id", "step_order", name="uq_step_order"),
        CheckConstraint("delay_minutes >= 0", name="chk_step_delay_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("automation_sequences.id", ondelete="CASCADE"), nullable=False
    )

    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    delay_minutes: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )

    subject: Mapped[str | None] = mapped_column(String(500), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Expected AI call length, used to price the call up front
    call_duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    sequence: Mapped["AutomationSequence"] = relationship(back_populates="steps")


class AutomationEnrollment(Base):
    """
    One entity's progress through one sequence.

    At most one active enrollment per (sequence, entity) - enforced by a
    partial unique index. entity_id is a weak reference (no FK) so deleting
    a lead/student must go through enrollment_service.cancel.
    """

    __tablename__ = "automation_enrollments"
    __table_args__ = (
        Index(
            "uq_enrollment_active_entity",
            "sequence_id",
            "entity_type",
            "entity_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index(
            "idx_enrollment_due",
            "status",
            "next_execution_at",
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_enrollment_entity", "entity_type", "entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("automation_sequences.id", ondelete="CASCADE"), nullable=False
    )

    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    current_step_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("automation_steps.id", ondelete="SET NULL"), nullable=True
    )
    current_step_order: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_ENROLLMENT_STATUS.value, nullable=False
    )
    next_execution_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Attempts for the current step only; reset when the enrollment advances
    attempt_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    enrolled_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    sequence: Mapped["AutomationSequence"] = relationship()
    current_step: Mapped["AutomationStep | None"] = relationship()
