"""SQLAlchemy ORM models."""

from __future__ import annotations

from typing import TYPE_CHECKING

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
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dojoflow.db.base import Base
from dojoflow.db.types import JsonType, utcnow

if TYPE_CHECKING:
    from dojoflow.db.models import Organization


class OrganizationCreditBalance(Base):
    """
    Materialized AI credit balance for one organization.

    The credit_transactions log is the source of truth; this row is a cache
    that must satisfy balance == total_purchased + total_allocated - total_used.
    Only credit_service writes to it, always through conditional updates.
    """

    __tablename__ = "organization_credit_balances"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="chk_credit_balance_non_negative"),
        Index("idx_credit_balance_next_reset", "next_reset_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    balance: Mapped[int] = mapped_column(Integer, server_default=text("0"), nullable=False)
    period_allowance: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), nullable=False
    )
    period_used: Mapped[int] = mapped_column(Integer, server_default=text("0"), nullable=False)

    # Monotonic counters (refunds reverse total_used)
    total_purchased: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), nullable=False
    )
    total_allocated: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), nullable=False
    )
    total_used: Mapped[int] = mapped_column(Integer, server_default=text("0"), nullable=False)

    low_credit_threshold: Mapped[int] = mapped_column(
        Integer, server_default=text("50"), nullable=False
    )
    low_credit_alert_sent: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )

    last_reset_at: Mapped[datetime | None] = mapped_column(nullable=True)
    next_reset_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    organization: Mapped["Organization"] = relationship(back_populates="credit_balance")


class CreditTransaction(Base):
    """
    Append-only credit ledger entry.

    Amount is signed: deductions negative, everything else positive.
    balance_after snapshots the running balance right after this entry.
    """

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("idx_credit_tx_org_created", "organization_id", "created_at"),
        Index("idx_credit_tx_related_tx", "related_transaction_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    task_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    extra_metadata: Mapped[dict | None] = mapped_column("metadata", JsonType, nullable=True)

    # Loose references (enrollment/step/message ids, the deduction a refund reverses)
    related_entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    related_transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
