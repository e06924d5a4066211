"""SQLAlchemy ORM models."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import datetime

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dojoflow.db.base import Base
from dojoflow.db.types import utcnow

if TYPE_CHECKING:
    from dojoflow.db.models import OrganizationCreditBalance


class Organization(Base):
    """
    A tenant (one dojo/school) in the multi-tenant system.

    Business fields feed template variables in automation messages.
    """

    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)

    business_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    operator_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    business_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    business_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ai_assistant_name: Mapped[str] = mapped_column(String(50), default="Kai")

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    credit_balance: Mapped["OrganizationCreditBalance | None"] = relationship(
        back_populates="organization", uselist=False
    )
