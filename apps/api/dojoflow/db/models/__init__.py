"""SQLAlchemy ORM models."""

from dojoflow.db.models.automations import (
    AutomationEnrollment,
    AutomationSequence,
    AutomationStep,
)
from dojoflow.db.models.credits import CreditTransaction, OrganizationCreditBalance
from dojoflow.db.models.crm import Lead, Student
from dojoflow.db.models.organizations import Organization

__all__ = [
    "AutomationEnrollment",
    "AutomationSequence",
    "AutomationStep",
    "CreditTransaction",
    "Lead",
    "Organization",
    "OrganizationCreditBalance",
    "Student",
]
