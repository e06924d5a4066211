"""Enum definitions for application constants."""

from dojoflow.db.enums.automations import (
    AutomationActionType,
    AutomationTriggerKey,
    EnrollmentStatus,
)
from dojoflow.db.enums.credits import (
    CreditTaskType,
    CreditTransactionType,
    CreditWarningLevel,
)
from dojoflow.db.enums.defaults import (
    DEFAULT_ENROLLMENT_STATUS,
    DEFAULT_LEAD_STATUS,
    DEFAULT_STUDENT_STATUS,
)
from dojoflow.db.enums.entities import (
    LEAD_TERMINAL_STATUSES,
    EntityType,
    LeadStatus,
    StudentStatus,
)

__all__ = [
    "AutomationActionType",
    "AutomationTriggerKey",
    "CreditTaskType",
    "CreditTransactionType",
    "CreditWarningLevel",
    "DEFAULT_ENROLLMENT_STATUS",
    "DEFAULT_LEAD_STATUS",
    "DEFAULT_STUDENT_STATUS",
    "EnrollmentStatus",
    "EntityType",
    "LEAD_TERMINAL_STATUSES",
    "LeadStatus",
    "StudentStatus",
]
