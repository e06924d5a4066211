"""CRM entity enums."""

from enum import Enum


class EntityType(str, Enum):
    """Entities that can be enrolled in automations."""

    LEAD = "lead"
    STUDENT = "student"


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    TRIAL_SCHEDULED = "trial_scheduled"
    CONVERTED = "converted"
    LOST = "lost"


class StudentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    WITHDRAWN = "withdrawn"


# Lead statuses that end automation eligibility
LEAD_TERMINAL_STATUSES = frozenset({LeadStatus.CONVERTED, LeadStatus.LOST})
