"""Default enum values used by model server defaults."""

from dojoflow.db.enums.automations import EnrollmentStatus
from dojoflow.db.enums.entities import LeadStatus, StudentStatus

DEFAULT_ENROLLMENT_STATUS = EnrollmentStatus.ACTIVE
DEFAULT_LEAD_STATUS = LeadStatus.NEW
DEFAULT_STUDENT_STATUS = StudentStatus.ACTIVE
