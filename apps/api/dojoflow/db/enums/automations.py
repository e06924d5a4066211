"""Automation-related enums."""

from enum import Enum


class AutomationTriggerKey(str, Enum):
    """CRM events that can enroll an entity into a sequence."""

    NEW_LEAD = "new_lead"
    TRIAL_SCHEDULED = "trial_scheduled"
    TRIAL_COMPLETED = "trial_completed"
    TRIAL_NO_SHOW = "trial_no_show"
    ENROLLMENT = "enrollment"
    MISSED_CLASS = "missed_class"
    INACTIVE_STUDENT = "inactive_student"
    RENEWAL_DUE = "renewal_due"
    CUSTOM = "custom"


class AutomationActionType(str, Enum):
    """Actions a sequence step can execute."""

    SEND_SMS = "send_sms"
    SEND_EMAIL = "send_email"
    AI_PHONE_CALL = "ai_phone_call"
    WAIT = "wait"


class EnrollmentStatus(str, Enum):
    """Lifecycle of an entity's progress through a sequence."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
