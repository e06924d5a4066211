"""Credit ledger enums."""

from enum import Enum


class CreditTransactionType(str, Enum):
    """Kinds of ledger entries. Deductions carry negative amounts."""

    DEDUCTION = "deduction"
    REFUND = "refund"
    ALLOCATION = "allocation"
    PURCHASE = "purchase"
    BONUS = "bonus"


class CreditTaskType(str, Enum):
    """AI labor categories that consume credits."""

    KAI_CHAT = "kai_chat"
    AI_SMS = "ai_sms"
    AI_EMAIL = "ai_email"
    AI_PHONE_CALL = "ai_phone_call"
    AUTOMATION = "automation"
    DATA_ANALYSIS = "data_analysis"
    OTHER = "other"


class CreditWarningLevel(str, Enum):
    """Banner level shown to the UI for the remaining balance."""

    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    BLOCKING = "blocking"
