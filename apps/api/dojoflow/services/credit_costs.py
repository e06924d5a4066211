"""AI credit cost calculator.

Credits represent AI labor performed by the assistant, not user actions.
Everything here is pure and deterministic: no I/O, no exceptions.
"""

from __future__ import annotations

from dojoflow.db.enums import AutomationActionType, CreditTaskType

CREDIT_COSTS = {
    "KAI_CHAT": 1,
    "AI_SMS": 1,
    "AI_EMAIL": 2,
    "AI_PHONE_CALL_MIN": 8,
    "AI_PHONE_CALL_MAX": 15,
    "AUTOMATION_MIN": 5,
    "AUTOMATION_MAX": 10,
    "DATA_ANALYSIS": 3,
}

# Calls up to this length cost the minimum; the price scales linearly to the cap.
PHONE_CALL_BASE_SECONDS = 120
PHONE_CALL_CAP_SECONDS = 600

AUTOMATION_BASE_STEPS = 3
AUTOMATION_CAP_STEPS = 10

_FIXED_COSTS: dict[CreditTaskType, int] = {
    CreditTaskType.KAI_CHAT: CREDIT_COSTS["KAI_CHAT"],
    CreditTaskType.AI_SMS: CREDIT_COSTS["AI_SMS"],
    CreditTaskType.AI_EMAIL: CREDIT_COSTS["AI_EMAIL"],
    CreditTaskType.DATA_ANALYSIS: CREDIT_COSTS["DATA_ANALYSIS"],
}


def _interpolate(value: float, lower: float, upper: float, low_cost: int, high_cost: int) -> int:
    ratio = (value - lower) / (upper - lower)
    cost = low_cost + int(ratio * (high_cost - low_cost))
    return min(cost, high_cost)


def phone_call_cost(duration_seconds: float | None) -> int:
    """Credit cost for an AI phone call: 8 up to 2 minutes, scaling to 15 at 10 minutes."""
    duration = duration_seconds or 0
    if duration <= PHONE_CALL_BASE_SECONDS:
        return CREDIT_COSTS["AI_PHONE_CALL_MIN"]
    if duration <= PHONE_CALL_CAP_SECONDS:
        return _interpolate(
            duration,
            PHONE_CALL_BASE_SECONDS,
            PHONE_CALL_CAP_SECONDS,
            CREDIT_COSTS["AI_PHONE_CALL_MIN"],
            CREDIT_COSTS["AI_PHONE_CALL_MAX"],
        )
    return CREDIT_COSTS["AI_PHONE_CALL_MAX"]


def automation_cost(step_count: int | None) -> int:
    """Credit cost for a multi-step automation: 5 for 1-3 steps, scaling to 10 at 10 steps."""
    steps = step_count or 0
    if steps <= AUTOMATION_BASE_STEPS:
        return CREDIT_COSTS["AUTOMATION_MIN"]
    if steps <= AUTOMATION_CAP_STEPS:
        return _interpolate(
            steps,
            AUTOMATION_BASE_STEPS,
            AUTOMATION_CAP_STEPS,
            CREDIT_COSTS["AUTOMATION_MIN"],
            CREDIT_COSTS["AUTOMATION_MAX"],
        )
    return CREDIT_COSTS["AUTOMATION_MAX"]


def fixed_cost(task_type: CreditTaskType | str) -> int:
    """Cost of a flat-priced task; 0 for task types priced by a parameter or unknown."""
    try:
        task = CreditTaskType(task_type)
    except ValueError:
        return 0
    return _FIXED_COSTS.get(task, 0)


def cost_for_task(
    task_type: CreditTaskType | str,
    *,
    call_duration_seconds: int | None = None,
    step_count: int | None = None,
) -> int:
    """Price any task type, using the call length or step count where the price depends on it."""
    try:
        task = CreditTaskType(task_type)
    except ValueError:
        return 0
    if task == CreditTaskType.AI_PHONE_CALL:
        return phone_call_cost(call_duration_seconds)
    if task == CreditTaskType.AUTOMATION:
        return automation_cost(step_count)
    return fixed_cost(task)


def cost_for_action(
    action_type: AutomationActionType | str,
    *,
    call_duration_seconds: int | None = None,
) -> tuple[CreditTaskType | None, int]:
    """Map an automation step action to the task type it bills and its cost."""
    try:
        action = AutomationActionType(action_type)
    except ValueError:
        return None, 0

    if action == AutomationActionType.SEND_SMS:
        return CreditTaskType.AI_SMS, fixed_cost(CreditTaskType.AI_SMS)
    if action == AutomationActionType.SEND_EMAIL:
        return CreditTaskType.AI_EMAIL, fixed_cost(CreditTaskType.AI_EMAIL)
    if action == AutomationActionType.AI_PHONE_CALL:
        return CreditTaskType.AI_PHONE_CALL, phone_call_cost(call_duration_seconds)
    return None, 0


def describe_cost(task_type: CreditTaskType | str) -> str:
    """Human-readable cost text for pricing pages."""
    try:
        task = CreditTaskType(task_type)
    except ValueError:
        return "Variable cost"

    if task == CreditTaskType.KAI_CHAT:
        return f"{CREDIT_COSTS['KAI_CHAT']} credit per response"
    if task == CreditTaskType.AI_SMS:
        return f"{CREDIT_COSTS['AI_SMS']} credit per message"
    if task == CreditTaskType.AI_EMAIL:
        return f"{CREDIT_COSTS['AI_EMAIL']} credits per email"
    if task == CreditTaskType.AI_PHONE_CALL:
        return (
            f"{CREDIT_COSTS['AI_PHONE_CALL_MIN']}-{CREDIT_COSTS['AI_PHONE_CALL_MAX']} "
            "credits per call"
        )
    if task == CreditTaskType.AUTOMATION:
        return (
            f"{CREDIT_COSTS['AUTOMATION_MIN']}-{CREDIT_COSTS['AUTOMATION_MAX']} "
            "credits per sequence"
        )
    if task == CreditTaskType.DATA_ANALYSIS:
        return f"{CREDIT_COSTS['DATA_ANALYSIS']} credits per report"
    return "Variable cost"
