"""Pydantic schemas for the credit ledger API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dojoflow.db.enums import CreditTaskType, CreditWarningLevel


class CreditBalanceRead(BaseModel):
    """Balance payload for the low-credit banner."""
    balance: int
    monthly_allocation: int
    period_used: int
    percent_remaining: float
    warning_level: CreditWarningLevel
    next_reset_at: datetime | None


class CreditTransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    amount: int
    balance_after: int
    task_type: str | None
    description: str
    extra_metadata: dict | None = Field(default=None, serialization_alias="metadata")
    related_entity_id: str | None
    related_transaction_id: UUID | None
    created_at: datetime


class CreditCostRead(BaseModel):
    task_type: CreditTaskType
    description: str


class TopUpRequest(BaseModel):
    amount: int = Field(gt=0, le=100_000)
    payment_reference: str | None = Field(default=None, max_length=255)


class TopUpResponse(BaseModel):
    balance: int


class ReconciliationRead(BaseModel):
    organization_id: UUID
    cached_balance: int
    ledger_balance: int
    transaction_count: int
    counters_match: bool
    is_consistent: bool


class BalanceCheckRequest(BaseModel):
    """Either an explicit credit amount or a task type to price."""
    required_credits: int | None = Field(default=None, ge=0)
    task_type: CreditTaskType | None = None
    call_duration_seconds: int | None = Field(default=None, ge=0)
    step_count: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_amount_source(self):
        if self.required_credits is None and self.task_type is None:
            raise ValueError("required_credits or task_type is required")
        return self


class BalanceCheckResponse(BaseModel):
    sufficient: bool
    current_balance: int
    required_credits: int
    remaining_after: int
    message: str | None
    task_type: CreditTaskType | None


class DeductRequest(BaseModel):
    task_type: CreditTaskType
    description: str = Field(min_length=1, max_length=500)
    call_duration_seconds: int | None = Field(default=None, ge=0)
    step_count: int | None = Field(default=None, ge=0)
    related_id: str | None = Field(default=None, max_length=255)
    metadata: dict | None = None


class DeductResponse(BaseModel):
    success: bool
    new_balance: int
    transaction_id: UUID
    amount_deducted: int
