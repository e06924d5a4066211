"""Pydantic schemas for automation sequences, enrollments and the scheduler."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from dojoflow.db.enums import AutomationTriggerKey, EntityType


class StepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    step_order: int
    name: str | None
    action_type: str
    delay_minutes: int
    subject: str | None
    message: str | None
    call_duration_seconds: int | None


class SequenceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID | None
    source_sequence_id: UUID | None
    name: str
    description: str | None
    trigger_key: str
    is_active: bool
    enrollment_count: int
    completed_count: int
    created_at: datetime
    steps: list[StepRead] = []


class TemplateSummary(BaseModel):
    name: str
    description: str
    trigger_key: str
    step_count: int


class InstallTemplateRequest(BaseModel):
    template_name: str = Field(min_length=1, max_length=255)


class SequenceActiveUpdate(BaseModel):
    is_active: bool


class StepCostRead(BaseModel):
    step_order: int
    action_type: str
    task_type: str | None
    credits: int


class SequenceCostRead(BaseModel):
    sequence_id: UUID
    step_count: int
    steps: list[StepCostRead]
    total_step_credits: int
    automation_credits: int


class TriggerRequest(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    trigger_key: AutomationTriggerKey


class TriggerResponse(BaseModel):
    enrollment_ids: list[UUID]


class CancelRequest(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    reason: str = Field(default="Cancelled by staff", max_length=500)


class CancelResponse(BaseModel):
    cancelled: int


class EnrollmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sequence_id: UUID
    entity_type: str
    entity_id: UUID
    status: str
    current_step_order: int | None
    next_execution_at: datetime | None
    attempt_count: int
    last_error: str | None
    enrolled_at: datetime
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None


class TickResultRead(BaseModel):
    skipped: bool
    processed: int
    succeeded: int
    retried: int
    blocked: int
    failed: int
    released: int
    errors: int


class SchedulerStatusRead(BaseModel):
    name: str
    running: bool
    interval_seconds: int
    tick_in_progress: bool
    last_tick_started_at: datetime | None
    last_tick_finished_at: datetime | None
    last_result: TickResultRead | None


class EnrollmentCancelRequest(BaseModel):
    reason: str = Field(default="Cancelled by staff", max_length=500)


class SendNowRequest(BaseModel):
    entity_type: EntityType
    entity_id: UUID


class SendNowResponse(BaseModel):
    success: bool
    sent_count: int
    credits_charged: int
    errors: list[str]


class AutomationStatsRead(BaseModel):
    total_sequences: int
    active_sequences: int
    total_enrollments: int
    active_enrollments: int
    completed_enrollments: int
    failed_enrollments: int
