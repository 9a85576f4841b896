from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


PipelineStatus = Literal["active", "lost", "won"]
HistoryAction = Literal["created", "stage_change", "lost", "won", "reactivated"]
TaskStatus = Literal["pending", "overdue", "completed"]


class FunnelCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = 0
    generates_contract: bool = False


class FunnelRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    position: int
    is_active: bool
    generates_contract: bool
    created_at: datetime


class FunnelStageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(ge=0)


class FunnelStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    funnel_id: uuid.UUID
    name: str
    position: int


class LostReasonCreate(BaseModel):
    name: str = Field(min_length=1)


class LostReasonRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    is_active: bool


class ContactCreate(BaseModel):
    full_name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    owner_id: uuid.UUID | None = None
    marital_status: str | None = None
    gender: str | None = None
    funnel_id: uuid.UUID | None = None
    stage_id: uuid.UUID | None = None

    @model_validator(mode="after")
    def validate_pipeline_position(self) -> ContactCreate:
        if (self.funnel_id is None) != (self.stage_id is None):
            raise ValueError("funnel_id and stage_id must be provided together")
        return self


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    full_name: str
    email: str | None
    phone: str | None
    owner_id: uuid.UUID | None
    marital_status: str | None
    gender: str | None
    status: PipelineStatus
    current_funnel_id: uuid.UUID | None
    current_stage_id: uuid.UUID | None
    stage_entered_at: datetime | None
    lost_at: datetime | None
    lost_reason_id: uuid.UUID | None
    lost_from_stage_id: uuid.UUID | None
    converted_at: datetime | None
    created_at: datetime


class OpportunityCreate(BaseModel):
    contact_id: uuid.UUID
    funnel_id: uuid.UUID
    stage_id: uuid.UUID
    proposal_value: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    contact_id: uuid.UUID
    current_funnel_id: uuid.UUID
    current_stage_id: uuid.UUID | None
    status: PipelineStatus
    stage_entered_at: datetime | None
    proposal_value: Decimal | None
    lost_at: datetime | None
    lost_reason_id: uuid.UUID | None
    lost_from_stage_id: uuid.UUID | None
    converted_at: datetime | None
    created_at: datetime


class HistoryRead(BaseModel):
    id: uuid.UUID
    entity_id: uuid.UUID
    action: HistoryAction
    from_stage_id: uuid.UUID | None
    to_stage_id: uuid.UUID | None
    changed_by: uuid.UUID | None
    notes: str | None
    created_at: datetime


class AdvanceStageRequest(BaseModel):
    to_stage_id: uuid.UUID
    notes: str | None = None


class MarkLostRequest(BaseModel):
    lost_reason_id: uuid.UUID
    notes: str | None = None


class MarkWonRequest(BaseModel):
    next_funnel_id: uuid.UUID | None = None
    next_stage_id: uuid.UUID | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def validate_successor(self) -> MarkWonRequest:
        if (self.next_funnel_id is None) != (self.next_stage_id is None):
            raise ValueError("next_funnel_id and next_stage_id must be provided together")
        return self


class ReactivateRequest(BaseModel):
    to_stage_id: uuid.UUID
    notes: str | None = None


class ContactWonResponse(BaseModel):
    entity: ContactRead
    successor: OpportunityRead | None = None
    warnings: list[str] = Field(default_factory=list)


class OpportunityWonResponse(BaseModel):
    entity: OpportunityRead
    successor: OpportunityRead | None = None
    warnings: list[str] = Field(default_factory=list)


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    assigned_to: uuid.UUID
    contact_id: uuid.UUID | None
    title: str
    description: str | None
    task_type: str
    scheduled_at: datetime
    status: TaskStatus
    completed_at: datetime | None
