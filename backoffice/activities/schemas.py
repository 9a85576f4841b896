from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class RuleType(str, Enum):
    OVERDUE_PAYMENT = "inadimplente"
    LOW_HEALTH_SCORE = "health_score_critico"
    EXPIRING_CONTRACT = "contrato_vencendo"
    CHARACTERISTIC_MATCH = "client_characteristic"
    MANUAL_RECURRENCE = "manual_recurrence"


class OverduePaymentRule(BaseModel):
    rule_type: Literal["inadimplente"] = "inadimplente"


class LowHealthScoreRule(BaseModel):
    rule_type: Literal["health_score_critico"] = "health_score_critico"
    threshold: int = Field(default=40, ge=0, le=100)


class ExpiringContractRule(BaseModel):
    rule_type: Literal["contrato_vencendo"] = "contrato_vencendo"
    days_before: int = Field(default=30, ge=0)
    category_id: uuid.UUID | None = None


class CharacteristicMatchRule(BaseModel):
    rule_type: Literal["client_characteristic"] = "client_characteristic"
    filter_type: Literal["product", "marital_status", "gender", "goal_type"]
    operator: Literal["equals", "has", "not_has"] = "equals"
    value: str = Field(min_length=1)

    @model_validator(mode="after")
    def validate_operator(self) -> CharacteristicMatchRule:
        if self.filter_type == "product" and self.operator == "equals":
            self.operator = "has"
        if self.filter_type != "product" and self.operator != "equals":
            raise ValueError("only the product filter supports has/not_has")
        return self


class ManualRecurrenceRule(BaseModel):
    rule_type: Literal["manual_recurrence"] = "manual_recurrence"
    interval: Literal["daily", "weekly", "monthly"] = "weekly"


RuleConfig = Annotated[
    OverduePaymentRule | LowHealthScoreRule | ExpiringContractRule | CharacteristicMatchRule | ManualRecurrenceRule,
    Field(discriminator="rule_type"),
]
rule_config_adapter: TypeAdapter[RuleConfig] = TypeAdapter(RuleConfig)


class CriticalActivityCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    urgency: Literal["low", "medium", "high", "critical"] = "medium"
    target_positions: list[str] | None = None
    deadline: datetime | None = None
    is_perpetual: bool = False
    use_rule: bool = False
    rule: RuleConfig | None = None

    @model_validator(mode="after")
    def validate_rule(self) -> CriticalActivityCreate:
        if (self.is_perpetual or self.use_rule) and self.rule is None:
            raise ValueError("a rule is required for perpetual or rule-based activities")
        return self


class CriticalActivityUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    urgency: Literal["low", "medium", "high", "critical"] | None = None
    target_positions: list[str] | None = None
    deadline: datetime | None = None
    is_active: bool | None = None
    rule: RuleConfig | None = None


class CriticalActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    description: str | None
    urgency: str
    target_positions: list[str] | None
    deadline: datetime | None
    rule_type: str | None
    rule_config: dict[str, Any] | None
    is_perpetual: bool
    is_active: bool
    last_run_at: datetime | None
    created_at: datetime


class AssignmentStats(BaseModel):
    total: int = 0
    completed: int = 0
    pending: int = 0


class CriticalActivitySummary(CriticalActivityRead):
    stats: AssignmentStats = Field(default_factory=AssignmentStats)
    open_triggers: int = 0


class CriticalActivityCreated(BaseModel):
    activity: CriticalActivityRead
    tasks_created: int = 0


class EvaluateSingleRequest(BaseModel):
    activity_id: uuid.UUID


class EvaluateSingleResponse(BaseModel):
    success: bool = True
    tasks_created: int


class EvaluatePerpetualResponse(BaseModel):
    success: bool = True
    results: dict[str, int] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
