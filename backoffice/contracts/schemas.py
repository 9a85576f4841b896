from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ProductCreate(BaseModel):
    name: str = Field(min_length=1)
    category_id: uuid.UUID | None = None
    pb_calculation_type: Literal["percentage", "fixed"] | None = None
    pb_value: Decimal | None = None
    pb_formula: str | None = None
    pb_constants: dict[str, float] | None = None


class ProductRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    category_id: uuid.UUID | None
    pb_calculation_type: str | None
    pb_value: Decimal | None
    pb_formula: str | None
    pb_constants: dict[str, Any] | None


class ContractCreate(BaseModel):
    contact_id: uuid.UUID
    product_id: uuid.UUID
    opportunity_id: uuid.UUID | None = None
    owner_id: uuid.UUID | None = None
    contract_value: Decimal = Field(ge=0)
    payment_type: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    gateway_subscription_id: str | None = None
    gateway_bill_id: str | None = None
    custom_data: dict[str, Any] | None = None


class ContractRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    contact_id: uuid.UUID
    opportunity_id: uuid.UUID | None
    product_id: uuid.UUID
    owner_id: uuid.UUID | None
    contract_value: Decimal
    calculated_pbs: Decimal | None
    payment_type: str | None
    status: str
    start_date: date | None
    end_date: date | None
    billing_status: str | None
    gateway_subscription_id: str | None
    gateway_bill_id: str | None
    created_at: datetime


class BillingStatusRequest(BaseModel):
    contract_ids: list[uuid.UUID] = Field(default_factory=list)


class BillingStatusItem(BaseModel):
    status: str
    details: str | None = None


class BillingStatusResponse(BaseModel):
    success: bool = True
    statuses: dict[str, BillingStatusItem] = Field(default_factory=dict)
